"""Observability - logging, telemetry counters and lifecycle signals"""
