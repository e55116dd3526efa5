"""Anomaly - risk checks that can veto automation"""
