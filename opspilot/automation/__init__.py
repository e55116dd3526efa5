"""Automation - routing, execution, suggestion timers and the approval queue"""
