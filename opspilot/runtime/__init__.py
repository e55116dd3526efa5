"""Runtime - policy loading and tunable thresholds"""
