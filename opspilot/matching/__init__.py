"""Matching - similarity scoring, domain modules and pattern search"""
