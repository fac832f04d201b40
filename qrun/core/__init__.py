"""
Scheduling, validation and query runners.
"""
