"""
paddock
Inspection booking and results engine for the competition portal.
"""
