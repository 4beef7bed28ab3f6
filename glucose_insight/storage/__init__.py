"""
SQLite storage for readings, events and usage ledgers.
"""
