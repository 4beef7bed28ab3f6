"""
Command-line interface for Glucose Insight.
"""
