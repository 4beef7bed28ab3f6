"""
Core modules for Glucose Insight.

This package contains glucose statistics, classification parsing,
pricing, prompt construction and the event analyzer.
"""
