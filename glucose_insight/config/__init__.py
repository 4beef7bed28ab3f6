"""
Configuration loading for Glucose Insight.
"""
