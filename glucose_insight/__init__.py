"""
Glucose Insight: AI analysis of glucose responses to meals and activities.
"""

__version__ = "0.1.0"
