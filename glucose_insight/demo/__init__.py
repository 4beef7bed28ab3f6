"""
Demo data for trying the CLI.
"""
