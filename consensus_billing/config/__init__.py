"""
Configuration and logging setup for the accounting layer.
"""
