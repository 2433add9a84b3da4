"""
Logging Components
==================
"""
