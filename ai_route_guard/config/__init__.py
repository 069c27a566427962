"""
Engine configuration.
"""
