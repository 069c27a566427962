"""
Demo data seeding.
"""
