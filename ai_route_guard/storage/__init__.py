"""
Storage layer: sqlite connection, models and repository.
"""
