"""
Persistence layer: SQLAlchemy models and session factory
"""
