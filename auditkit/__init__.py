"""Audit field stamping and revision history for SQLAlchemy entities."""

__version__ = "0.1.0"
