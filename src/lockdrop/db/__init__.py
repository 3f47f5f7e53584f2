# src/lockdrop/db/__init__.py
"""Database configuration and utilities."""

from .session import Base, SessionLocal, create_tables, drop_tables

__all__ = ["Base", "SessionLocal", "create_tables", "drop_tables"]
