"""Database helpers for the SQL store backend."""

from .session import Base, create_tables, drop_tables, make_engine, make_session_factory

__all__ = ["Base", "create_tables", "drop_tables", "make_engine", "make_session_factory"]
