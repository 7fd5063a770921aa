"""Database package: async SQLAlchemy engine, session factory, and models."""
from .engine import create_engine, create_session_factory, dispose_engine
from .base import Base

__all__ = ["create_engine", "create_session_factory", "dispose_engine", "Base"]
