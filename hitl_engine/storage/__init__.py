"""Database models and storage layer."""

from .database import Base, create_database_engine, create_tables, drop_tables
from .store import DocumentStore, SQLDocumentStore

__all__ = [
    "Base",
    "create_database_engine",
    "create_tables",
    "drop_tables",
    "DocumentStore",
    "SQLDocumentStore",
]
