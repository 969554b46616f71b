"""
Database module.
Contains the storage adapter interface, the in-memory and SQL adapters,
and connection management for the SQL adapter.
"""

from jobengine.db.base import StorageAdapter
from jobengine.db.connection import (
    close_db,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
    init_schema,
)
from jobengine.db.memory import InMemoryStorage
from jobengine.db.models import Base, DeadLetter, Job, JobDependency, QueueCounter
from jobengine.db.repository import SQLStorage

__all__ = [
    "StorageAdapter",
    "InMemoryStorage",
    "SQLStorage",
    "get_engine",
    "create_session_factory",
    "get_session_factory",
    "init_db",
    "init_schema",
    "close_db",
    "Base",
    "Job",
    "JobDependency",
    "DeadLetter",
    "QueueCounter",
]
