"""
Storage

Store interface and its in-memory and JSON-file implementations.
"""

from .base import Store
from .json_store import JsonFileStore
from .memory_store import InMemoryStore

__all__ = [
    "Store",
    "InMemoryStore",
    "JsonFileStore",
]
