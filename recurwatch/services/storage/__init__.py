"""
Storage Services Package

Provides the abstract interface the engine consumes and an in-memory
implementation of it. Real storage engines live in the host application.
"""

from recurwatch.services.storage.interface import (
    DetectionStorageInterface,
    NotFoundError,
    StorageError,
    StorageUnavailableError,
)
from recurwatch.services.storage.memory import InMemoryStorage

__all__ = [
    # Interface
    "DetectionStorageInterface",
    # Exceptions
    "NotFoundError",
    "StorageError",
    "StorageUnavailableError",
    # In-memory implementation
    "InMemoryStorage",
]
