"""Services package."""

from recurwatch.services.storage import (
    DetectionStorageInterface,
    InMemoryStorage,
    NotFoundError,
    StorageError,
    StorageUnavailableError,
)

__all__ = [
    "DetectionStorageInterface",
    "InMemoryStorage",
    "NotFoundError",
    "StorageError",
    "StorageUnavailableError",
]
