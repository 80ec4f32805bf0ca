"""
tierstore
---------

Size-tiered large-object storage for inspection form records.

A submitted form payload is serialized once, classified by size and written to
one storage tier (inline field, gzip blob, filesystem file, GridFS bucket or the
legacy chunk collection). The owning Mongo record keeps only the locator.
"""

from tierstore.config import StorageConfig, RecordKind, FORMS, SECOND_FORMS
from tierstore.models import Tier, StoredObjectLocator, StoreResult, MigrationOutcome
from tierstore.errors import (
    StorageError,
    NotFound,
    CorruptedObject,
    EmptyObject,
    MalformedObject,
    SizeLimitExceeded,
    StorageUnavailable,
    UnsupportedTier,
    RecordNotFound,
)

__version__ = "0.3.0"

__all__ = [
    "StorageConfig",
    "RecordKind",
    "FORMS",
    "SECOND_FORMS",
    "Tier",
    "StoredObjectLocator",
    "StoreResult",
    "MigrationOutcome",
    "StorageError",
    "NotFound",
    "CorruptedObject",
    "EmptyObject",
    "MalformedObject",
    "SizeLimitExceeded",
    "StorageUnavailable",
    "UnsupportedTier",
    "RecordNotFound",
]
