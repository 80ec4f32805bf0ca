# tierstore/errors.py
"""
Storage error taxonomy.

Backends raise these; the router and record service let them propagate.
Batch maintenance operations catch them per record and aggregate into reports.
"""

from __future__ import annotations

from typing import Any, Optional


class StorageError(Exception):
    """Base storage exception for the tiered storage layer."""

    def __init__(self, message: str, reference: Optional[Any] = None):
        super().__init__(message)
        self.reference = reference


class NotFound(StorageError):
    """Reference does not resolve in its tier."""


class CorruptedObject(StorageError):
    """A required chunk is missing, or stored bytes cannot be decoded. Never retried."""


class EmptyObject(StorageError):
    """Decoded payload text is blank."""


class MalformedObject(StorageError):
    """Decoded payload text is not valid JSON."""


class SizeLimitExceeded(StorageError):
    """Payload exceeds the tier's configured maximum; nothing was written."""


class StorageUnavailable(StorageError):
    """Disk, bucket or database could not be reached."""


class UnsupportedTier(StorageError):
    """Locator names a tier that has no backend (e.g. ``external``)."""


class RecordNotFound(StorageError):
    """Owning record id is invalid or no record exists for it."""
