# tierstore/models.py
"""
Tier tags, locators and maintenance report schemas.

The persisted ``storageMethod`` string on an owning record is the value of
``Tier``. Locator fields are mapped to and from record documents by the router.
"""

from __future__ import annotations

import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# -----------------------------------------------------------------------------
# Persisted record field names
# -----------------------------------------------------------------------------
F_STORAGE_METHOD = "storageMethod"
F_FORM_DATA = "formData"
F_COMPRESSED_DATA = "compressedData"
F_FILE_PATH = "filePath"
F_FILE_NAME = "fileName"
F_FILE_SIZE = "fileSize"
F_GRIDFS_ID = "gridFSFileId"
F_CHUNKED_ID = "chunkedDataId"
F_IS_COMPRESSED = "isCompressed"
F_DATA_SIZE = "dataSize"
F_IS_LARGE = "isLargeData"
F_STORAGE_STATUS = "storageStatus"

LOCATOR_FIELDS = (
    F_FORM_DATA,
    F_COMPRESSED_DATA,
    F_FILE_PATH,
    F_FILE_NAME,
    F_FILE_SIZE,
    F_GRIDFS_ID,
    F_CHUNKED_ID,
    F_IS_COMPRESSED,
)


class Tier(str, enum.Enum):
    INLINE = "direct"
    COMPRESSED_INLINE = "compressed"
    FILESYSTEM_FILE = "file"
    CHUNKED_BUCKET = "gridfs"
    CHUNKED_COLLECTION = "chunked"
    EXTERNAL = "external"

    @property
    def reference_field(self) -> Optional[str]:
        return _REFERENCE_FIELDS.get(self)

    @property
    def is_large(self) -> bool:
        return self != Tier.INLINE


_REFERENCE_FIELDS = {
    Tier.FILESYSTEM_FILE: F_FILE_PATH,
    Tier.CHUNKED_BUCKET: F_GRIDFS_ID,
    Tier.CHUNKED_COLLECTION: F_CHUNKED_ID,
}


class StorageStatus(str, enum.Enum):
    HEALTHY = "healthy"
    MIGRATING = "migrating"
    MIGRATION_FAILED = "migration_failed"
    ORPHANED = "orphaned"
    CLEARED = "cleared"
    CORRUPTED = "corrupted"


TERMINAL_STATUSES = (StorageStatus.CLEARED.value, StorageStatus.CORRUPTED.value)


class StoredObjectLocator(BaseModel):
    """Where a payload's bytes live. ``reference`` is None only for inline tiers."""
    tier: Tier
    reference: Optional[str] = None
    compressed: bool = False
    size_bytes: int = 0


class StoreResult(BaseModel):
    """
    Outcome of one backend store.

    ``embedded`` holds record fields the caller must persist alongside the
    locator (the JSON itself for ``direct``, the gzip blob for ``compressed``,
    file name/size for ``file``).
    """
    locator: StoredObjectLocator
    stored_bytes: int = 0
    embedded: Dict[str, Any] = Field(default_factory=dict)


class MigrationOutcome(BaseModel):
    total: int = 0
    migrated: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class VerificationReport(BaseModel):
    tier: Tier
    total: int = 0
    valid: int = 0
    invalid: int = 0
    missing: int = 0


class DiagnosisIssue(BaseModel):
    record_id: str
    reference: Optional[str] = None
    data_size: int = 0
    reason: str = "missing bucket object"


class DiagnosisReport(BaseModel):
    checked: int = 0
    issues: List[DiagnosisIssue] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class RecoveryOutcome(BaseModel):
    total: int = 0
    cleared: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class EmergencyRecoveryOutcome(BaseModel):
    reference: str
    recovered: bool = False
    affected_records: List[str] = Field(default_factory=list)
    size_bytes: int = 0
    error: Optional[str] = None


class CleanupOutcome(BaseModel):
    total: int = 0
    cleaned: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
