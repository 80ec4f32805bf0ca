# tierstore/config.py
"""
Storage configuration.

Thresholds are not constants: every classifier, backend and service receives a
``StorageConfig`` at construction so tests can exercise exact boundary values.
Deployments build one with ``StorageConfig.from_env()`` which reads ``.env``
(python-dotenv) and ``TIERSTORE_*`` environment variables.

Profiles for the two record kinds (``forms`` and ``secondforms``) carry the
collection, bucket and directory names each kind persists under.
"""

from __future__ import annotations

import os
import pathlib
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tierstore.models import Tier

MB = 1024 * 1024

DEFAULT_DIRECT_THRESHOLD = 50 * MB
DEFAULT_COMPRESSION_THRESHOLD = 1 * MB
DEFAULT_LARGE_OBJECT_THRESHOLD = 25 * MB
DEFAULT_CHUNK_SIZE = 2 * MB
DEFAULT_MAX_FILE_SIZE = 100 * MB
DEFAULT_BATCH_SIZE = 50

LEGACY_CHUNKS_COLLECTION = "formChunks"


class RecordKind(BaseModel):
    """Names under which one kind of owning record and its blobs live."""
    model_config = ConfigDict(frozen=True)

    name: str
    collection: str
    bucket_name: str
    directory: str
    file_prefix: str
    label: str


FORMS = RecordKind(
    name="forms",
    collection="forms",
    bucket_name="formData",
    directory="forms",
    file_prefix="form",
    label="form",
)

SECOND_FORMS = RecordKind(
    name="secondforms",
    collection="secondforms",
    bucket_name="secondFormData",
    directory="second-forms",
    file_prefix="second-form",
    label="second form",
)

RECORD_KINDS: Dict[str, RecordKind] = {k.name: k for k in (FORMS, SECOND_FORMS)}


def get_record_kind(name: str) -> RecordKind:
    try:
        return RECORD_KINDS[name]
    except KeyError:
        raise ValueError(f"unknown record kind {name!r}; expected one of {sorted(RECORD_KINDS)}") from None


class StorageConfig(BaseModel):
    """
    Tiering policy and collaborator settings.

    Size semantics: a payload is routed to ``large_tier`` only when its serialized
    size is strictly greater than ``direct_threshold``; inline payloads are gzip'd
    only when strictly greater than ``compression_threshold``.
    """
    model_config = ConfigDict(frozen=True)

    direct_threshold: int = Field(DEFAULT_DIRECT_THRESHOLD, gt=0)
    compression_threshold: int = Field(DEFAULT_COMPRESSION_THRESHOLD, gt=0)
    large_tier: Tier = Tier.CHUNKED_BUCKET
    file_first: bool = False
    preferred_tier: Tier = Tier.FILESYSTEM_FILE

    large_object_threshold: int = Field(DEFAULT_LARGE_OBJECT_THRESHOLD, gt=0)
    chunk_size_bytes: int = Field(DEFAULT_CHUNK_SIZE, gt=0)
    direct_reader_batch_size: int = Field(DEFAULT_BATCH_SIZE, gt=0)
    max_file_size: int = Field(DEFAULT_MAX_FILE_SIZE, gt=0)

    storage_root: pathlib.Path = pathlib.Path("storage")
    legacy_chunks_collection: str = LEGACY_CHUNKS_COLLECTION
    migration_concurrency: int = Field(8, gt=0)

    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "mcerts"
    mongo_timeout_ms: int = Field(5000, gt=0)

    @field_validator("large_tier")
    @classmethod
    def check_large_tier(cls, v: Tier) -> Tier:
        if v not in (Tier.CHUNKED_BUCKET, Tier.FILESYSTEM_FILE):
            raise ValueError("large_tier must be 'gridfs' or 'file'")
        return v

    @field_validator("preferred_tier")
    @classmethod
    def check_preferred_tier(cls, v: Tier) -> Tier:
        if v == Tier.EXTERNAL:
            raise ValueError("preferred_tier cannot be 'external'")
        return v

    @model_validator(mode="after")
    def check_thresholds(self) -> "StorageConfig":
        if self.compression_threshold > self.direct_threshold:
            raise ValueError("compression_threshold must not exceed direct_threshold")
        return self

    def storage_dir(self, kind: RecordKind) -> pathlib.Path:
        return pathlib.Path(self.storage_root) / kind.directory

    @classmethod
    def from_env(cls, prefix: str = "TIERSTORE_", env_file: Optional[str] = None, **overrides: Any) -> "StorageConfig":
        """
        Build config from environment. Unset variables keep model defaults;
        keyword overrides win over the environment.
        """
        load_dotenv(env_file)
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(prefix + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls(**values)
