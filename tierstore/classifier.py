# tierstore/classifier.py
"""
Size classifier: pick a storage tier from a payload's serialized byte length.

Policy (all values come from StorageConfig):
  - file_first:            every payload -> file, gzip'd above compression_threshold
  - size > direct_threshold -> large_tier (gridfs, or file)
  - size > compression_threshold -> compressed inline blob
  - otherwise              -> inline JSON on the record
"""

from __future__ import annotations

from typing import Dict, NamedTuple

from tierstore.config import StorageConfig
from tierstore.models import Tier


class Placement(NamedTuple):
    tier: Tier
    compress: bool


def classify(size_bytes: int, config: StorageConfig) -> Tier:
    if size_bytes < 0:
        raise ValueError("size_bytes must be non-negative")
    if config.file_first:
        return Tier.FILESYSTEM_FILE
    if size_bytes > config.direct_threshold:
        return config.large_tier
    if size_bytes > config.compression_threshold:
        return Tier.COMPRESSED_INLINE
    return Tier.INLINE


def should_compress(tier: Tier, size_bytes: int, config: StorageConfig) -> bool:
    """Compression is a per-tier decision; bucket and chunk tiers never gzip."""
    if tier == Tier.COMPRESSED_INLINE:
        return True
    if tier == Tier.FILESYSTEM_FILE:
        return size_bytes > config.compression_threshold
    return False


def plan(size_bytes: int, config: StorageConfig) -> Placement:
    tier = classify(size_bytes, config)
    return Placement(tier, should_compress(tier, size_bytes, config))


def describe_thresholds(config: StorageConfig) -> Dict[str, object]:
    return {
        "direct_threshold": config.direct_threshold,
        "compression_threshold": config.compression_threshold,
        "large_tier": config.large_tier.value,
        "file_first": config.file_first,
        "large_object_threshold": config.large_object_threshold,
    }
