# tierstore/codec.py
"""
Byte codec helpers: canonical JSON encoding, guarded JSON decoding and gzip.

All tiers store the same canonical encoding, so a payload's ``dataSize`` is the
same whichever tier it lands in.
"""

from __future__ import annotations

import gzip
import json
import zlib
from typing import Any, Optional, Union

from tierstore.errors import CorruptedObject, EmptyObject, MalformedObject

GZIP_MAGIC = b"\x1f\x8b"
DEFAULT_LEVEL = 6


def encode_json(obj: Any) -> bytes:
    """Serialize to compact UTF-8 JSON. Key order is preserved."""
    return json.dumps(obj, default=str, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_json(raw: Union[bytes, bytearray, str], reference: Optional[Any] = None) -> Any:
    """
    Reverse of encode_json. Blank text raises EmptyObject, unparsable text
    raises MalformedObject.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedObject(f"payload is not valid UTF-8: {exc}", reference) from exc
    else:
        text = raw
    if not text or not text.strip():
        raise EmptyObject("payload is empty", reference)
    try:
        return json.loads(text)
    except ValueError as exc:
        raise MalformedObject(f"payload is not valid JSON: {exc}", reference) from exc


def is_gzipped(data: bytes) -> bool:
    return data[:2] == GZIP_MAGIC


def compress_bytes(data: bytes, level: int = DEFAULT_LEVEL) -> bytes:
    return gzip.compress(data, compresslevel=level)


def decompress_bytes(data: bytes, reference: Optional[Any] = None) -> bytes:
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise CorruptedObject(f"gzip payload could not be decompressed: {exc}", reference) from exc
