from tierstore.backends.base import TierBackend
from tierstore.backends.inline import InlineBackend, CompressedInlineBackend
from tierstore.backends.filesystem import FilesystemBackend
from tierstore.backends.bucket import BucketBackend
from tierstore.backends.chunked import ChunkedCollectionBackend

__all__ = [
    "TierBackend",
    "InlineBackend",
    "CompressedInlineBackend",
    "FilesystemBackend",
    "BucketBackend",
    "ChunkedCollectionBackend",
]
