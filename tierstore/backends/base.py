# tierstore/backends/base.py
"""
Common contract for tier backends.

store     -> writes bytes, returns a StoreResult whose locator the caller persists
retrieve  -> returns the stored (uncompressed) bytes, raises NotFound if the
             reference does not resolve
delete    -> best-effort cleanup; never raises
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from tierstore.models import StoredObjectLocator, StoreResult, Tier


class TierBackend(ABC):
    tier: Tier

    def __init__(self):
        self.log = logging.getLogger(f"tierstore.backends.{self.tier.value}")

    @abstractmethod
    async def store(self, data: bytes, *, name: str, compress: Optional[bool] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> StoreResult:
        ...

    @abstractmethod
    async def retrieve(self, locator: StoredObjectLocator, record: Optional[Mapping[str, Any]] = None) -> bytes:
        ...

    @abstractmethod
    async def delete(self, locator: StoredObjectLocator) -> None:
        ...

