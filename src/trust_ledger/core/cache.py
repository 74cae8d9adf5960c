# SPDX-License-Identifier: MPL-2.0
"""Bounded TTL cache for the latest attestation per dataset."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Optional, Tuple, TypeVar

from trust_ledger.core.models import EnclaveProof, TrustScore

V = TypeVar("V")


class TTLCache(Generic[V]):
    """A small thread-safe cache with per-entry expiry and a size bound.

    Expired entries are dropped on read. When full, the entry written
    longest ago is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, Tuple[float, V]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: V) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (self._clock() + self.ttl_seconds, value)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


AttestationRecord = Tuple[EnclaveProof, TrustScore]


class AttestationCache(TTLCache[AttestationRecord]):
    """Latest ``(proof, score)`` pair per dataset id.

    A new attestation for a dataset replaces the cached one.
    """

    def record(self, proof: EnclaveProof, score: TrustScore) -> None:
        self.put(score.dataset_id, (proof, score))
