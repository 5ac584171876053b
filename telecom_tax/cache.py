"""
Short-lived memoization of computation results.

Keys are deterministic fingerprints of the calculation inputs. The cache
only saves computation: the engine still writes a calculation record for
every request, cached or not.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from telecom_tax.logging_config import get_logger
from telecom_tax.reference import Address

logger = get_logger("cache")


def fingerprint(
    *,
    base_amount: Decimal,
    quantity: int,
    category_code: Optional[str],
    service_type: str,
    address: Address,
    exemption_ids: Iterable[str],
    as_of: date,
    customer_id: Optional[str] = None,
    usage: Optional[dict] = None,
    exemption_usage: Optional[dict] = None,
) -> str:
    """SHA-256 over a canonical JSON rendering of the inputs."""
    payload = {
        # exact text; a hit reuses the first request's snapshot verbatim
        "base_amount": str(base_amount),
        "quantity": quantity,
        "category": category_code,
        "service_type": service_type,
        "address": address.to_dict(),
        "exemptions": sorted(exemption_ids),
        "as_of": as_of.isoformat(),
        "customer_id": customer_id,
        "usage": usage or {},
        "exemption_usage": exemption_usage or {},
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ResultCache:
    """
    Thread-safe TTL cache with a size bound (oldest entry evicted first).

    Only get/put are atomic. Two requests racing on the same key may both
    compute; the later put simply wins.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def put(self, key: str, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value, expires_at)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info("Result cache cleared", extra={"entries_removed": size})

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "ttl_seconds": self.ttl_seconds,
                "max_entries": self.max_entries,
            }
