"""Deduplicating reader for the authoritative transaction count."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Collection, Dict, Optional

from eth_utils import is_address

from .errors import PreconditionError, ReadError
from .models import ConnectionState, normalise_address

logger = logging.getLogger(__name__)

Reader = Callable[[], int]


@dataclass(frozen=True)
class FetchKey:
    """Cache key for one read: wallet, network and what is being read."""

    wallet_address: str
    chain_id: int
    purpose: str = "transactionCount"


@dataclass(frozen=True)
class FetchResult:
    key: FetchKey
    value: Optional[int]
    error: Optional[ReadError]
    fetched_at: float

    @property
    def ok(self) -> bool:
        return self.error is None


def check_preconditions(
    connection: ConnectionState,
    wallet_address: Optional[str],
    supported_chain_ids: Optional[Collection[int]] = None,
) -> Optional[PreconditionError]:
    """Return why a fetch may not happen, or ``None`` when it may."""

    if connection.chain_id is None:
        return PreconditionError("chain id not resolved")
    if not wallet_address or not is_address(wallet_address):
        return PreconditionError(f"invalid wallet address: {wallet_address!r}")
    if not connection.is_connected:
        return PreconditionError("no active connection")
    if supported_chain_ids and connection.chain_id not in supported_chain_ids:
        return PreconditionError(f"unsupported network {connection.chain_id}")
    return None


class CountFetcher:
    """Read-through cache that collapses concurrent reads of one key."""

    def __init__(self, *, dedupe_interval: float = 2.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.dedupe_interval = dedupe_interval
        self._clock = clock
        self._cache: Dict[FetchKey, FetchResult] = {}
        self._inflight: Dict[FetchKey, "asyncio.Task[FetchResult]"] = {}
        self.reads = 0

    @staticmethod
    def key_for(wallet_address: str, chain_id: int, purpose: str = "transactionCount") -> FetchKey:
        return FetchKey(wallet_address=normalise_address(wallet_address), chain_id=int(chain_id), purpose=purpose)

    def cached(self, key: FetchKey) -> Optional[FetchResult]:
        return self._cache.get(key)

    def is_validating(self, key: FetchKey) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def fetch(self, key: FetchKey, reader: Reader) -> FetchResult:
        """Return a recent cached value or read, sharing any in-flight read."""

        cached = self._cache.get(key)
        if cached is not None and cached.ok and self._clock() - cached.fetched_at < self.dedupe_interval:
            return cached
        return await self._join(key, reader)

    async def revalidate(self, key: FetchKey, reader: Reader) -> FetchResult:
        """Force a fresh read; joins a read already in flight for ``key``."""

        return await self._join(key, reader)

    def invalidate(self, key: Optional[FetchKey] = None) -> None:
        if key is None:
            self._cache.clear()
            self._inflight.clear()
            return
        self._cache.pop(key, None)
        self._inflight.pop(key, None)

    async def _join(self, key: FetchKey, reader: Reader) -> FetchResult:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._read(key, reader))
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._release(k, done))
        return await asyncio.shield(task)

    def _release(self, key: FetchKey, task: "asyncio.Task[FetchResult]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _read(self, key: FetchKey, reader: Reader) -> FetchResult:
        self.reads += 1
        try:
            value = await asyncio.to_thread(reader)
        except ReadError as exc:
            result = FetchResult(key=key, value=None, error=exc, fetched_at=self._clock())
        except Exception as exc:
            error = ReadError(f"{key.purpose} read failed for {key.wallet_address}: {exc}")
            error.__cause__ = exc
            result = FetchResult(key=key, value=None, error=error, fetched_at=self._clock())
        else:
            result = FetchResult(key=key, value=int(value), error=None, fetched_at=self._clock())
        if result.error is not None:
            logger.warning("%s read failed on chain %s: %s", key.purpose, key.chain_id, result.error)
        if self._inflight.get(key) is asyncio.current_task():
            self._cache[key] = result
        return result


__all__ = ["CountFetcher", "FetchKey", "FetchResult", "check_preconditions"]
