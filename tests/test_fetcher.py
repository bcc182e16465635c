"""Tests for :mod:`msig.fetcher`."""

from __future__ import annotations

import asyncio
import time

import pytest

from msig.errors import ReadError
from msig.fetcher import CountFetcher, FetchKey, check_preconditions
from msig.models import ConnectionState
from tests.fakes import ALICE, WALLET, connected


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _slow_reader(value: int, delay: float = 0.05):
    calls = []

    def _read() -> int:
        calls.append(1)
        time.sleep(delay)
        return value

    return _read, calls


def test_key_includes_chain_and_checksums_address() -> None:
    key = CountFetcher.key_for(WALLET.lower(), 5)

    assert key == FetchKey(wallet_address=WALLET, chain_id=5)
    assert key != CountFetcher.key_for(WALLET, 1)


@pytest.mark.parametrize(
    "connection, wallet, supported, fragment",
    [
        (ConnectionState(chain_id=None, account=ALICE, is_connected=True), WALLET, None, "chain id"),
        (connected(), "0x1234", None, "invalid wallet"),
        (ConnectionState(chain_id=1, account=ALICE, is_connected=False), WALLET, None, "no active connection"),
        (connected(chain_id=10), WALLET, {1}, "unsupported network"),
    ],
)
def test_check_preconditions_reports_reason(connection, wallet, supported, fragment) -> None:
    problem = check_preconditions(connection, wallet, supported)

    assert problem is not None
    assert fragment in str(problem)


def test_check_preconditions_accepts_ready_session() -> None:
    assert check_preconditions(connected(), WALLET, {1}) is None
    assert check_preconditions(connected(chain_id=31337), WALLET, None) is None


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_read() -> None:
    fetcher = CountFetcher()
    key = fetcher.key_for(WALLET, 1)
    reader, calls = _slow_reader(7)

    results = await asyncio.gather(*(fetcher.fetch(key, reader) for _ in range(5)))

    assert len(calls) == 1
    assert fetcher.reads == 1
    assert {result.value for result in results} == {7}


@pytest.mark.asyncio
async def test_fetch_reuses_result_inside_dedupe_window() -> None:
    clock = FakeClock()
    fetcher = CountFetcher(dedupe_interval=2.0, clock=clock)
    key = fetcher.key_for(WALLET, 1)
    reader, calls = _slow_reader(3, delay=0)

    first = await fetcher.fetch(key, reader)
    clock.now += 1.0
    second = await fetcher.fetch(key, reader)
    clock.now += 5.0
    third = await fetcher.fetch(key, reader)

    assert first is second
    assert third is not first
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_revalidate_always_reads_but_joins_inflight() -> None:
    fetcher = CountFetcher(dedupe_interval=60.0)
    key = fetcher.key_for(WALLET, 1)
    reader, calls = _slow_reader(4)

    await fetcher.fetch(key, reader)
    await fetcher.revalidate(key, reader)
    assert len(calls) == 2

    await asyncio.gather(fetcher.revalidate(key, reader), fetcher.revalidate(key, reader))
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_is_validating_tracks_inflight_read() -> None:
    fetcher = CountFetcher()
    key = fetcher.key_for(WALLET, 1)
    reader, _ = _slow_reader(1)

    task = asyncio.ensure_future(fetcher.revalidate(key, reader))
    await asyncio.sleep(0)
    assert fetcher.is_validating(key) is True

    await task
    assert fetcher.is_validating(key) is False
    assert fetcher.cached(key).value == 1


@pytest.mark.asyncio
async def test_reader_failures_become_read_errors() -> None:
    fetcher = CountFetcher()
    key = fetcher.key_for(WALLET, 1)

    def _broken() -> int:
        raise ConnectionError("connection refused")

    result = await fetcher.fetch(key, _broken)

    assert not result.ok
    assert isinstance(result.error, ReadError)
    assert "connection refused" in str(result.error)
    assert isinstance(result.error.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_failed_result_is_not_served_from_cache() -> None:
    fetcher = CountFetcher(dedupe_interval=60.0)
    key = fetcher.key_for(WALLET, 1)
    outcomes = [ReadError("flaky"), 2]

    def _reader() -> int:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert not (await fetcher.fetch(key, _reader)).ok
    assert (await fetcher.fetch(key, _reader)).value == 2


@pytest.mark.asyncio
async def test_invalidate_drops_cache() -> None:
    fetcher = CountFetcher(dedupe_interval=60.0)
    key = fetcher.key_for(WALLET, 1)
    reader, calls = _slow_reader(1, delay=0)

    await fetcher.fetch(key, reader)
    fetcher.invalidate(key)
    await fetcher.fetch(key, reader)
    fetcher.invalidate()
    await fetcher.fetch(key, reader)

    assert len(calls) == 3
    assert fetcher.cached(key) is not None
