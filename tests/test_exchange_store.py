"""
tests/test_exchange_store.py -- One-time OAuth exchange codes.

Time is driven by a fake clock, so expiry and the replay window are tested
without sleeping.
"""

from __future__ import annotations

import threading

import pytest

from auth.exchange import ExchangeTokenStore
from conftest import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> ExchangeTokenStore:
    return ExchangeTokenStore(ttl_seconds=900, grace_seconds=60, clock=clock)


def test_generate_returns_64_hex_chars(store):
    code = store.generate({"a": 1})
    assert len(code) == 64
    int(code, 16)


def test_codes_are_unique(store):
    codes = {store.generate({}) for _ in range(100)}
    assert len(codes) == 100


def test_exchange_returns_payload(store):
    payload = {"accessToken": "x"}
    code = store.generate(payload)
    assert store.exchange(code) == payload
    assert store.size() == 0


def test_replay_inside_grace_window_returns_same_payload(store, clock):
    payload = {"accessToken": "x"}
    code = store.generate(payload)
    assert store.exchange(code) == payload
    clock.advance(59)
    assert store.exchange(code) == payload


def test_replay_does_not_extend_the_window(store, clock):
    code = store.generate({"v": 1})
    store.exchange(code)
    clock.advance(30)
    store.exchange(code)
    clock.advance(30)
    assert store.exchange(code) is None


def test_replay_after_grace_window_returns_none(store, clock):
    code = store.generate({"v": 1})
    store.exchange(code)
    clock.advance(60)
    assert store.exchange(code) is None
    assert store.exchange(code) is None


def test_expired_code_returns_none(store, clock):
    code = store.generate({"v": 1})
    clock.advance(900)
    assert store.exchange(code) is None


def test_code_just_before_expiry_is_redeemable(store, clock):
    code = store.generate({"v": 1})
    clock.advance(899)
    assert store.exchange(code) == {"v": 1}


@pytest.mark.parametrize("code", ["nonexistent", "", None, 123])
def test_unknown_or_invalid_code_returns_none(store, code):
    assert store.exchange(code) is None


def test_sweep_removes_expired_and_stale_entries(store, clock):
    store.generate({"v": "expires"})
    used = store.generate({"v": "used"})
    store.exchange(used)
    clock.advance(901)
    keep = store.generate({"v": "fresh"})

    assert store.sweep() == 2
    assert store.size() == 1
    assert store.exchange(keep) == {"v": "fresh"}


def test_sweep_keeps_valid_entries(store, clock):
    code = store.generate({"v": 1})
    clock.advance(10)
    assert store.sweep() == 0
    assert store.exchange(code) == {"v": 1}


def test_concurrent_first_exchange_hands_out_one_grant(store):
    """Many threads race on one code: every caller sees the same payload, none sees another."""
    payload = {"v": "only"}
    code = store.generate(payload)
    results: list = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(store.exchange(code))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [payload] * 8
    assert store.size() == 0
