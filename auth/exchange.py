"""
auth/exchange.py -- In-memory one-time exchange tokens for the OAuth handoff.

The OAuth callback cannot put the full login result (access and refresh
tokens, user summary) in a redirect URL. Instead it stores the result here
under a random code and redirects with the code only. The frontend then POSTs
the code to /oauth/exchange and receives the result exactly once.

Two maps:
  _active   -- code -> (payload, expires_at). Redeemable once.
  _consumed -- code -> (payload, consumed_at). After the first successful
               exchange the payload moves here for a short grace window, so a
               client that fires the exchange twice (double-mounted UI
               effects) gets the same payload back instead of an error. This
               is an echo of the one grant, never a new one.

Expiry is decided lazily on every access; sweep() only bounds memory and is
run periodically by the app lifespan. Both maps are guarded by one lock: the
lookup-and-move in exchange() must be atomic per code, and handlers run both
on the event loop and in the threadpool.

The store is process-local. A deployment with several instances behind a load
balancer needs a shared backend, otherwise an exchange that lands on a
different instance than the callback simply returns None.

Layer rule: stdlib only.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("atrium.auth.exchange")

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_GRACE_SECONDS = 60


@dataclass
class _ActiveEntry:
    payload: Any
    expires_at: float


@dataclass
class _ConsumedEntry:
    payload: Any
    consumed_at: float


class ExchangeTokenStore:
    """Time-boxed, one-time-use code -> payload map with a replay grace window.

    Usage:
        store = ExchangeTokenStore()
        code = store.generate({"access_token": "..."})
        store.exchange(code)   # -> payload
        store.exchange(code)   # -> same payload, within the grace window
        store.exchange("nope") # -> None

    Args:
        ttl_seconds:   Lifetime of an unredeemed code.
        grace_seconds: How long a redeemed code keeps answering with its payload.
        clock:         Monotonic time source in seconds. Tests inject a fake.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveEntry] = {}
        self._consumed: dict[str, _ConsumedEntry] = {}

    def generate(self, payload: Any) -> str:
        """Store payload under a fresh 256-bit hex code and return the code."""
        code = secrets.token_hex(32)
        with self._lock:
            self._active[code] = _ActiveEntry(payload=payload, expires_at=self._clock() + self.ttl_seconds)
        logger.debug("Exchange code issued (pending=%d)", len(self._active))
        return code

    def exchange(self, code: str) -> Any | None:
        """Redeem a code. Returns its payload, or None if unknown or expired.

        The first successful call moves the entry to the consumed map. Later
        calls inside the grace window return the same payload without
        extending the window.
        """
        if not code or not isinstance(code, str):
            return None
        now = self._clock()
        with self._lock:
            entry = self._active.get(code)
            if entry is not None:
                del self._active[code]
                if now >= entry.expires_at:
                    logger.info("Exchange code expired before use")
                    return None
                self._consumed[code] = _ConsumedEntry(payload=entry.payload, consumed_at=now)
                return entry.payload

            replay = self._consumed.get(code)
            if replay is not None:
                if now - replay.consumed_at < self.grace_seconds:
                    logger.info("Exchange code replayed inside grace window")
                    return replay.payload
                del self._consumed[code]
        return None

    def sweep(self) -> int:
        """Drop expired codes and consumed codes past their grace window.

        Returns the number of entries removed. Entries are matched by code and
        re-checked under the lock, so a sweep never removes an entry that is
        still valid.
        """
        now = self._clock()
        with self._lock:
            expired = [code for code, entry in self._active.items() if now >= entry.expires_at]
            for code in expired:
                del self._active[code]
            stale = [code for code, entry in self._consumed.items() if now - entry.consumed_at >= self.grace_seconds]
            for code in stale:
                del self._consumed[code]
        removed = len(expired) + len(stale)
        if removed:
            logger.debug("Exchange sweep removed %d entries (expired=%d, replay=%d)", removed, len(expired), len(stale))
        return removed

    def size(self) -> int:
        """Number of codes still waiting to be redeemed. Diagnostics only."""
        with self._lock:
            return len(self._active)
