"""Single-use challenge/nonce store.

Maps a key (principal id, wallet address or throwaway id) to a random value
with an expiry. Used by both the wallet nonce flow and the passkey
ceremonies.

Note: The store is per-process. Multi-instance deployments need sticky
sessions or a shared backend implementing the same issue/consume contract.
"""

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Challenge:
    """An issued challenge value and when it stops being valid."""

    value: str
    expires_at_ts: float

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at_ts, tz=timezone.utc)

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at_ts


class ChallengeStore:
    """Thread-safe, time-boxed, single-use challenge map.

    issue() overwrites any earlier entry for the key. consume() succeeds at
    most once per issued value; expired entries are dropped when touched.
    """

    def __init__(self, ttl_seconds: int = 300, clock=time.time) -> None:
        """Initialize the store.

        Args:
            ttl_seconds: Default lifetime of an issued challenge
            clock: Callable returning the current epoch time in seconds
        """
        self._entries: dict[str, Challenge] = {}
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def issue(
        self,
        key: str,
        value: str | None = None,
        ttl_seconds: int | None = None,
    ) -> Challenge:
        """Store a fresh challenge for ``key`` and return it."""
        if value is None:
            value = secrets.token_urlsafe(32)
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        challenge = Challenge(value=value, expires_at_ts=self._clock() + ttl)

        with self._lock:
            self._entries[key] = challenge

        log.debug(f"Issued challenge for {key[:12]}... (ttl={ttl}s)")
        return challenge

    def consume(self, key: str, presented: str | None) -> bool:
        """Atomically check and delete the challenge for ``key``.

        Returns:
            True only if an unexpired entry exists and equals ``presented``
        """
        if not presented:
            return False

        with self._lock:
            challenge = self._entries.get(key)
            if challenge is None:
                return False

            if challenge.is_expired(self._clock()):
                del self._entries[key]
                log.debug(f"Challenge for {key[:12]}... expired")
                return False

            if not hmac.compare_digest(challenge.value.encode(), presented.encode()):
                return False

            del self._entries[key]
            return True

    def peek(self, key: str) -> Challenge | None:
        """Return the live challenge for ``key`` without consuming it."""
        with self._lock:
            challenge = self._entries.get(key)
            if challenge is None:
                return None
            if challenge.is_expired(self._clock()):
                del self._entries[key]
                return None
            return challenge

    def cleanup_expired(self) -> int:
        """Remove all expired entries."""
        now = self._clock()
        with self._lock:
            expired = [k for k, c in self._entries.items() if c.is_expired(now)]
            for k in expired:
                del self._entries[k]

        if expired:
            log.info(f"Cleaned up {len(expired)} expired challenges")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
