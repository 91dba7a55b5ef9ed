"""Tests for the single-use challenge store."""

import threading

from vdid.auth.challenge import ChallengeStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestChallengeStore:
    """Tests for issue/consume semantics."""

    def test_issue_generates_value(self):
        store = ChallengeStore()
        challenge = store.issue("key")
        assert len(challenge.value) >= 32
        assert store.peek("key") == challenge

    def test_consume_once(self):
        store = ChallengeStore()
        challenge = store.issue("key")
        assert store.consume("key", challenge.value) is True
        assert store.consume("key", challenge.value) is False
        assert len(store) == 0

    def test_wrong_value_keeps_entry(self):
        store = ChallengeStore()
        challenge = store.issue("key", value="expected")
        assert store.consume("key", "wrong") is False
        assert store.consume("key", challenge.value) is True

    def test_empty_or_missing(self):
        store = ChallengeStore()
        store.issue("key", value="v")
        assert store.consume("key", "") is False
        assert store.consume("key", None) is False
        assert store.consume("other", "v") is False

    def test_reissue_replaces(self):
        store = ChallengeStore()
        store.issue("key", value="first")
        store.issue("key", value="second")
        assert store.consume("key", "first") is False
        assert store.consume("key", "second") is True

    def test_expiry(self):
        clock = FakeClock()
        store = ChallengeStore(ttl_seconds=60, clock=clock)
        store.issue("key", value="v")
        clock.advance(60)
        assert store.consume("key", "v") is False
        assert len(store) == 0

    def test_per_issue_ttl(self):
        clock = FakeClock()
        store = ChallengeStore(ttl_seconds=60, clock=clock)
        challenge = store.issue("key", value="v", ttl_seconds=600)
        assert challenge.expires_at_ts == clock.now + 600
        clock.advance(300)
        assert store.consume("key", "v") is True

    def test_peek_drops_expired(self):
        clock = FakeClock()
        store = ChallengeStore(ttl_seconds=10, clock=clock)
        store.issue("key")
        clock.advance(11)
        assert store.peek("key") is None
        assert len(store) == 0

    def test_cleanup_expired(self):
        clock = FakeClock()
        store = ChallengeStore(ttl_seconds=10, clock=clock)
        store.issue("a")
        store.issue("b")
        store.issue("c", ttl_seconds=100)
        clock.advance(20)
        assert store.cleanup_expired() == 2
        assert len(store) == 1
        assert store.peek("c") is not None

    def test_expires_at_is_aware(self):
        store = ChallengeStore()
        assert store.issue("key").expires_at.tzinfo is not None

    def test_concurrent_consume_succeeds_once(self):
        store = ChallengeStore()
        store.issue("key", value="v")
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.consume("key", "v"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
