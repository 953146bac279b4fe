"""Tests for striped per-key locks."""

import threading

import pytest

from visitor_analytics.locks import KeyedLock


def test_same_key_same_lock():
    locks = KeyedLock(stripes=8)
    assert locks.lock_for("203.0.113.5") is locks.lock_for("203.0.113.5")


def test_single_stripe_shares_lock():
    locks = KeyedLock(stripes=1)
    assert locks.lock_for("a") is locks.lock_for("b")


def test_invalid_stripes():
    with pytest.raises(ValueError):
        KeyedLock(stripes=0)


def test_hold_serializes_read_modify_write():
    locks = KeyedLock()
    counts = {"a": 0}

    def bump():
        for _ in range(1000):
            with locks.hold("a"):
                value = counts["a"]
                counts["a"] = value + 1

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert counts["a"] == 8000


def test_hold_releases_on_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        with locks.hold("a"):
            raise RuntimeError("boom")
    assert not locks.lock_for("a").locked()
