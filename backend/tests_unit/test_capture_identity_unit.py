"""
Capture Identity Tests (Unit)
=============================

WHAT: Unit tests for visitor/session id resolution in the capture agent.
WHY: Visitor ids must survive storage failures; session ids must roll over after inactivity.

NOTE:
These tests live outside `backend/leadpixel/tests/` to avoid loading the integration-test
`conftest.py`, which configures a database and environment variables not required here.

REFERENCES:
- backend/leadpixel/capture/identity.py
"""

from datetime import timedelta

import pytest

from leadpixel.capture.identity import (
    SESSION_KEY,
    SESSION_TIME_KEY,
    VISITOR_KEY,
    CookieStore,
    IdentityManager,
    MemoryStore,
    StorageUnavailable,
)


class FakeClock:
    def __init__(self, start: float = 1_767_614_400.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_visitor_id_is_persisted() -> None:
    persistent = MemoryStore()
    manager = IdentityManager(persistent, MemoryStore())

    first = manager.get_or_create_visitor_id()

    assert manager.get_or_create_visitor_id() == first
    assert persistent.get(VISITOR_KEY) == first


def test_cookie_fallback_when_local_storage_blocked() -> None:
    clock = FakeClock()
    cookies = CookieStore(clock=clock)
    manager = IdentityManager(MemoryStore(available=False), MemoryStore(), fallback=cookies, clock=clock)

    first = manager.get_or_create_visitor_id()

    assert cookies.get(VISITOR_KEY) == first
    assert manager.get_or_create_visitor_id() == first


def test_all_storage_blocked_generates_fresh_ids() -> None:
    manager = IdentityManager(MemoryStore(available=False), MemoryStore(available=False))

    assert manager.get_or_create_visitor_id() != manager.get_or_create_visitor_id()
    assert manager.get_or_create_session_id() != manager.get_or_create_session_id()
    manager.touch()


def test_session_kept_within_timeout() -> None:
    clock = FakeClock()
    manager = IdentityManager(MemoryStore(), MemoryStore(), clock=clock)

    sid = manager.get_or_create_session_id()
    clock.advance(29 * 60)

    assert manager.get_or_create_session_id() == sid


def test_session_expires_after_inactivity() -> None:
    clock = FakeClock()
    manager = IdentityManager(MemoryStore(), MemoryStore(), clock=clock)

    sid = manager.get_or_create_session_id()
    clock.advance(31 * 60)

    assert manager.get_or_create_session_id() != sid


def test_touch_extends_session() -> None:
    clock = FakeClock()
    manager = IdentityManager(MemoryStore(), MemoryStore(), clock=clock)

    sid = manager.get_or_create_session_id()
    clock.advance(20 * 60)
    manager.touch()
    clock.advance(20 * 60)

    assert manager.get_or_create_session_id() == sid


def test_unparsable_session_time_starts_new_session() -> None:
    session = MemoryStore()
    session.set(SESSION_KEY, "old-sid")
    session.set(SESSION_TIME_KEY, "yesterday")
    manager = IdentityManager(MemoryStore(), session)

    assert manager.get_or_create_session_id() != "old-sid"


def test_custom_session_timeout() -> None:
    clock = FakeClock()
    manager = IdentityManager(MemoryStore(), MemoryStore(), session_timeout=timedelta(minutes=5), clock=clock)

    sid = manager.get_or_create_session_id()
    clock.advance(6 * 60)

    assert manager.get_or_create_session_id() != sid


def test_cookie_store_expires_values() -> None:
    clock = FakeClock()
    store = CookieStore(lifetime=timedelta(seconds=10), clock=clock)

    store.set("k", "v")
    assert store.get("k") == "v"

    clock.advance(11)
    assert store.get("k") is None


def test_memory_store_unavailable_raises() -> None:
    with pytest.raises(StorageUnavailable):
        MemoryStore(available=False).get("k")
