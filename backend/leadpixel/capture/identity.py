"""Visitor and session identity for the capture agent.

WHAT:
    - visitor id (`_tai_vid`): generated once, kept in the persistent store,
      falling back to a two-year cookie when that store is unavailable
    - session id (`_tai_sid`): rotates after 30 minutes without activity;
      its last-activity time lives next to it in `_tai_sid_time`

WHY:
    Storage can be blocked (private browsing, strict cookie policies). Every
    failure degrades to a freshly generated id: the visitor loses
    continuity, the page keeps working.
"""

import logging
import time
import uuid
from datetime import timedelta
from http.cookiejar import Cookie, CookieJar
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

VISITOR_KEY = "_tai_vid"
SESSION_KEY = "_tai_sid"
SESSION_TIME_KEY = "_tai_sid_time"

COOKIE_LIFETIME = timedelta(days=365 * 2)

Clock = Callable[[], float]


class StorageUnavailable(Exception):
    """Raised by a store that cannot be read or written."""


class Storage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryStore:
    """Dict-backed store. `available=False` behaves like blocked storage."""

    def __init__(self, available: bool = True):
        self.available = available
        self._data: Dict[str, str] = {}

    def _check(self) -> None:
        if not self.available:
            raise StorageUnavailable("storage disabled")

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._check()
        self._data[key] = value


class CookieStore:
    """Store backed by an `http.cookiejar.CookieJar`.

    Cookies are first-party (`path=/`) and expire after `lifetime`.
    """

    def __init__(
        self,
        jar: Optional[CookieJar] = None,
        domain: str = "",
        lifetime: timedelta = COOKIE_LIFETIME,
        clock: Clock = time.time,
    ):
        self.jar = jar if jar is not None else CookieJar()
        self.domain = domain
        self.lifetime = lifetime
        self.clock = clock

    def get(self, key: str) -> Optional[str]:
        now = int(self.clock())
        for cookie in self.jar:
            if cookie.name == key and not cookie.is_expired(now):
                return cookie.value
        return None

    def set(self, key: str, value: str) -> None:
        expires = int(self.clock() + self.lifetime.total_seconds())
        self.jar.set_cookie(Cookie(
            version=0,
            name=key,
            value=value,
            port=None,
            port_specified=False,
            domain=self.domain,
            domain_specified=bool(self.domain),
            domain_initial_dot=False,
            path="/",
            path_specified=True,
            secure=False,
            expires=expires,
            discard=False,
            comment=None,
            comment_url=None,
            rest={"SameSite": "Lax"},
        ))


def generate_id() -> str:
    return str(uuid.uuid4())


class IdentityManager:
    """Resolves visitor and session ids against the page's stores.

    Args:
        persistent: Long-lived store (the browser's local storage)
        session: Per-tab store (the browser's session storage)
        fallback: Cookie store used when `persistent` raises
        session_timeout: Inactivity window before a new session id
        clock: Seconds since the epoch
    """

    def __init__(
        self,
        persistent: Storage,
        session: Storage,
        fallback: Optional[Storage] = None,
        session_timeout: timedelta = timedelta(minutes=30),
        clock: Clock = time.time,
    ):
        self.persistent = persistent
        self.session = session
        self.fallback = fallback
        self.session_timeout = session_timeout
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def get_or_create_visitor_id(self) -> str:
        try:
            return self._get_or_create(self.persistent, VISITOR_KEY)
        except Exception as e:
            logger.debug(f"[CAPTURE] Persistent storage unavailable: {e}")

        if self.fallback is not None:
            try:
                return self._get_or_create(self.fallback, VISITOR_KEY)
            except Exception as e:
                logger.debug(f"[CAPTURE] Cookie storage unavailable: {e}")

        return generate_id()

    @staticmethod
    def _get_or_create(store: Storage, key: str) -> str:
        value = store.get(key)
        if not value:
            value = generate_id()
            store.set(key, value)
        return value

    def get_or_create_session_id(self) -> str:
        now = self._now_ms()
        try:
            sid = self.session.get(SESSION_KEY)
            last_active = self.session.get(SESSION_TIME_KEY)

            if sid and last_active:
                try:
                    idle_ms = now - int(last_active)
                except ValueError:
                    idle_ms = None
                if idle_ms is None or idle_ms > self.session_timeout.total_seconds() * 1000:
                    sid = None

            if not sid:
                sid = generate_id()

            self.session.set(SESSION_KEY, sid)
            self.session.set(SESSION_TIME_KEY, str(now))
            return sid
        except Exception as e:
            logger.debug(f"[CAPTURE] Session storage unavailable: {e}")
            return generate_id()

    def touch(self) -> None:
        """Record user activity so the session does not expire."""
        try:
            self.session.set(SESSION_TIME_KEY, str(self._now_ms()))
        except Exception as e:
            logger.debug(f"[CAPTURE] Could not refresh session time: {e}")
