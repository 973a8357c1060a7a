"""Behavioral capture agent.

WHAT:
    Turns page signals into the typed events the tracking endpoint accepts:
    pageview, scroll, click, form_submit (+ identify), heartbeat, exit.

HOW:
    The host feeds `PageSignal`s to `handle()`, which looks the signal up in
    a dispatch table built once in `__init__`. `tick()` is called by the
    host's timer and emits a heartbeat when the interval has elapsed.

    Per-page state (max scroll depth, click count, whether exit was sent)
    lives on the agent; thresholds and intervals come from `AgentConfig`.

USAGE:
    config = AgentConfig.from_queue([{"pixelId": "px_abc123"}], script_src)
    agent = CaptureAgent(config, identity, BeaconTransport(), page=PageInfo(url=...))
    agent.handle(PageSignal("load", data={"loadTime": 412}))
"""

import logging
import platform
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from leadpixel.capture.config import AgentConfig
from leadpixel.capture.forms import FormElement, extract_contact
from leadpixel.capture.identity import IdentityManager
from leadpixel.capture.transport import Transport

logger = logging.getLogger(__name__)

INTERACTIVE_TAGS = frozenset({"A", "BUTTON"})
ACTIVITY_SIGNALS = ("pointerdown", "keydown", "touchstart")
MAX_CLICK_TEXT = 100


@dataclass
class PageInfo:
    url: Optional[str] = None
    path: Optional[str] = None
    title: Optional[str] = None
    referrer: Optional[str] = None
    host: Optional[str] = None


@dataclass
class Element:
    """Minimal DOM node: enough to decide whether a click matters."""
    tag_name: str
    id: Optional[str] = None
    class_name: Optional[str] = None
    text: str = ""
    href: Optional[str] = None
    parent: Optional["Element"] = None

    def closest(self, tag_name: str) -> Optional["Element"]:
        node: Optional[Element] = self
        while node is not None:
            if node.tag_name.upper() == tag_name:
                return node
            node = node.parent
        return None


@dataclass
class PageSignal:
    """A browser event delivered to the agent."""
    type: str
    target: Any = None
    data: Dict[str, Any] = field(default_factory=dict)


def default_fingerprint(version: str) -> Dict[str, Any]:
    """Coarse host attributes, mirroring what a browser agent reports."""
    offset = time.altzone if time.localtime().tm_isdst > 0 else time.timezone
    return {
        "userAgent": f"leadpixel-agent/{version} Python/{platform.python_version()}",
        "language": None,
        "platform": platform.system(),
        "timezone": time.tzname[0],
        "timezoneOffset": offset // 60,
        "cookiesEnabled": True,
    }


class CaptureAgent:
    """Observes one page view and reports it.

    Args:
        config: Frozen agent settings
        identity: Visitor/session id resolution
        transport: Delivery (BeaconTransport or FetchTransport)
        page: Current page
        fingerprint: Fingerprint snapshot sent with every event
        clock: Seconds since the epoch
    """

    def __init__(
        self,
        config: AgentConfig,
        identity: IdentityManager,
        transport: Transport,
        page: Optional[PageInfo] = None,
        fingerprint: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.identity = identity
        self.transport = transport
        self.page = page or PageInfo()
        self.fingerprint = fingerprint if fingerprint is not None else default_fingerprint(config.version)
        self.clock = clock

        self._visitor_id = identity.get_or_create_visitor_id()
        self._session_id = identity.get_or_create_session_id()

        self.page_load_time = clock()
        self.last_heartbeat = self.page_load_time
        self.max_scroll_depth = 0
        self.click_count = 0
        self.exit_sent = False

        self._handlers: Dict[str, Callable[[PageSignal], None]] = {
            "load": self._on_load,
            "scroll": self._on_scroll,
            "click": self._on_click,
            "submit": self._on_submit,
            "visibilitychange": self._on_visibility_change,
            "beforeunload": self._on_unload,
        }
        for name in ACTIVITY_SIGNALS:
            self._handlers[name] = self._on_activity

        logger.info(f"[CAPTURE] Initialized: {', '.join(config.pixel_ids)}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def visitor_id(self) -> str:
        return self._visitor_id

    @property
    def session_id(self) -> str:
        return self._session_id

    def handle(self, signal: PageSignal) -> None:
        handler = self._handlers.get(signal.type)
        if handler is None:
            return
        # Page introspection failures stay inside the agent
        try:
            handler(signal)
        except Exception as e:
            logger.debug(f"[CAPTURE] Failed to handle {signal.type}: {e}")

    def tick(self) -> bool:
        """Emit a heartbeat if the interval has elapsed. Returns True if sent."""
        now = self.clock()
        if now - self.last_heartbeat < self.config.heartbeat_interval:
            return False
        self.last_heartbeat = now
        try:
            self.track("heartbeat", self._progress())
        except Exception as e:
            logger.debug(f"[CAPTURE] Heartbeat failed: {e}")
            return False
        return True

    def track(self, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> None:
        self.transport.send(self.config.endpoint, self.build_payload(event_type, event_data))

    def identify(self, email: str, user_data: Optional[Dict[str, Any]] = None) -> None:
        self.track("identify", {"email": email, "userData": user_data})

    def build_payload(self, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        timestamp = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        return {
            "pixelIds": list(self.config.pixel_ids),
            "visitorId": self._visitor_id,
            "sessionId": self._session_id,
            "eventId": uuid.uuid4().hex,
            "eventType": event_type,
            "eventData": event_data or {},
            "page": asdict(self.page),
            "fingerprint": dict(self.fingerprint),
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
            "version": self.config.version,
        }

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _progress(self) -> Dict[str, Any]:
        return {
            "timeOnPage": int(round(self.clock() - self.page_load_time)),
            "maxScrollDepth": self.max_scroll_depth,
            "clickCount": self.click_count,
        }

    def _on_load(self, signal: PageSignal) -> None:
        self.track("pageview", {"loadTime": signal.data.get("loadTime")})

    def _on_activity(self, signal: PageSignal) -> None:
        self.identity.touch()

    def _on_scroll(self, signal: PageSignal) -> None:
        self.identity.touch()
        percent = scroll_percent(signal.data)
        for threshold in self.config.scroll_thresholds:
            if percent >= threshold and self.max_scroll_depth < threshold:
                self.max_scroll_depth = threshold
                self.track("scroll", {"depth": threshold})

    def _on_click(self, signal: PageSignal) -> None:
        self.click_count += 1
        target = signal.target
        if not isinstance(target, Element):
            return

        link = target.closest("A")
        if target.tag_name.upper() not in INTERACTIVE_TAGS and link is None and target.closest("BUTTON") is None:
            return

        self.track("click", {
            "tagName": target.tag_name.upper(),
            "id": target.id or None,
            "className": target.class_name or None,
            "text": (target.text or "")[:MAX_CLICK_TEXT],
            "href": target.href or (link.href if link else None),
        })

    def _on_submit(self, signal: PageSignal) -> None:
        form = signal.target
        if not isinstance(form, FormElement):
            return

        contact = extract_contact(form.fields)
        data = {
            "formId": form.id or None,
            "formName": form.name or None,
            "formAction": form.action or None,
            "fieldCount": len(form.fields),
            "hasEmailField": "email" in contact,
        }
        data.update(contact)
        self.track("form_submit", data)

        if contact.get("email"):
            user_data = {k: v for k, v in contact.items() if k != "email"}
            self.identify(contact["email"], user_data or None)

    def _on_visibility_change(self, signal: PageSignal) -> None:
        state = signal.data.get("visibilityState")
        if state == "hidden":
            self._send_exit()
        elif state == "visible":
            self.exit_sent = False

    def _on_unload(self, signal: PageSignal) -> None:
        self._send_exit()

    def _send_exit(self) -> None:
        # hide and unload usually fire together; report the exit once
        if self.exit_sent:
            return
        self.exit_sent = True
        self.track("exit", self._progress())


def scroll_percent(data: Dict[str, Any]) -> int:
    """Scroll position as a percentage of the scrollable height."""
    if "percent" in data:
        return int(data["percent"])
    scroll_top = float(data.get("scrollTop", 0))
    scrollable = float(data.get("scrollHeight", 0)) - float(data.get("viewportHeight", 0))
    if scrollable <= 0:
        return 0
    return int(round(scroll_top / scrollable * 100))
