"""Capture agent configuration.

WHAT:
    Immutable settings for one agent instance, built once from the embed
    queue (the list of `{"pixelId": ...}` / `{"endpoint": ...}` items a page
    pushes before the agent loads) and passed to every component.

WHY:
    Endpoint, thresholds and intervals are decided at initialization and
    never change for the life of the page, so they are frozen rather than
    read from module globals.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlparse

from leadpixel import __version__

logger = logging.getLogger(__name__)

TRACK_PATH = "/api/pixel/track"
DEFAULT_ENDPOINT = "https://app.trafficai.io" + TRACK_PATH
SCRIPT_NAME = "pixel.js"


@dataclass(frozen=True)
class AgentConfig:
    pixel_ids: Tuple[str, ...]
    endpoint: str = DEFAULT_ENDPOINT
    version: str = __version__
    session_timeout: timedelta = timedelta(minutes=30)
    heartbeat_interval: float = 30.0
    scroll_thresholds: Tuple[int, ...] = (25, 50, 75, 100)

    @classmethod
    def from_queue(
        cls,
        items: Iterable[Mapping[str, Any]],
        script_src: Optional[str] = None,
    ) -> "AgentConfig":
        """Build the config from queued embed items.

        Endpoint resolution: an explicit `endpoint` item (last one wins),
        else the origin of the script that loaded the agent, else the
        production endpoint.

        Raises:
            ValueError: If no item names a pixel id
        """
        pixel_ids = []
        endpoint = None
        for item in items or ():
            if item.get("pixelId"):
                pixel_ids.append(str(item["pixelId"]))
            if item.get("endpoint"):
                endpoint = str(item["endpoint"])

        if not pixel_ids:
            logger.warning("[CAPTURE] No pixel ID found")
            raise ValueError("No pixel ID found")

        return cls(
            pixel_ids=tuple(pixel_ids),
            endpoint=endpoint or endpoint_from_script(script_src) or DEFAULT_ENDPOINT,
        )


def endpoint_from_script(script_src: Optional[str]) -> Optional[str]:
    """`<origin>/api/pixel/track` for the script URL that loaded the agent."""
    if not script_src or SCRIPT_NAME not in script_src:
        return None
    parsed = urlparse(script_src)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}{TRACK_PATH}"
