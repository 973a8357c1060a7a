"""
Capture Agent
=============

Python rendition of the embeddable tracking script: identity, page signal
handling, form heuristics and delivery.

Usage:
    from leadpixel.capture import AgentConfig, CaptureAgent
"""

from leadpixel.capture.agent import CaptureAgent, Element, PageInfo, PageSignal
from leadpixel.capture.config import AgentConfig
from leadpixel.capture.forms import FormElement, FormField, extract_contact
from leadpixel.capture.identity import CookieStore, IdentityManager, MemoryStore
from leadpixel.capture.transport import BeaconTransport, FetchTransport

__all__ = [
    "AgentConfig",
    "BeaconTransport",
    "CaptureAgent",
    "CookieStore",
    "Element",
    "FetchTransport",
    "FormElement",
    "FormField",
    "IdentityManager",
    "MemoryStore",
    "PageInfo",
    "PageSignal",
    "extract_contact",
]
