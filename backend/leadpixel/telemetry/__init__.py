"""
Telemetry Module
================

Error tracking for the API and the background worker.

Usage:
    from leadpixel.telemetry import init_sentry, capture_exception
"""

from leadpixel.telemetry.sentry import (
    init_sentry,
    set_pixel_context,
    capture_exception,
)

__all__ = [
    "init_sentry",
    "set_pixel_context",
    "capture_exception",
]
