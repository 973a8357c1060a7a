"""
Capture Config Tests (Unit)
===========================

WHAT: Unit tests for building AgentConfig from the embed queue.

NOTE:
These tests live outside `backend/leadpixel/tests/` to avoid loading the integration-test
`conftest.py`, which configures a database and environment variables not required here.

REFERENCES:
- backend/leadpixel/capture/config.py
"""

import dataclasses

import pytest

from leadpixel.capture.config import DEFAULT_ENDPOINT, AgentConfig, endpoint_from_script


def test_collects_pixel_ids_and_last_endpoint() -> None:
    config = AgentConfig.from_queue([
        {"pixelId": "px_a"},
        {"endpoint": "https://first.example/track"},
        {"pixelId": "px_b"},
        {"endpoint": "https://second.example/track"},
    ])

    assert config.pixel_ids == ("px_a", "px_b")
    assert config.endpoint == "https://second.example/track"


def test_endpoint_from_script_origin() -> None:
    config = AgentConfig.from_queue([{"pixelId": "px_a"}], "https://cdn.example.com/static/pixel.js?v=2")

    assert config.endpoint == "https://cdn.example.com/api/pixel/track"


def test_default_endpoint() -> None:
    assert AgentConfig.from_queue([{"pixelId": "px_a"}], "https://cdn.example.com/other.js").endpoint == DEFAULT_ENDPOINT
    assert endpoint_from_script("pixel.js") is None
    assert endpoint_from_script(None) is None


def test_missing_pixel_id_raises() -> None:
    with pytest.raises(ValueError):
        AgentConfig.from_queue([{"endpoint": "https://x.example/track"}])


def test_config_is_frozen() -> None:
    config = AgentConfig(pixel_ids=("px_a",))

    with pytest.raises(dataclasses.FrozenInstanceError):
        config.endpoint = "https://elsewhere.example/"
