"""Tracking endpoint tests

WHAT: POST /api/pixel/track end to end against SQLite
WHY: The endpoint is the hot path; counters, sessions and dedup must hold under repeated delivery
REFERENCES:
    - leadpixel/routers/pixel_track.py
    - leadpixel/services/visitor_store.py
"""

import json
from datetime import timedelta

from sqlalchemy import update

from leadpixel.models import Pixel, PixelEvent, PixelStatusEnum, Visitor
from leadpixel.utils.clock import utcnow

TRACK_URL = "/api/pixel/track"


def _event(pixel_code, event_type="pageview", visitor_id="vid-1", **overrides):
    payload = {
        "pixelIds": [pixel_code],
        "visitorId": visitor_id,
        "sessionId": "sid-1",
        "eventType": event_type,
        "eventData": {},
        "page": {"url": "https://example.com/pricing", "referrer": "https://google.com/"},
        "fingerprint": {"userAgent": "Mozilla/5.0 (test)", "language": "en-US"},
        "timestamp": "2026-01-05T12:00:00Z",
        "version": "1.0.0",
    }
    payload.update(overrides)
    return payload


def test_scenario_pageview_click_heartbeat_scores_12(client, pixel, get_visitor):
    """pageview + click + heartbeat(120s) -> 2 + 5 + 4 + 0 + 1 + 0."""
    assert client.post(TRACK_URL, json=_event(pixel.pixel_code, "pageview")).status_code == 200
    assert client.post(TRACK_URL, json=_event(pixel.pixel_code, "click")).status_code == 200
    response = client.post(
        TRACK_URL,
        json=_event(pixel.pixel_code, "heartbeat", eventData={"timeOnPage": 120, "maxScrollDepth": 0, "clickCount": 1}),
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.total_pageviews == 1
    assert visitor.total_clicks == 1
    assert visitor.total_time_on_site == 120
    assert visitor.total_sessions == 1
    assert visitor.lead_score == 12


def test_first_event_creates_visitor_with_base_score(client, pixel, get_visitor):
    client.post(TRACK_URL, json=_event(pixel.pixel_code))

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.total_pageviews == 1
    assert visitor.total_sessions == 1
    assert visitor.lead_score == 5
    assert visitor.first_page_url == "https://example.com/pricing"
    assert visitor.first_referrer == "https://google.com/"
    assert visitor.user_agent == "Mozilla/5.0 (test)"
    assert visitor.fingerprint_hash.startswith("fp_")


def test_overlapping_heartbeats_take_max_time(client, pixel, get_visitor):
    for seconds in (30, 90, 60):
        client.post(TRACK_URL, json=_event(pixel.pixel_code, "heartbeat", eventData={"timeOnPage": seconds}))

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.total_time_on_site == 90
    assert visitor.total_pageviews == 0


def test_scroll_depth_is_max_merged(client, pixel, get_visitor):
    client.post(TRACK_URL, json=_event(pixel.pixel_code, "scroll", eventData={"depth": 75}))
    client.post(TRACK_URL, json=_event(pixel.pixel_code, "scroll", eventData={"depth": 25}))

    assert get_visitor(pixel.id, "vid-1").max_scroll_depth == 75


def test_session_increments_only_after_inactivity_gap(client, pixel, test_db_session, get_visitor):
    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    assert get_visitor(pixel.id, "vid-1").total_sessions == 1

    # Last seen 31 minutes ago -> next event opens a new session
    test_db_session.execute(
        update(Visitor)
        .where(Visitor.pixel_id == pixel.id, Visitor.visitor_id == "vid-1")
        .values(last_seen_at=utcnow() - timedelta(minutes=31))
    )
    test_db_session.commit()

    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.total_sessions == 2
    assert visitor.total_pageviews == 3


def test_session_gap_follows_configured_timeout(client, pixel, test_db_session, get_visitor, monkeypatch, clear_settings_cache):
    monkeypatch.setenv("SESSION_TIMEOUT_MINUTES", "60")
    client.post(TRACK_URL, json=_event(pixel.pixel_code))

    test_db_session.execute(
        update(Visitor)
        .where(Visitor.pixel_id == pixel.id, Visitor.visitor_id == "vid-1")
        .values(last_seen_at=utcnow() - timedelta(minutes=45))
    )
    test_db_session.commit()

    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    assert get_visitor(pixel.id, "vid-1").total_sessions == 1


def test_non_finite_numbers_are_ignored(client, pixel, get_visitor):
    client.post(TRACK_URL, json=_event(pixel.pixel_code, "heartbeat", eventData={"timeOnPage": 40}))

    for value in ("inf", "-inf", "nan", "1e400"):
        response = client.post(
            TRACK_URL,
            json=_event(pixel.pixel_code, "heartbeat", eventData={"timeOnPage": value, "maxScrollDepth": value}),
        )
        assert response.status_code == 200

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.total_time_on_site == 40
    assert visitor.max_scroll_depth == 0


def test_duplicate_event_id_is_absorbed(client, pixel, test_db_session, get_visitor):
    payload = _event(pixel.pixel_code, eventId="evt-123")

    assert client.post(TRACK_URL, json=payload).status_code == 200
    assert client.post(TRACK_URL, json=payload).status_code == 200

    assert get_visitor(pixel.id, "vid-1").total_pageviews == 1
    assert test_db_session.query(PixelEvent).filter(PixelEvent.pixel_id == pixel.id).count() == 1


def test_events_without_id_are_all_counted(client, pixel, get_visitor):
    payload = _event(pixel.pixel_code)
    client.post(TRACK_URL, json=payload)
    client.post(TRACK_URL, json=payload)

    assert get_visitor(pixel.id, "vid-1").total_pageviews == 2


def test_event_log_and_pixel_counters(client, pixel, test_db_session):
    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    client.post(TRACK_URL, json=_event(pixel.pixel_code, "click"))

    test_db_session.expire_all()
    stored = test_db_session.query(Pixel).filter(Pixel.id == pixel.id).one()
    assert stored.events_count == 2
    assert stored.last_event_at is not None

    events = test_db_session.query(PixelEvent).filter(PixelEvent.pixel_id == pixel.id).all()
    assert sorted(e.event_type for e in events) == ["click", "pageview"]
    assert all(e.event_metadata["source"] == "pixel" for e in events)


def test_unknown_pixel_code_is_skipped(client, pixel, test_db_session, get_visitor):
    payload = _event(pixel.pixel_code)
    payload["pixelIds"] = ["px_unknown", pixel.pixel_code]

    response = client.post(TRACK_URL, json=payload)

    assert response.status_code == 200
    assert get_visitor(pixel.id, "vid-1").total_pageviews == 1
    assert test_db_session.query(Visitor).count() == 1


def test_pending_pixel_is_activated(client, make_pixel, test_db_session):
    pending = make_pixel(pixel_code="px_pending", status=PixelStatusEnum.pending)

    client.post(TRACK_URL, json=_event("px_pending"))

    test_db_session.expire_all()
    assert test_db_session.get(Pixel, pending.id).status == PixelStatusEnum.active


def test_identify_event_sets_email_without_identity_bonus(client, pixel, get_visitor):
    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    client.post(TRACK_URL, json=_event(pixel.pixel_code, "identify", eventData={"email": "a@b.com"}))

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.email == "a@b.com"
    assert visitor.is_identified is True
    assert visitor.identified_at is not None
    # pageviews 2 + sessions 5; identification bonus is webhook-only
    assert visitor.lead_score == 7


def test_text_plain_beacon_body_is_accepted(client, pixel, get_visitor):
    response = client.post(
        TRACK_URL,
        content=json.dumps(_event(pixel.pixel_code)),
        headers={"Content-Type": "text/plain;charset=UTF-8"},
    )

    assert response.status_code == 200
    assert get_visitor(pixel.id, "vid-1").total_pageviews == 1


def test_invalid_json_returns_400(client):
    response = client.post(TRACK_URL, content="{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON payload"


def test_missing_required_fields_returns_400(client, pixel):
    payload = _event(pixel.pixel_code)
    del payload["visitorId"]

    response = client.post(TRACK_URL, json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required fields"


def test_empty_pixel_ids_returns_400(client):
    payload = _event("px_any")
    payload["pixelIds"] = []

    assert client.post(TRACK_URL, json=payload).status_code == 400


def test_preflight_reflects_origin(client):
    response = client.options(
        TRACK_URL,
        headers={
            "Origin": "https://customer-site.example",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://customer-site.example"
    assert "POST" in response.headers["access-control-allow-methods"]
    assert response.headers["access-control-allow-credentials"] == "true"


def test_post_response_carries_cors_headers(client, pixel):
    response = client.post(
        TRACK_URL,
        json=_event(pixel.pixel_code),
        headers={"Origin": "https://customer-site.example"},
    )

    assert response.headers["access-control-allow-origin"] == "https://customer-site.example"


def test_enrichment_dispatched_for_unenriched_visitor_with_public_ip(client, pixel, dispatcher, get_visitor):
    client.post(TRACK_URL, json=_event(pixel.pixel_code), headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.ip_address == "203.0.113.7"
    assert dispatcher.dispatched == [visitor.id]


def test_enrichment_not_dispatched_without_usable_ip(client, pixel, dispatcher):
    # TestClient peers as "testclient", which is not an address
    client.post(TRACK_URL, json=_event(pixel.pixel_code))

    assert dispatcher.dispatched == []


def test_enrichment_not_dispatched_for_enriched_visitor(client, pixel, dispatcher, test_db_session):
    client.post(TRACK_URL, json=_event(pixel.pixel_code))
    test_db_session.execute(
        update(Visitor).where(Visitor.visitor_id == "vid-1").values(is_enriched=True)
    )
    test_db_session.commit()

    client.post(TRACK_URL, json=_event(pixel.pixel_code), headers={"X-Forwarded-For": "203.0.113.7"})

    assert dispatcher.dispatched == []


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
