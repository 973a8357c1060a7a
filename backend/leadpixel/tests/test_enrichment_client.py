"""Enrichment client tests

WHAT: enrich_visitor() against httpx.MockTransport and a SQLite database
WHY: Enrichment is best-effort; failures must leave the visitor untouched and never raise
REFERENCES:
    - leadpixel/services/enrichment_client.py
"""

import asyncio
import json

import httpx

from leadpixel.services.enrichment_client import EnrichmentClient, enrich_visitor
from leadpixel.services.visitor_store import VisitorMerge, upsert_visitor

PROFILE = {
    "email": "lead@acme.com",
    "firstName": "Lin",
    "lastName": "Park",
    "company": "Acme",
    "jobTitle": "VP Sales",
    "city": "Austin",
}


def _seed_visitor(db, pixel, ip="203.0.113.7", company=None):
    result = upsert_visitor(db, VisitorMerge(
        pixel_id=pixel.id,
        visitor_id="vid-1",
        identity={"ip_address": ip, "user_agent": "Mozilla/5.0 (test)", "company": company},
    ))
    db.commit()
    return result.id


class RecordingHandler:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = PROFILE if body is None else body
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


def test_enrich_visitor_applies_profile(test_db_session, pixel, credential, get_visitor):
    visitor_pk = _seed_visitor(test_db_session, pixel)
    handler = RecordingHandler()

    enriched = asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(handler)))

    assert enriched is True
    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.email == "lead@acme.com"
    assert visitor.first_name == "Lin"
    assert visitor.company == "Acme"
    assert visitor.job_title == "VP Sales"
    assert visitor.is_enriched is True
    assert visitor.is_identified is True
    assert visitor.enrichment_source == "traffic_ai"
    assert visitor.enriched_at is not None

    request = handler.requests[0]
    assert request.url.path == "/v1/enrich"
    assert request.headers["Authorization"] == "Bearer owner-enrich-key"
    assert json.loads(request.content) == {"ip": "203.0.113.7", "userAgent": "Mozilla/5.0 (test)"}


def test_enrichment_does_not_blank_known_fields(test_db_session, pixel, credential, get_visitor):
    visitor_pk = _seed_visitor(test_db_session, pixel, company="Known Co")
    handler = RecordingHandler(body={"name": "Lin Park", "company": ""})

    asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(handler)))

    visitor = get_visitor(pixel.id, "vid-1")
    assert visitor.company == "Known Co"
    assert visitor.full_name == "Lin Park"
    assert visitor.is_identified is False


def test_non_2xx_is_dropped(test_db_session, pixel, credential, get_visitor):
    visitor_pk = _seed_visitor(test_db_session, pixel)
    handler = RecordingHandler(status_code=429, body={"error": "rate limited"})

    enriched = asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(handler)))

    assert enriched is False
    assert get_visitor(pixel.id, "vid-1").is_enriched is False


def test_network_error_is_dropped(test_db_session, pixel, credential, get_visitor):
    visitor_pk = _seed_visitor(test_db_session, pixel)

    def failing(request):
        raise httpx.ConnectError("connection refused", request=request)

    enriched = asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(failing)))

    assert enriched is False
    assert get_visitor(pixel.id, "vid-1").is_enriched is False


def test_empty_profile_is_not_applied(test_db_session, pixel, credential, get_visitor):
    visitor_pk = _seed_visitor(test_db_session, pixel)
    handler = RecordingHandler(body={"status": "not_found"})

    enriched = asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(handler)))

    assert enriched is False
    assert get_visitor(pixel.id, "vid-1").is_enriched is False


def test_missing_credential_skips_lookup(test_db_session, pixel):
    visitor_pk = _seed_visitor(test_db_session, pixel)
    handler = RecordingHandler()

    enriched = asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(handler)))

    assert enriched is False
    assert handler.requests == []


def test_already_enriched_visitor_is_skipped(test_db_session, pixel, credential):
    visitor_pk = _seed_visitor(test_db_session, pixel)
    handler = RecordingHandler()
    transport = httpx.MockTransport(handler)

    assert asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=transport)) is True
    assert asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=transport)) is False
    assert len(handler.requests) == 1


def test_visitor_without_ip_is_skipped(test_db_session, pixel, credential):
    visitor_pk = _seed_visitor(test_db_session, pixel, ip=None)
    handler = RecordingHandler()

    assert asyncio.run(enrich_visitor(test_db_session, visitor_pk, transport=httpx.MockTransport(handler))) is False
    assert handler.requests == []


def test_client_uses_configured_base_url():
    handler = RecordingHandler()
    client = EnrichmentClient(
        api_key="k",
        base_url="https://enrich.example/",
        transport=httpx.MockTransport(handler),
    )

    data = asyncio.run(client.enrich("198.51.100.1", None))

    assert data == PROFILE
    assert str(handler.requests[0].url) == "https://enrich.example/v1/enrich"
    assert json.loads(handler.requests[0].content)["userAgent"] == ""
