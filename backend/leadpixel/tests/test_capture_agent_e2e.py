"""Capture agent -> tracking endpoint

WHAT: Drives CaptureAgent through a FetchTransport bound to the FastAPI TestClient
WHY: The agent's payloads and the endpoint's parser must agree on the wire format
REFERENCES:
    - leadpixel/capture/agent.py
    - leadpixel/routers/pixel_track.py
"""

import pytest

from leadpixel.capture import (
    AgentConfig,
    CaptureAgent,
    Element,
    FetchTransport,
    FormElement,
    FormField,
    IdentityManager,
    MemoryStore,
    PageInfo,
    PageSignal,
)
from leadpixel.models import PixelEvent

ENDPOINT = "http://testserver/api/pixel/track"


class FakeClock:
    def __init__(self, start=1_767_614_400.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agent(client, pixel, clock):
    config = AgentConfig(pixel_ids=(pixel.pixel_code,), endpoint=ENDPOINT)
    identity = IdentityManager(MemoryStore(), MemoryStore(), clock=clock)
    return CaptureAgent(
        config,
        identity,
        FetchTransport(client=client),
        page=PageInfo(url="https://example.com/pricing", path="/pricing", referrer="https://google.com/"),
        fingerprint={"userAgent": "Mozilla/5.0 (agent test)", "language": "en-US"},
        clock=clock,
    )


def test_pageview_click_heartbeat_reaches_score_12(agent, clock, pixel, get_visitor):
    agent.handle(PageSignal("load", data={"loadTime": 350}))
    agent.handle(PageSignal("click", target=Element("BUTTON", id="cta", text="Book a demo")))
    clock.advance(120)
    assert agent.tick() is True

    visitor = get_visitor(pixel.id, agent.visitor_id)
    assert visitor.total_pageviews == 1
    assert visitor.total_clicks == 1
    assert visitor.total_time_on_site == 120
    assert visitor.first_page_url == "https://example.com/pricing"
    assert visitor.user_agent == "Mozilla/5.0 (agent test)"
    assert visitor.lead_score == 12


def test_form_submit_identifies_visitor(agent, pixel, test_db_session, get_visitor):
    form = FormElement(
        id="contact",
        action="/contact",
        fields=(
            FormField(name="work_email", type="email", value="a@b.com"),
            FormField(name="full_name", value="Ada Lovelace"),
            FormField(name="password", type="password", value="hunter2"),
        ),
    )

    agent.handle(PageSignal("submit", target=form))

    visitor = get_visitor(pixel.id, agent.visitor_id)
    assert visitor.email == "a@b.com"
    assert visitor.is_identified is True
    assert visitor.form_submissions == 1

    events = test_db_session.query(PixelEvent).filter(PixelEvent.pixel_id == pixel.id).all()
    assert sorted(e.event_type for e in events) == ["form_submit", "identify"]
    submit = next(e for e in events if e.event_type == "form_submit")
    assert submit.event_metadata["event_data"]["hasEmailField"] is True
    assert submit.event_metadata["event_data"]["name"] == "Ada Lovelace"
    assert "hunter2" not in str(submit.event_metadata)


def test_exit_is_reported_once_per_hide(agent, clock, pixel, test_db_session):
    clock.advance(45)
    agent.handle(PageSignal("visibilitychange", data={"visibilityState": "hidden"}))
    agent.handle(PageSignal("beforeunload"))

    exits = test_db_session.query(PixelEvent).filter(PixelEvent.event_type == "exit").all()
    assert len(exits) == 1
    assert exits[0].event_metadata["event_data"]["timeOnPage"] == 45
