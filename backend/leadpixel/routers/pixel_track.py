"""Pixel tracking endpoint for the website capture agent.

WHAT:
    Receives behavioral events (pageview, scroll, click, form_submit,
    heartbeat, exit, identify) from the capture agent, appends them to the
    event log and merges them into the per-visitor aggregate.

WHY:
    This is the direct telemetry path. It runs on every page of every site
    that embeds a pixel, so it must be cheap, tolerate duplicate and lost
    deliveries, and never fail a whole batch because one pixel code is bad.

REFERENCES:
    - leadpixel/capture/agent.py (sender)
    - leadpixel/services/visitor_store.py (atomic merge)
    - leadpixel/workers/arq_enqueue.py (enrichment hand-off)
"""

import hashlib
import ipaddress
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from leadpixel.database import get_db
from leadpixel.models import PixelStatusEnum
from leadpixel.schemas import TrackResponse
from leadpixel.services.pixel_service import activate_if_pending, get_pixel_by_code, record_pixel_event
from leadpixel.services.visitor_store import EngagementDelta, VisitorMerge, upsert_visitor
from leadpixel.workers.arq_enqueue import EnrichmentDispatcher, get_enrichment_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pixel", tags=["Pixel Tracking"])


# =============================================================================
# CORS HELPERS FOR PIXEL ENDPOINT
# =============================================================================
# WHAT: The capture agent runs on customer websites, so any origin may post
# WHY: Reflecting the origin (instead of "*") is required when credentials are allowed


def add_cors_headers(response: Response, origin: str = "*") -> Response:
    """Add CORS headers to response for the tracking endpoint."""
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Access-Control-Max-Age"] = "86400"  # Cache preflight for 24h
    response.headers["Vary"] = "Origin"
    return response


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================


class PageInfo(BaseModel):
    url: Optional[str] = None
    path: Optional[str] = None
    title: Optional[str] = None
    referrer: Optional[str] = None
    host: Optional[str] = None


class Fingerprint(BaseModel):
    """Coarse browser attributes captured by the agent."""
    model_config = ConfigDict(extra="allow")

    userAgent: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    screenWidth: Optional[int] = None
    screenHeight: Optional[int] = None
    screenColorDepth: Optional[int] = None
    timezone: Optional[str] = None
    timezoneOffset: Optional[int] = None
    cookiesEnabled: Optional[bool] = None
    doNotTrack: Optional[Union[str, bool]] = None
    canvasHash: Optional[str] = None


class TrackEventRequest(BaseModel):
    """Request body sent by the capture agent.

    Example:
        {
            "pixelIds": ["px_abc123"],
            "visitorId": "5f0c...",
            "sessionId": "9b2e...",
            "eventType": "heartbeat",
            "eventData": {"timeOnPage": 120, "maxScrollDepth": 50, "clickCount": 2},
            "page": {"url": "https://example.com/pricing", "referrer": ""},
            "fingerprint": {"userAgent": "Mozilla/5.0 ...", "language": "en-US"},
            "timestamp": "2026-01-05T12:00:00Z",
            "version": "1.0.0"
        }
    """
    pixelIds: List[str] = Field(..., min_length=1)
    visitorId: str = Field(..., min_length=1)
    eventType: str = Field(..., min_length=1)
    sessionId: Optional[str] = None
    eventId: Optional[str] = None
    eventData: Dict[str, Any] = Field(default_factory=dict)
    page: PageInfo = Field(default_factory=PageInfo)
    fingerprint: Fingerprint = Field(default_factory=Fingerprint)
    timestamp: Optional[str] = None
    version: Optional[str] = None


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def get_client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def is_usable_ip(ip: Optional[str]) -> bool:
    """True if `ip` is a syntactically valid IPv4/IPv6 address."""
    if not ip:
        return False
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False
    return True


def compute_fingerprint_hash(fingerprint: Fingerprint) -> Optional[str]:
    """Stable hash over coarse client attributes (event metadata only)."""
    parts = [
        fingerprint.userAgent,
        fingerprint.language,
        fingerprint.platform,
        fingerprint.screenWidth,
        fingerprint.screenHeight,
        fingerprint.screenColorDepth,
        fingerprint.timezone,
        fingerprint.canvasHash,
    ]
    if not any(p not in (None, "") for p in parts):
        return None
    raw = "|".join("" if p is None else str(p) for p in parts)
    return "fp_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def _identify_email(payload: TrackEventRequest) -> Optional[str]:
    if payload.eventType != "identify":
        return None
    email = payload.eventData.get("email")
    if isinstance(email, str) and "@" in email:
        return email.strip()
    return None


def build_visitor_merge(
    payload: TrackEventRequest,
    pixel_id,
    ip: str,
    user_agent: Optional[str],
    fingerprint_hash: Optional[str],
) -> VisitorMerge:
    """Translate one tracking event into a visitor merge (no identity bonuses)."""
    return VisitorMerge(
        pixel_id=pixel_id,
        visitor_id=payload.visitorId,
        delta=EngagementDelta.for_event(payload.eventType, payload.eventData),
        identity={
            "email": _identify_email(payload),
            "ip_address": ip if is_usable_ip(ip) else None,
            "user_agent": user_agent,
            "fingerprint_hash": fingerprint_hash,
        },
        first_touch={
            "first_page_url": payload.page.url,
            "first_referrer": payload.page.referrer,
        },
    )


def _parse_payload(body: bytes) -> TrackEventRequest:
    """Validate a JSON or text/plain (beacon) body.

    Raises:
        HTTPException 400: Malformed JSON or missing required fields
    """
    try:
        return TrackEventRequest.model_validate_json(body)
    except ValidationError as e:
        json_invalid = any(err.get("type") == "json_invalid" for err in e.errors())
        detail = "Invalid JSON payload" if json_invalid else "Missing required fields"
        logger.warning(f"[PIXEL] Rejected payload: {detail}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post("/track", response_model=TrackResponse)
async def track_event(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: EnrichmentDispatcher = Depends(get_enrichment_dispatcher),
):
    """Ingest one capture-agent event for every pixel code it names.

    WHAT:
        For each pixel code: resolve the pixel (unknown codes are skipped),
        activate it if pending, append the event, merge the visitor, and
        schedule enrichment when the visitor is not enriched yet.

    WHY:
        A site may embed several pixels in one script tag; a bad code must
        not drop the event for the others.

    Raises:
        HTTPException 400: Malformed body or missing pixelIds/visitorId/eventType
    """
    origin = request.headers.get("origin", "*")
    payload = _parse_payload(await request.body())

    ip = get_client_ip(request)
    fingerprint_hash = compute_fingerprint_hash(payload.fingerprint)
    user_agent = payload.fingerprint.userAgent or request.headers.get("user-agent")

    metadata = {
        "source": "pixel",
        "session_id": payload.sessionId,
        "event_data": payload.eventData,
        "page": payload.page.model_dump(),
        "fingerprint": payload.fingerprint.model_dump(),
        "fingerprint_hash": fingerprint_hash,
        "timestamp": payload.timestamp,
        "version": payload.version,
    }

    for pixel_code in payload.pixelIds:
        pixel = get_pixel_by_code(db, pixel_code)
        if not pixel:
            logger.warning(f"[PIXEL] Unknown pixel code: {pixel_code}")
            continue

        pixel_id = pixel.id
        if pixel.status == PixelStatusEnum.pending:
            activate_if_pending(db, pixel)
            db.commit()

        event = record_pixel_event(
            db,
            pixel,
            event_type=payload.eventType,
            visitor_id=payload.visitorId,
            event_id=payload.eventId,
            page_url=payload.page.url,
            referrer=payload.page.referrer,
            user_agent=user_agent,
            ip_address=ip,
            metadata=metadata,
        )
        if event is None:
            continue

        merge = build_visitor_merge(payload, pixel_id, ip, user_agent, fingerprint_hash)
        result = upsert_visitor(db, merge)
        db.commit()

        logger.info(
            f"[PIXEL] Stored event",
            extra={
                "pixel_id": str(pixel_id),
                "visitor_id": payload.visitorId,
                "event_type": payload.eventType,
            },
        )

        if not result.is_enriched and is_usable_ip(ip):
            background_tasks.add_task(dispatcher.dispatch, result.id)

    response = JSONResponse(content={"success": True})
    return add_cors_headers(response, origin)
