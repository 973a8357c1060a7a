"""Identity-resolution webhook.

WHAT:
    Receives batches of resolved-visitor events pushed by the identity
    provider and merges each one into the visitors table, attaching the
    email, name, company, location and demographics the provider resolved.

WHY:
    The provider sees visitors we cannot identify ourselves. Its events
    carry its own visitor id, so they are matched to our aggregates by
    email first (a known person who came back on a new device) and by the
    provider id second.

SECURITY:
    Shared secret in the `X-API-Key` header, compared in constant time
    against the `webhook_api_key` app setting (or WEBHOOK_API_KEY).

REFERENCES:
    - leadpixel/services/resolution.py (field extraction)
    - leadpixel/services/visitor_store.py (atomic merge)
"""

import hmac
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from leadpixel.database import get_db
from leadpixel.deps import get_settings
from leadpixel.models import AppSetting, PixelStatusEnum
from leadpixel.schemas import WebhookBatchResponse
from leadpixel.services.pixel_service import activate_if_pending, get_pixel_by_code, record_pixel_event
from leadpixel.services.resolution import extract_identity, extract_provider_visitor_id
from leadpixel.services.visitor_store import (
    EngagementDelta,
    VisitorMerge,
    find_visitor_id_by_email,
    upsert_visitor,
)
from leadpixel.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pixel", tags=["Pixel Webhook"])

ENRICHMENT_SOURCE = "identitypxl"
WEBHOOK_EVENT_SOURCE = "identitypxl_webhook"
WEBHOOK_API_KEY_SETTING = "webhook_api_key"

# Provider event type -> capture agent event type
EVENT_TYPE_ALIASES = {
    "page_view": "pageview",
    "form_submission": "form_submit",
}


# =============================================================================
# AUTHENTICATION
# =============================================================================


def get_configured_webhook_key(db: Session) -> Optional[str]:
    """Stored webhook secret, falling back to the WEBHOOK_API_KEY setting."""
    row = db.query(AppSetting).filter(AppSetting.key == WEBHOOK_API_KEY_SETTING).first()
    if row and row.value:
        return row.value
    return get_settings().WEBHOOK_API_KEY


def verify_webhook_key(request: Request, db: Session = Depends(get_db)) -> None:
    """Dependency that rejects the request before any event is touched.

    Raises:
        HTTPException 401: Missing or invalid X-API-Key
        HTTPException 500: No webhook secret configured
    """
    provided = request.headers.get("x-api-key")
    if not provided:
        logger.warning("[WEBHOOK] Missing API key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    expected = get_configured_webhook_key(db)
    if not expected:
        logger.error("[WEBHOOK] No webhook API key configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook not configured",
        )

    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("[WEBHOOK] Invalid API key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


# =============================================================================
# EVENT PROCESSING
# =============================================================================


def normalize_event_type(event_type: Optional[str]) -> str:
    if not event_type:
        return "pageview"
    return EVENT_TYPE_ALIASES.get(event_type, event_type)


def _event_url(event: Dict[str, Any]) -> Optional[str]:
    event_data = event.get("event_data")
    if isinstance(event_data, dict):
        return event_data.get("url") or None
    return None


def _result(pixel_id: Any, visitor_id: Optional[str], error: Optional[str] = None) -> Dict[str, Any]:
    result = {"pixel_id": str(pixel_id) if pixel_id else "", "visitor_id": visitor_id, "success": error is None}
    if error:
        result["error"] = error
    return result


def resolve_visitor_id(db: Session, pixel_id: uuid.UUID, event: Dict[str, Any], email: Optional[str]) -> str:
    """Pick the visitor id this event merges into.

    Order: an existing visitor with the same email on this pixel, then the
    provider's visitor id, then a fresh `webhook_<uuid4>`.
    """
    if email:
        existing = find_visitor_id_by_email(db, pixel_id, email)
        if existing:
            return existing
    return extract_provider_visitor_id(event) or f"webhook_{uuid.uuid4()}"


def process_webhook_event(db: Session, event: Dict[str, Any]) -> Dict[str, Any]:
    """Merge one provider event and commit it.

    Returns:
        Result entry for the response. Lookup failures are reported here,
        not raised.
    """
    pixel_code = event.get("pixel_id")
    if not pixel_code:
        return _result("", None, "Missing pixel_id")

    pixel = get_pixel_by_code(db, str(pixel_code))
    if not pixel:
        return _result(pixel_code, None, "Pixel not found")

    if pixel.status == PixelStatusEnum.pending:
        activate_if_pending(db, pixel)
        db.commit()
    elif pixel.status != PixelStatusEnum.active:
        return _result(pixel_code, None, "Pixel is not active")

    pixel_id = pixel.id
    resolution = event.get("resolution") if isinstance(event.get("resolution"), dict) else {}
    resolved = extract_identity(resolution)

    visitor_id = resolve_visitor_id(db, pixel_id, event, resolved.email)
    event_type = normalize_event_type(event.get("event_type"))
    ip_address = event.get("ip_address") or None
    page_url = _event_url(event)
    referrer = event.get("referrer_url") or None

    identity = resolved.identity_fields()
    identity["ip_address"] = ip_address

    merge = VisitorMerge(
        pixel_id=pixel_id,
        visitor_id=visitor_id,
        delta=EngagementDelta.for_event(event_type, event.get("event_data") or {}),
        identity=identity,
        first_touch={"first_page_url": page_url, "first_referrer": referrer},
        attributes=resolved.attributes(),
        enrichment_source=ENRICHMENT_SOURCE if resolution else None,
        enrichment_data=resolution or None,
        apply_identity_bonus=True,
    )

    record_pixel_event(
        db,
        pixel,
        event_type=event_type,
        visitor_id=visitor_id,
        page_url=page_url,
        referrer=referrer,
        ip_address=ip_address,
        metadata={
            "source": WEBHOOK_EVENT_SOURCE,
            "hem_sha256": event.get("hem_sha256"),
            "event_timestamp": event.get("event_timestamp"),
            "activity_start_date": event.get("activity_start_date"),
            "activity_end_date": event.get("activity_end_date"),
            "event_data": event.get("event_data"),
            "has_resolution": bool(resolution),
        },
    )
    upserted = upsert_visitor(db, merge)
    db.commit()

    logger.info(
        f"[WEBHOOK] Merged visitor",
        extra={
            "pixel_id": str(pixel_id),
            "visitor_id": visitor_id,
            "identified": bool(resolved.email),
        },
    )
    return _result(pixel_code, str(upserted.id))


# =============================================================================
# ENDPOINT
# =============================================================================


@router.post("/webhook", response_model=WebhookBatchResponse, dependencies=[Depends(verify_webhook_key)])
async def identity_webhook(request: Request, db: Session = Depends(get_db)):
    """Process a batch of identity-resolution events.

    WHAT:
        Events are processed one at a time. A failing event is rolled back
        and reported in `results`; the rest of the batch still lands.

    Example body:
        {"events": [{"pixel_id": "px_abc123", "event_type": "page_view",
                     "ip_address": "203.0.113.7",
                     "resolution": {"UUID": "u-1", "PERSONAL_EMAILS": "a@x.com"}}]}

    Raises:
        HTTPException 400: Malformed JSON or missing/empty `events`
    """
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    events = body.get("events") if isinstance(body, dict) else None
    if not isinstance(events, list) or not events:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing or empty events array")

    results: List[Dict[str, Any]] = []
    for event in events:
        if not isinstance(event, dict):
            results.append(_result("", None, "Invalid event"))
            continue
        try:
            results.append(process_webhook_event(db, event))
        except Exception as e:
            db.rollback()
            logger.exception(f"[WEBHOOK] Failed to process event for pixel {event.get('pixel_id')}")
            capture_exception(e, extra={"operation": "webhook_event", "pixel_code": event.get("pixel_id")})
            results.append(_result(event.get("pixel_id"), None, str(e) or "Internal error"))

    succeeded = sum(1 for r in results if r["success"])
    logger.info(f"[WEBHOOK] Processed {len(results)} events, {succeeded} succeeded")

    return {
        "success": succeeded == len(results),
        "processed": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
    }
