"""Pixel registry operations shared by both ingestion paths.

WHAT:
    - Resolve a pixel by its public code
    - Flip a pending pixel to active on its first event
    - Append to the immutable event log (with optional client event id dedup)

WHY:
    A pixel is created "pending" and becomes "active" once events arrive,
    which is how owners see that installation worked. Activation and the
    event counter are updated with conditional/arithmetic UPDATEs so
    concurrent first events cannot clobber each other.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from leadpixel.models import Pixel, PixelEvent, PixelStatusEnum
from leadpixel.utils.clock import utcnow

logger = logging.getLogger(__name__)


def get_pixel_by_code(db: Session, pixel_code: str) -> Optional[Pixel]:
    if not pixel_code:
        return None
    return db.query(Pixel).filter(Pixel.pixel_code == pixel_code).first()


def activate_if_pending(db: Session, pixel: Pixel) -> bool:
    """Mark a pending pixel active.

    Returns:
        True if this call performed the transition
    """
    result = db.execute(
        update(Pixel)
        .where(Pixel.id == pixel.id, Pixel.status == PixelStatusEnum.pending)
        .values(status=PixelStatusEnum.active, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    activated = result.rowcount > 0
    if activated:
        set_committed_value(pixel, "status", PixelStatusEnum.active)
        logger.info(f"[PIXEL] Activated pixel {pixel.pixel_code}", extra={"pixel_id": str(pixel.id)})
    return activated


def record_pixel_event(
    db: Session,
    pixel: Pixel,
    *,
    event_type: str,
    visitor_id: str,
    event_id: Optional[str] = None,
    page_url: Optional[str] = None,
    referrer: Optional[str] = None,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[PixelEvent]:
    """Append an event to the log and bump the pixel's counters.

    WHAT:
        Inserts a PixelEvent, then increments `events_count` and sets
        `last_event_at` in a single UPDATE.

    WHY:
        Beacons and webhook deliveries are at-least-once. When the client
        supplies an event id, a redelivery is detected (pre-check, then the
        unique constraint as the race backstop) and skipped so the visitor
        aggregate is not merged twice.

    Returns:
        The new PixelEvent, or None if `event_id` was already recorded.
        On a duplicate the session is rolled back; commit earlier work first.
    """
    pixel_id = pixel.id

    if event_id:
        exists = db.query(PixelEvent.id).filter(
            PixelEvent.pixel_id == pixel_id,
            PixelEvent.event_id == event_id,
        ).first()
        if exists:
            logger.debug(f"[PIXEL] Duplicate event_id: {event_id}")
            return None

    event = PixelEvent(
        pixel_id=pixel_id,
        event_id=event_id,
        event_type=event_type,
        visitor_id=visitor_id,
        page_url=page_url,
        referrer=referrer,
        user_agent=user_agent,
        ip_address=ip_address,
        event_metadata=metadata or {},
        created_at=utcnow(),
    )
    db.add(event)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.debug(f"[PIXEL] Duplicate event_id (concurrent): {event_id}")
        return None

    db.execute(
        update(Pixel)
        .where(Pixel.id == pixel_id)
        .values(events_count=Pixel.events_count + 1, last_event_at=event.created_at)
        .execution_options(synchronize_session=False)
    )
    return event
