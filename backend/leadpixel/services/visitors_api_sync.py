"""Visitors API sync (pull-based identity feed).

WHAT:
    Some pixels are backed by a provider that exposes resolved visitors as a
    paginated REST feed instead of (or in addition to) pushing webhooks.
    This service pulls every page, folds the per-event records into one
    aggregate per provider visitor id, and merges each into the visitors
    table.

WHY:
    The feed reports cumulative activity for the whole lookback window, so
    re-polling returns the same events again. Counters are therefore merged
    with max(stored, incoming) instead of being added; adding would double
    count on every poll.

HOW:
    1. GET page 1 to learn `total_pages`
    2. GET remaining pages concurrently, PAGE_BATCH_SIZE at a time
    3. Group records by provider id (UUID / EDID / ...)
    4. upsert_visitor(counter_mode="max") per visitor, commit per pixel

REFERENCES:
    - leadpixel/workers/arq_worker.py:sync_visitors_api_job (cron caller)
    - leadpixel/services/resolution.py (field extraction)
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from leadpixel.deps import get_settings
from leadpixel.exceptions import VisitorsApiError
from leadpixel.models import ApiCredential, Pixel, PixelStatusEnum
from leadpixel.services.resolution import extract_identity, extract_provider_visitor_id, pick
from leadpixel.services.visitor_store import EngagementDelta, VisitorMerge, upsert_visitor
from leadpixel.utils.clock import utcnow

logger = logging.getLogger(__name__)

PAGE_BATCH_SIZE = 5
ENRICHMENT_SOURCE = "visitors_api"


# =============================================================================
# AGGREGATION
# =============================================================================

@dataclass
class ContactAggregate:
    """All feed records for one provider visitor, folded together."""
    visitor_id: str
    primary: Dict[str, Any]
    pageviews: int = 0
    clicks: int = 0
    form_submissions: int = 0
    max_scroll_depth: int = 0
    time_on_site: int = 0
    session_dates: set = field(default_factory=set)

    def to_merge(self, pixel_id) -> VisitorMerge:
        resolved = extract_identity(self.primary)
        identity = resolved.identity_fields()
        identity["ip_address"] = pick(self.primary, ("IP_ADDRESS",))
        return VisitorMerge(
            pixel_id=pixel_id,
            visitor_id=self.visitor_id,
            delta=EngagementDelta(
                pageviews=self.pageviews,
                clicks=self.clicks,
                form_submissions=self.form_submissions,
                scroll_depth=min(self.max_scroll_depth, 100),
                time_on_site=self.time_on_site,
                sessions=max(len(self.session_dates), 1),
            ),
            identity=identity,
            first_touch={
                "first_page_url": pick(self.primary, ("URL", "FULL_URL")),
                "first_referrer": pick(self.primary, ("REFERRER_URL",)),
            },
            attributes=resolved.attributes(),
            enrichment_source=ENRICHMENT_SOURCE,
            enrichment_data=self.primary,
            counter_mode="max",
            apply_identity_bonus=True,
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _scroll_percentage(raw: Any) -> int:
    try:
        data = json.loads(raw) if isinstance(raw, str) else (raw or {})
        return max(int(float(data.get("percentage", 0))), 0)
    except (ValueError, TypeError, AttributeError, OverflowError):
        return 0


def aggregate_contacts(contacts: List[Dict[str, Any]]) -> List[ContactAggregate]:
    """Group feed records by provider visitor id and total their activity.

    Records without an EVENT_TYPE (newer feed format) count as page views.
    Sessions are approximated as distinct activity dates.
    """
    grouped: Dict[str, ContactAggregate] = {}

    for contact in contacts:
        visitor_id = extract_provider_visitor_id(contact)
        if not visitor_id:
            continue

        agg = grouped.get(visitor_id)
        if agg is None:
            agg = grouped[visitor_id] = ContactAggregate(visitor_id=visitor_id, primary=contact)

        event_type = str(contact.get("EVENT_TYPE") or "").lower()
        start = contact.get("ACTIVITY_START_DATE") or contact.get("EVENT_DATE")
        end = contact.get("ACTIVITY_END_DATE")

        if isinstance(start, str) and len(start) >= 10:
            agg.session_dates.add(start[:10])

        started_at, ended_at = _parse_timestamp(start), _parse_timestamp(end)
        if started_at and ended_at:
            try:
                duration = int((ended_at - started_at).total_seconds())
            except TypeError:
                # naive vs aware timestamps in the same record
                duration = 0
            if duration > 0:
                agg.time_on_site += duration

        if not event_type:
            agg.pageviews += 1
        elif event_type == "page_view":
            agg.pageviews += 1
        elif event_type == "click":
            agg.clicks += 1
        elif event_type == "form_submission":
            agg.form_submissions += 1
        elif event_type == "scroll_depth":
            agg.max_scroll_depth = max(agg.max_scroll_depth, _scroll_percentage(contact.get("EVENT_DATA")))

    return list(grouped.values())


# =============================================================================
# FETCHING
# =============================================================================

def _build_headers(api_url: str, api_key: str) -> Dict[str, str]:
    headers = {"Accept": "application/json", "X-API-Key": api_key}
    if "audiencelab.io" in (urlparse(api_url).hostname or ""):
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _extract_records(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    for key in ("Data", "data", "records", "contacts"):
        raw = data.get(key)
        if isinstance(raw, list):
            return [r for r in raw if isinstance(r, dict)]
    return []


async def _fetch_page(client: httpx.AsyncClient, url: str, page: int, headers: Dict[str, str]) -> List[Dict[str, Any]]:
    """Fetch one follow-up page; a failed page contributes no records."""
    try:
        response = await client.get(url, params={"page": page}, headers=headers)
        if not response.is_success:
            logger.warning(f"[VISITORS-API] Page {page} returned {response.status_code}")
            return []
        return _extract_records(response.json())
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"[VISITORS-API] Page {page} failed: {e}")
        return []


async def fetch_contacts(
    api_url: str,
    api_key: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Dict[str, Any]]:
    """Fetch every record from a paginated visitors feed.

    Raises:
        VisitorsApiError: If the first page cannot be fetched or decoded
    """
    settings = get_settings()
    headers = _build_headers(api_url, api_key)

    async with httpx.AsyncClient(timeout=settings.VISITORS_API_TIMEOUT_SECONDS, transport=transport) as client:
        try:
            first = await client.get(api_url, headers=headers)
        except httpx.HTTPError as e:
            raise VisitorsApiError(f"Visitors API request failed: {e}") from e

        if not first.is_success:
            raise VisitorsApiError(
                f"Visitors API returned {first.status_code}: {first.text[:200]}",
                status_code=first.status_code,
            )
        try:
            first_data = first.json()
        except ValueError as e:
            raise VisitorsApiError("Visitors API returned invalid JSON") from e

        total_pages = int(first_data.get("total_pages") or first_data.get("TotalPages") or first_data.get("totalPages") or 1)
        current_page = int(first_data.get("page") or first_data.get("Page") or first_data.get("current_page") or 1)
        records = _extract_records(first_data)

        logger.info(f"[VISITORS-API] Page {current_page}/{total_pages} from {api_url}")

        if total_pages > 1 and current_page == 1:
            for batch_start in range(2, total_pages + 1, PAGE_BATCH_SIZE):
                batch_end = min(batch_start + PAGE_BATCH_SIZE - 1, total_pages)
                pages = await asyncio.gather(*[
                    _fetch_page(client, api_url, page, headers)
                    for page in range(batch_start, batch_end + 1)
                ])
                for page_records in pages:
                    records.extend(page_records)
                logger.info(f"[VISITORS-API] Fetched pages {batch_start}-{batch_end}, total records: {len(records)}")

    return records


# =============================================================================
# SYNC
# =============================================================================

@dataclass
class SyncResult:
    pixel_id: str
    fetched: int = 0
    upserted: int = 0
    error: Optional[str] = None


async def sync_pixel_visitors(
    db: Session,
    pixel: Pixel,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncResult:
    """Pull one pixel's feed and merge it into the visitors table.

    Records the outcome on the pixel (`visitors_api_last_fetched_at`,
    `visitors_api_last_fetch_status`) whether or not the fetch succeeded.

    Raises:
        VisitorsApiError: If the feed is unreachable or the owner has no credential
        Exception: Database errors are re-raised after the failure is recorded
    """
    result = SyncResult(pixel_id=str(pixel.id))

    try:
        credential = db.query(ApiCredential).filter(ApiCredential.owner_id == pixel.owner_id).first()
        if not credential:
            raise VisitorsApiError("No API key configured for pixel owner")

        contacts = await fetch_contacts(pixel.visitors_api_url, credential.api_key, transport=transport)
        result.fetched = len(contacts)

        aggregates = aggregate_contacts(contacts)
        for agg in aggregates:
            upsert_visitor(db, agg.to_merge(pixel.id))
            result.upserted += 1

        pixel.visitors_api_last_fetch_status = f"success: {result.upserted} visitors"
        logger.info(
            f"[VISITORS-API] {result.fetched} records -> {result.upserted} visitors",
            extra={"pixel_id": str(pixel.id)},
        )
    except Exception as e:
        db.rollback()
        result.error = str(e)
        pixel.visitors_api_last_fetch_status = f"error: {e}"[:255]
        raise
    finally:
        pixel.visitors_api_last_fetched_at = utcnow()
        db.commit()

    return result


def pixels_with_visitors_api(db: Session) -> List[Pixel]:
    return (
        db.query(Pixel)
        .filter(Pixel.status == PixelStatusEnum.active, Pixel.visitors_api_url.isnot(None))
        .order_by(Pixel.created_at.asc())
        .all()
    )
