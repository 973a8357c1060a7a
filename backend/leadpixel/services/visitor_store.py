"""Visitor aggregate store.

WHAT:
    The single write path into the `visitors` table. `upsert_visitor()`
    merges one observation (from the pixel endpoint, the identity webhook
    or the visitors API poll) into the (pixel, visitor_id) row with one
    `INSERT ... ON CONFLICT DO UPDATE` statement. `apply_enrichment()`
    patches identity fields after a third-party lookup.

WHY:
    Many requests can hit the same visitor at once (overlapping heartbeats,
    retried beacons, a webhook batch arriving mid-visit). Reading the row,
    adding in Python and writing back loses increments under that
    interleaving. Doing all arithmetic server-side inside the conflict
    clause makes each merge atomic without locks:

    - counters:       stored + delta, or greatest(stored, incoming)
    - identity:       COALESCE(NULLIF(incoming, ''), stored)
    - sessions:       +1 only when stored last_seen_at is older than the timeout
    - identification: one-way false -> true, timestamp set on the transition
    - lead score:     recomputed from the merged values in the same statement

    Note: inside DO UPDATE every column reference reads the pre-update row,
    so derived values (score, timestamps) are built from the merged
    expressions, never from the columns being assigned.

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
    - https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#insert-on-conflict-upsert
    - leadpixel/services/lead_scoring.py
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, case, cast, false, func, literal, literal_column, not_, or_, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from leadpixel.deps import get_settings
from leadpixel.models import JSONPayload, Visitor
from leadpixel.services.lead_scoring import (
    BASE_LEAD_SCORE,
    EngagementSnapshot,
    calculate_lead_score,
    lead_score_expression,
)
from leadpixel.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Last-non-empty-wins identity columns
IDENTITY_FIELDS = (
    "email",
    "first_name",
    "last_name",
    "full_name",
    "company",
    "job_title",
    "linkedin_url",
    "city",
    "state",
    "country",
    "ip_address",
    "user_agent",
    "fingerprint_hash",
)

# Written once, on the first observation
FIRST_TOUCH_FIELDS = ("first_page_url", "first_referrer")

# Event types whose eventData carries cumulative time on page
TIMED_EVENT_TYPES = frozenset({"heartbeat", "exit"})


# =============================================================================
# MERGE INPUT
# =============================================================================

@dataclass
class EngagementDelta:
    """Counter contribution of one observation.

    In "increment" mode pageviews/clicks/form_submissions are added to the
    stored values. In "max" mode (cumulative feeds) every counter keeps the
    greater of stored and incoming. Scroll depth and time on site are always
    max-merged; `time_on_site=None` leaves the stored time untouched.
    """
    pageviews: int = 0
    clicks: int = 0
    form_submissions: int = 0
    scroll_depth: int = 0
    time_on_site: Optional[int] = None
    sessions: int = 1

    @classmethod
    def for_event(cls, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> "EngagementDelta":
        """Derive the counters a single typed event affects."""
        event_data = event_data or {}
        delta = cls(
            pageviews=1 if event_type == "pageview" else 0,
            clicks=1 if event_type == "click" else 0,
            form_submissions=1 if event_type == "form_submit" else 0,
            scroll_depth=_scroll_depth(event_data),
        )
        if event_type in TIMED_EVENT_TYPES:
            delta.time_on_site = _non_negative_int(event_data.get("timeOnPage"))
        return delta


@dataclass
class VisitorMerge:
    """One observation of a visitor, ready to be merged into the aggregate."""
    pixel_id: uuid.UUID
    visitor_id: str
    delta: EngagementDelta = field(default_factory=EngagementDelta)
    identity: Dict[str, Optional[str]] = field(default_factory=dict)
    first_touch: Dict[str, Optional[str]] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)
    enrichment_source: Optional[str] = None
    enrichment_data: Optional[Dict[str, Any]] = None
    counter_mode: str = "increment"
    # Webhook path: score with identity/enrichment bonuses
    apply_identity_bonus: bool = False

    @property
    def email(self) -> Optional[str]:
        return _clean(self.identity.get("email"))

    @property
    def enriched(self) -> bool:
        return self.enrichment_source is not None


@dataclass(frozen=True)
class UpsertResult:
    id: uuid.UUID
    is_enriched: bool


# =============================================================================
# HELPERS
# =============================================================================

def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _non_negative_int(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    # "inf", "nan" and 1e400 arrive from untrusted beacons
    if not math.isfinite(number):
        return 0
    return max(int(number), 0)


def _scroll_depth(event_data: Dict[str, Any]) -> int:
    raw = event_data.get("maxScrollDepth", event_data.get("depth"))
    return min(_non_negative_int(raw), 100)


def _strip_empty(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop None/empty values recursively.

    JSON merges must never replace a known value with an empty one, and
    SQLite's json_patch() treats null as "delete this key".
    """
    cleaned: Dict[str, Any] = {}
    for key, value in (payload or {}).items():
        if isinstance(value, dict):
            value = _strip_empty(value)
        if value is None or value == "" or value == {} or value == []:
            continue
        cleaned[key] = value
    return cleaned


def _greatest(current, incoming):
    return case((incoming > current, incoming), else_=current)


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Visitor upserts are not supported on dialect {dialect!r}")


def _json_merge(db: Session, current, incoming):
    """Merge JSON objects server-side; incoming keys win."""
    if db.get_bind().dialect.name == "postgresql":
        return func.coalesce(current, cast(literal("{}"), JSONB)).op("||")(incoming)
    return func.json_patch(func.coalesce(current, literal_column("'{}'")), incoming)


# =============================================================================
# UPSERT
# =============================================================================

def upsert_visitor(db: Session, merge: VisitorMerge) -> UpsertResult:
    """Atomically create or merge a visitor row.

    Does not commit; the caller owns the transaction.

    Args:
        db: Database session
        merge: Observation to merge

    Returns:
        UpsertResult with the row's primary key and post-merge enrichment flag
    """
    now = utcnow()
    session_cutoff = now - timedelta(minutes=get_settings().SESSION_TIMEOUT_MINUTES)
    table = Visitor.__table__
    delta = merge.delta

    identity = {name: _clean(merge.identity.get(name)) for name in IDENTITY_FIELDS}
    first_touch = {name: _clean(merge.first_touch.get(name)) for name in FIRST_TOUCH_FIELDS}
    attributes = _strip_empty(merge.attributes)
    enrichment_data = _strip_empty(merge.enrichment_data) if merge.enriched else {}

    is_identified = identity["email"] is not None
    is_enriched = merge.enriched

    seed = EngagementSnapshot(
        total_pageviews=delta.pageviews,
        total_sessions=delta.sessions,
        total_time_on_site=delta.time_on_site or 0,
        max_scroll_depth=delta.scroll_depth,
        total_clicks=delta.clicks,
        form_submissions=delta.form_submissions,
        is_identified=is_identified,
        is_enriched=is_enriched,
    )
    if merge.apply_identity_bonus:
        initial_score = calculate_lead_score(seed, include_identity_bonus=True)
    else:
        initial_score = BASE_LEAD_SCORE

    values = dict(
        id=uuid.uuid4(),
        pixel_id=merge.pixel_id,
        visitor_id=merge.visitor_id,
        total_pageviews=seed.total_pageviews,
        total_sessions=seed.total_sessions,
        total_time_on_site=seed.total_time_on_site,
        max_scroll_depth=seed.max_scroll_depth,
        total_clicks=seed.total_clicks,
        form_submissions=seed.form_submissions,
        lead_score=initial_score,
        is_identified=is_identified,
        identified_at=now if is_identified else None,
        is_enriched=is_enriched,
        enriched_at=now if is_enriched else None,
        enrichment_source=merge.enrichment_source,
        enrichment_data=enrichment_data or None,
        attributes=attributes or None,
        first_seen_at=now,
        last_seen_at=now,
        **identity,
        **first_touch,
    )

    insert = _dialect_insert(db)
    stmt = insert(table).values(**values)
    excluded = stmt.excluded

    # ---- counters ----------------------------------------------------------
    if merge.counter_mode == "max":
        pageviews = _greatest(table.c.total_pageviews, excluded.total_pageviews)
        clicks = _greatest(table.c.total_clicks, excluded.total_clicks)
        form_submissions = _greatest(table.c.form_submissions, excluded.form_submissions)
        sessions = _greatest(table.c.total_sessions, excluded.total_sessions)
    else:
        pageviews = table.c.total_pageviews + excluded.total_pageviews
        clicks = table.c.total_clicks + excluded.total_clicks
        form_submissions = table.c.form_submissions + excluded.form_submissions
        sessions = case(
            (table.c.last_seen_at < session_cutoff, table.c.total_sessions + 1),
            else_=table.c.total_sessions,
        )

    scroll_depth = _greatest(table.c.max_scroll_depth, excluded.max_scroll_depth)
    if delta.time_on_site is None:
        time_on_site = table.c.total_time_on_site
    else:
        time_on_site = _greatest(table.c.total_time_on_site, excluded.total_time_on_site)

    # ---- identification / enrichment (one-way) ------------------------------
    identified = or_(table.c.is_identified, excluded.is_identified)
    enriched = or_(table.c.is_enriched, excluded.is_enriched)

    set_ = {
        "total_pageviews": pageviews,
        "total_sessions": sessions,
        "total_time_on_site": time_on_site,
        "max_scroll_depth": scroll_depth,
        "total_clicks": clicks,
        "form_submissions": form_submissions,
        "is_identified": identified,
        "identified_at": case(
            (and_(not_(table.c.is_identified), excluded.is_identified), now),
            else_=table.c.identified_at,
        ),
        "is_enriched": enriched,
        "enriched_at": case(
            (and_(not_(table.c.is_enriched), excluded.is_enriched), now),
            else_=table.c.enriched_at,
        ),
        "enrichment_source": case(
            (and_(not_(table.c.is_enriched), excluded.is_enriched), excluded.enrichment_source),
            else_=table.c.enrichment_source,
        ),
        "last_seen_at": now,
    }

    for name in IDENTITY_FIELDS:
        incoming = getattr(excluded, name)
        set_[name] = func.coalesce(func.nullif(incoming, ""), getattr(table.c, name))
    for name in FIRST_TOUCH_FIELDS:
        set_[name] = func.coalesce(getattr(table.c, name), getattr(excluded, name))

    # Absent payloads leave the stored JSON untouched
    if attributes:
        set_["attributes"] = _json_merge(db, table.c.attributes, excluded.attributes)
    if enrichment_data:
        set_["enrichment_data"] = _json_merge(db, table.c.enrichment_data, excluded.enrichment_data)

    if merge.apply_identity_bonus:
        set_["lead_score"] = lead_score_expression(
            pageviews, sessions, time_on_site, scroll_depth, clicks, form_submissions,
            is_identified=identified,
            is_enriched=enriched,
        )
    else:
        set_["lead_score"] = lead_score_expression(
            pageviews, sessions, time_on_site, scroll_depth, clicks, form_submissions,
        )

    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.pixel_id, table.c.visitor_id],
        set_=set_,
    ).returning(table.c.id, table.c.is_enriched)

    row = db.execute(stmt).one()

    logger.debug(
        "[VISITOR] Merged visitor",
        extra={
            "pixel_id": str(merge.pixel_id),
            "visitor_id": merge.visitor_id,
            "counter_mode": merge.counter_mode,
        },
    )
    return UpsertResult(id=row.id, is_enriched=bool(row.is_enriched))


# =============================================================================
# LOOKUPS
# =============================================================================

def find_visitor_id_by_email(db: Session, pixel_id: uuid.UUID, email: str) -> Optional[str]:
    """Return the visitor_id of the oldest visitor on this pixel with `email`."""
    return (
        db.query(Visitor.visitor_id)
        .filter(Visitor.pixel_id == pixel_id, func.lower(Visitor.email) == email.lower())
        .order_by(Visitor.first_seen_at.asc())
        .limit(1)
        .scalar()
    )


# =============================================================================
# ENRICHMENT PATCH
# =============================================================================

def apply_enrichment(
    db: Session,
    visitor_pk: uuid.UUID,
    identity: Dict[str, Optional[str]],
    source: str,
    payload: Dict[str, Any],
) -> bool:
    """Patch a visitor with third-party profile data.

    Only non-empty incoming identity fields are written. The visitor is
    flagged enriched (timestamp and source set on the first transition) and
    identified when an email is present; neither flag is ever cleared.
    The raw payload is merged into `enrichment_data`, incoming keys winning.
    The lead score is left alone: enrichment is not an engagement signal on
    the pixel path.

    Does not commit; the caller owns the transaction.

    Returns:
        True if a row was updated
    """
    now = utcnow()
    values: Dict[str, Any] = {}
    for name in IDENTITY_FIELDS:
        cleaned = _clean(identity.get(name))
        if cleaned is not None:
            values[name] = cleaned

    values.update(
        is_enriched=True,
        enriched_at=case((Visitor.is_enriched == false(), now), else_=Visitor.enriched_at),
        enrichment_source=case((Visitor.is_enriched == false(), source), else_=Visitor.enrichment_source),
    )

    # Merged key by key so a concurrent webhook payload is kept
    enrichment_data = _strip_empty(payload)
    if enrichment_data:
        values["enrichment_data"] = _json_merge(
            db, Visitor.enrichment_data, literal(enrichment_data, type_=JSONPayload)
        )

    if "email" in values:
        values["is_identified"] = True
        values["identified_at"] = case(
            (Visitor.is_identified == false(), now),
            else_=Visitor.identified_at,
        )

    result = db.execute(
        update(Visitor)
        .where(Visitor.id == visitor_pk)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0
