"""SQLAlchemy ORM models and enums.

This module defines the tracking schema: pixels, the append-only pixel event
log, and the per-visitor aggregate that both ingestion paths (direct pixel
telemetry and the identity webhook) merge into. Owner accounts live outside
this service, so `owner_id` columns are plain UUIDs without foreign keys.
"""

import uuid
import enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Enum,
    Integer,
    ForeignKey,
    JSON,
    Text,
    Boolean,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship, declarative_base

from .utils.clock import utcnow


# Single Base used by the entire application
Base = declarative_base()

# JSON on SQLite (tests), JSONB on Postgres so payloads can be merged with `||`
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


# Enums ---------------------------------------------------------

class PixelStatusEnum(str, enum.Enum):
    pending = "pending"
    active = "active"
    inactive = "inactive"


# Models --------------------------------------------------------

class Pixel(Base):
    """Per-website tracking configuration.

    WHAT: Identified publicly by `pixel_code`, which the capture agent embeds
    WHY: Every event and visitor is scoped to exactly one pixel
    """
    __tablename__ = "pixels"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    domain = Column(String, nullable=True)
    pixel_code = Column(String, nullable=False, unique=True)
    status = Column(
        Enum(PixelStatusEnum, name="pixel_status"),
        nullable=False,
        default=PixelStatusEnum.pending,
    )

    events_count = Column(Integer, nullable=False, default=0)
    last_event_at = Column(DateTime, nullable=True)

    # Optional pull-based visitors feed (polled by the arq cron job)
    visitors_api_url = Column(Text, nullable=True)
    visitors_api_last_fetched_at = Column(DateTime, nullable=True)
    visitors_api_last_fetch_status = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    events = relationship("PixelEvent", back_populates="pixel", passive_deletes=True)
    visitors = relationship("Visitor", back_populates="pixel", passive_deletes=True)

    def __str__(self):
        return f"{self.name} ({self.pixel_code})"


class PixelEvent(Base):
    """Immutable raw event log from the capture agent and the identity webhook.

    WHAT: One row per accepted event, never updated
    WHY: The Visitor aggregate can always be rebuilt from this log
    """
    __tablename__ = "pixel_events"
    __table_args__ = (
        UniqueConstraint("pixel_id", "event_id", name="uq_pixel_event_id"),
        Index("ix_pixel_events_pixel_visitor", "pixel_id", "visitor_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pixel_id = Column(UUID(as_uuid=True), ForeignKey("pixels.id", ondelete="CASCADE"), nullable=False)

    # Client-generated id for duplicate delivery suppression (optional)
    event_id = Column(String, nullable=True)
    event_type = Column(String, nullable=False)
    visitor_id = Column(String, nullable=False)

    page_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    event_metadata = Column(JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)

    pixel = relationship("Pixel", back_populates="events")

    def __str__(self):
        return f"{self.event_type} - {self.visitor_id} - {self.created_at}"


class Visitor(Base):
    """Canonical aggregate for one browser/person on one pixel.

    WHAT:
        Identity fields, engagement counters and derived state (lead score,
        identification, enrichment) for a (pixel, visitor_id) pair.

    WHY:
        Both ingestion paths and the enrichment client write here. All writes
        go through `services.visitor_store`, which merges atomically so
        concurrent deliveries never lose increments or known identity data.
    """
    __tablename__ = "visitors"
    __table_args__ = (
        UniqueConstraint("pixel_id", "visitor_id", name="uq_visitor_pixel_visitor"),
        Index("ix_visitors_pixel_email", "pixel_id", "email"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pixel_id = Column(UUID(as_uuid=True), ForeignKey("pixels.id", ondelete="CASCADE"), nullable=False)
    visitor_id = Column(String, nullable=False)

    # Identity
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    company = Column(String, nullable=True)
    job_title = Column(String, nullable=True)
    linkedin_url = Column(Text, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    country = Column(String, nullable=True)

    # Client context
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    fingerprint_hash = Column(String, nullable=True)
    first_page_url = Column(Text, nullable=True)
    first_referrer = Column(Text, nullable=True)

    # Engagement counters (monotonic)
    total_pageviews = Column(Integer, nullable=False, default=0)
    total_sessions = Column(Integer, nullable=False, default=1)
    total_time_on_site = Column(Integer, nullable=False, default=0)
    max_scroll_depth = Column(Integer, nullable=False, default=0)
    total_clicks = Column(Integer, nullable=False, default=0)
    form_submissions = Column(Integer, nullable=False, default=0)

    # Derived state
    lead_score = Column(Integer, nullable=False, default=0)
    is_identified = Column(Boolean, nullable=False, default=False)
    identified_at = Column(DateTime, nullable=True)
    is_enriched = Column(Boolean, nullable=False, default=False)
    enriched_at = Column(DateTime, nullable=True)

    # Provenance
    enrichment_source = Column(String, nullable=True)
    enrichment_data = Column(JSONPayload, nullable=True)
    # Phone and demographic attributes from identity resolution
    attributes = Column(JSONPayload, nullable=True)

    first_seen_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow)

    pixel = relationship("Pixel", back_populates="visitors")

    def __str__(self):
        return f"{self.email or self.visitor_id} (score {self.lead_score})"


class AppSetting(Base):
    """Key/value application settings (e.g. `webhook_api_key`)."""
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return self.key


class ApiCredential(Base):
    """Owner-scoped key for the third-party enrichment API.

    WHAT: Assigned by an admin to an account; looked up by pixel owner
    WHY: Enrichment calls are billed against the owner's own key
    """
    __tablename__ = "api_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, unique=True)
    api_key = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __str__(self):
        return f"credential for {self.owner_id}"
