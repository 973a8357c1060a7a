"""Initial tracking schema (pixels, pixel_events, visitors, settings, credentials).

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 12:00:00.000000

WHAT:
    Creates the visitor identity and event ingestion tables:
    - pixels: Per-website tracking configuration, addressed by pixel_code
    - pixel_events: Immutable raw event log (capture agent + identity webhook)
    - visitors: Per (pixel, visitor_id) aggregate with identity, counters,
      lead score and enrichment state
    - app_settings: Key/value settings (webhook_api_key)
    - api_credentials: Owner-scoped enrichment API keys

WHY:
    The unique (pixel_id, visitor_id) constraint is the conflict target of
    the atomic visitor upsert; without it concurrent deliveries create
    duplicate visitors. The unique (pixel_id, event_id) constraint absorbs
    redelivered events that carry a client event id.

REFERENCES:
    - leadpixel/models.py
    - leadpixel/services/visitor_store.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: pixels
    # =========================================================================
    pixel_status = postgresql.ENUM('pending', 'active', 'inactive', name='pixel_status', create_type=False)
    pixel_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'pixels',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('domain', sa.String(), nullable=True),
        sa.Column('pixel_code', sa.String(), nullable=False),
        sa.Column('status', pixel_status, nullable=False, server_default='pending'),
        sa.Column('events_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('visitors_api_url', sa.Text(), nullable=True),
        sa.Column('visitors_api_last_fetched_at', sa.DateTime(), nullable=True),
        sa.Column('visitors_api_last_fetch_status', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('pixel_code', name='pixels_pixel_code_key'),
    )
    op.create_index('ix_pixels_owner_id', 'pixels', ['owner_id'])

    # =========================================================================
    # STEP 2: pixel_events (append-only)
    # =========================================================================
    op.create_table(
        'pixel_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'pixel_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('pixels.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('event_id', sa.String(), nullable=True),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('visitor_id', sa.String(), nullable=False),
        sa.Column('page_url', sa.Text(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('event_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        # NULL event ids never conflict, so events without one are always kept
        sa.UniqueConstraint('pixel_id', 'event_id', name='uq_pixel_event_id'),
    )
    op.create_index('ix_pixel_events_pixel_visitor', 'pixel_events', ['pixel_id', 'visitor_id'])

    # =========================================================================
    # STEP 3: visitors (aggregate)
    # =========================================================================
    op.create_table(
        'visitors',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'pixel_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('pixels.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('visitor_id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('company', sa.String(), nullable=True),
        sa.Column('job_title', sa.String(), nullable=True),
        sa.Column('linkedin_url', sa.Text(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('fingerprint_hash', sa.String(), nullable=True),
        sa.Column('first_page_url', sa.Text(), nullable=True),
        sa.Column('first_referrer', sa.Text(), nullable=True),
        sa.Column('total_pageviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_sessions', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('total_time_on_site', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_scroll_depth', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('form_submissions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lead_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_identified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('identified_at', sa.DateTime(), nullable=True),
        sa.Column('is_enriched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enriched_at', sa.DateTime(), nullable=True),
        sa.Column('enrichment_source', sa.String(), nullable=True),
        sa.Column('enrichment_data', postgresql.JSONB(), nullable=True),
        sa.Column('attributes', postgresql.JSONB(), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        # Conflict target of the atomic visitor upsert
        sa.UniqueConstraint('pixel_id', 'visitor_id', name='uq_visitor_pixel_visitor'),
    )
    op.create_index('ix_visitors_pixel_email', 'visitors', ['pixel_id', 'email'])

    # =========================================================================
    # STEP 4: settings and credentials
    # =========================================================================
    op.create_table(
        'app_settings',
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'api_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('api_key', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('owner_id', name='api_credentials_owner_id_key'),
    )


def downgrade() -> None:
    op.drop_table('api_credentials')
    op.drop_table('app_settings')
    op.drop_index('ix_visitors_pixel_email', table_name='visitors')
    op.drop_table('visitors')
    op.drop_index('ix_pixel_events_pixel_visitor', table_name='pixel_events')
    op.drop_table('pixel_events')
    op.drop_index('ix_pixels_owner_id', table_name='pixels')
    op.drop_table('pixels')
    sa.Enum(name='pixel_status').drop(op.get_bind(), checkfirst=True)
