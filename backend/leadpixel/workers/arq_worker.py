"""ARQ async worker - enrichment and visitors API sync.

WHAT:
    Background job processor for work that must stay off the request path:
    - enrich_visitor_job: one enrichment lookup per visitor, enqueued by
      the tracking endpoint
    - sync_visitors_api_job: cron pull of every pixel's visitors feed

WHY:
    - max_jobs caps concurrent outbound enrichment calls; bursts wait in
      Redis instead of fanning out
    - Jobs never raise: a failed lookup is logged and reported to Sentry,
      which is the dead-letter sink. The next event for the visitor
      enqueues a fresh attempt.

USAGE:
    # Start worker
    arq leadpixel.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m leadpixel.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - leadpixel/services/enrichment_client.py
    - leadpixel/services/visitors_api_sync.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from arq import cron, func

from leadpixel.database import SessionLocal
from leadpixel.deps import get_settings
from leadpixel.services.enrichment_client import enrich_visitor
from leadpixel.services.visitors_api_sync import pixels_with_visitors_api, sync_pixel_visitors
from leadpixel.telemetry import capture_exception, init_sentry, set_pixel_context
from leadpixel.workers.arq_enqueue import get_redis_settings

logger = logging.getLogger(__name__)

settings = get_settings()

JOB_TIMEOUT_SECONDS = 300


# =============================================================================
# ENRICHMENT JOB
# =============================================================================

async def enrich_visitor_job(ctx: Dict, visitor_pk: str) -> Dict[str, Any]:
    """Enrich one visitor.

    Args:
        ctx: ARQ context
        visitor_pk: Visitor primary key (UUID string)

    Returns:
        Dict with success flag; failures carry the error message
    """
    logger.info(f"[ARQ] Enrichment job for visitor {visitor_pk}")

    db = SessionLocal()
    try:
        enriched = await enrich_visitor(db, UUID(str(visitor_pk)))
        return {"success": True, "enriched": enriched}
    except Exception as e:
        db.rollback()
        logger.exception("[ARQ] Enrichment failed for visitor %s: %s", visitor_pk, e)
        capture_exception(e, extra={
            "operation": "enrich_visitor_job",
            "visitor_pk": str(visitor_pk),
        })
        return {"success": False, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# VISITORS API SYNC (CRON)
# =============================================================================

async def sync_visitors_api_job(ctx: Dict) -> Dict[str, Any]:
    """Pull the visitors feed for every active pixel that has one.

    WHY:
        One pixel's broken feed URL or revoked key must not stop the others,
        so each pixel is synced in isolation.
    """
    db = SessionLocal()
    synced = 0
    failed = 0
    try:
        pixels = pixels_with_visitors_api(db)
        logger.info(f"[ARQ] Visitors API sync: {len(pixels)} pixels")

        for pixel in pixels:
            pixel_id = str(pixel.id)
            set_pixel_context(pixel_id, str(pixel.owner_id))
            try:
                result = await sync_pixel_visitors(db, pixel)
                synced += 1
                logger.info(
                    "[ARQ] Visitors API sync complete for %s: %s visitors",
                    pixel_id, result.upserted,
                )
            except Exception as e:
                failed += 1
                db.rollback()
                logger.exception("[ARQ] Visitors API sync failed for %s: %s", pixel_id, e)
                capture_exception(e, extra={
                    "operation": "sync_visitors_api_job",
                    "pixel_id": pixel_id,
                })

        return {"success": failed == 0, "synced": synced, "failed": failed}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    init_sentry()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {settings.ARQ_QUEUE_NAME}")
    logger.info(f"[ARQ] Max concurrent jobs: {settings.ENRICHMENT_MAX_CONCURRENCY}")
    logger.info(f"[ARQ] Visitors API sync minutes: {sorted(settings.visitors_api_sync_minutes)}")
    logger.info("=" * 60)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - cleanup and log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs: concurrency cap on enrichment lookups
    - max_tries=1: jobs report their own failures, arq never re-runs them
    - enrichment keeps no result, so its `enrich:<pk>` job id frees up as soon as it ends
    - cron: visitors API sync on the configured minutes of every hour
    """

    functions = [
        func(enrich_visitor_job, keep_result=0),
        sync_visitors_api_job,
    ]

    cron_jobs = [
        cron(
            sync_visitors_api_job,
            minute=settings.visitors_api_sync_minutes,
            unique=True,
            run_at_startup=False,
        ),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = settings.ENRICHMENT_MAX_CONCURRENCY
    job_timeout = JOB_TIMEOUT_SECONDS
    keep_result = 3600               # Keep results for 1 hour
    max_tries = 1
    health_check_interval = 30       # Health check every 30s

    # Queue name
    queue_name = settings.ARQ_QUEUE_NAME
