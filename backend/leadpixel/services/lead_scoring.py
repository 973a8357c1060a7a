"""Lead scoring engine.

WHAT:
    Maps a visitor's engagement counters to a bounded 0-100 lead score.
    Two renditions of the same formula:
    - calculate_lead_score(): pure Python, used for inserts and tests
    - lead_score_expression(): SQL expression evaluated inside the atomic
      visitor upsert, so the score is computed from the merged counters

WHY:
    The score must be recomputed on every write from whatever the counters
    are after the merge. Computing it in Python from a prior read would
    reintroduce the read-modify-write race the upsert exists to avoid.

SCORING:
    pageviews       2 each, max 20
    sessions        5 each, max 20
    time on site    1 per 30s, max 20
    scroll depth    linear, max 15
    clicks          1 each, max 15
    form submits    10 each, max 10
    identified      +15  (webhook path only)
    enriched        +10  (webhook path only)

    The direct pixel path never applies the identity/enrichment bonuses.
    Existing scores depend on that asymmetry, so it is kept as is.
"""

from dataclasses import dataclass

from sqlalchemy import Integer, case, literal

BASE_LEAD_SCORE = 5
MAX_LEAD_SCORE = 100

IDENTIFIED_BONUS = 15
ENRICHED_BONUS = 10


@dataclass(frozen=True)
class EngagementSnapshot:
    """Counter values a score is computed from."""
    total_pageviews: int = 0
    total_sessions: int = 0
    total_time_on_site: int = 0
    max_scroll_depth: int = 0
    total_clicks: int = 0
    form_submissions: int = 0
    is_identified: bool = False
    is_enriched: bool = False


def _clamp(value: int) -> int:
    return max(0, min(value, MAX_LEAD_SCORE))


def calculate_lead_score(snapshot: EngagementSnapshot, include_identity_bonus: bool = False) -> int:
    """Compute the lead score for a counter snapshot.

    Args:
        snapshot: Current (post-merge) counters
        include_identity_bonus: Apply identified/enriched bonuses (webhook path)

    Returns:
        Integer score in [0, 100]
    """
    score = 0
    score += min(snapshot.total_pageviews * 2, 20)
    score += min(snapshot.total_sessions * 5, 20)
    score += min(snapshot.total_time_on_site // 30, 20)
    score += snapshot.max_scroll_depth * 15 // 100
    score += min(snapshot.total_clicks, 15)
    score += min(snapshot.form_submissions * 10, 10)

    if include_identity_bonus:
        if snapshot.is_identified:
            score += IDENTIFIED_BONUS
        if snapshot.is_enriched:
            score += ENRICHED_BONUS

    return _clamp(score)


# =============================================================================
# SQL RENDITION
# =============================================================================

def _capped(expr, cap: int):
    return case((expr > cap, literal(cap, Integer)), else_=expr)


def lead_score_expression(
    pageviews,
    sessions,
    time_on_site,
    scroll_depth,
    clicks,
    form_submissions,
    is_identified=None,
    is_enriched=None,
):
    """Build the SQL twin of calculate_lead_score().

    Each argument is a SQL expression for the counter's post-merge value.
    Pass `is_identified`/`is_enriched` only on the webhook path; leaving them
    as None omits the bonuses, matching `include_identity_bonus=False`.

    Integer `//` renders as integer division on both PostgreSQL and SQLite.
    """
    score = (
        _capped(pageviews * 2, 20)
        + _capped(sessions * 5, 20)
        + _capped(time_on_site // 30, 20)
        + (scroll_depth * 15) // 100
        + _capped(clicks, 15)
        + _capped(form_submissions * 10, 10)
    )

    if is_identified is not None:
        score = score + case((is_identified, IDENTIFIED_BONUS), else_=0)
    if is_enriched is not None:
        score = score + case((is_enriched, ENRICHED_BONUS), else_=0)

    return case(
        (score > MAX_LEAD_SCORE, literal(MAX_LEAD_SCORE, Integer)),
        (score < 0, literal(0, Integer)),
        else_=score,
    )
