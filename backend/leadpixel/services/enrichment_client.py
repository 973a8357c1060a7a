"""Third-party visitor enrichment (IP + user agent -> person/company).

WHAT:
    Looks up a visitor's IP and user agent against the enrichment API using
    the pixel owner's credential, and patches the visitor with whatever
    profile comes back.

WHY:
    Most visitors never submit a form. Enrichment is how anonymous traffic
    gets a name and company. It is best-effort: it runs on the arq worker,
    off the request path, and every failure is logged and dropped.

HOW:
    POST {ENRICHMENT_API_URL}/v1/enrich
    Authorization: Bearer <owner api key>
    {"ip": "...", "userAgent": "..."}

REFERENCES:
    - leadpixel/workers/arq_worker.py:enrich_visitor_job (caller)
    - leadpixel/services/visitor_store.py:apply_enrichment (write path)
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from leadpixel.deps import get_settings
from leadpixel.exceptions import EnrichmentError
from leadpixel.models import ApiCredential, Pixel, Visitor
from leadpixel.services.visitor_store import apply_enrichment

logger = logging.getLogger(__name__)

ENRICHMENT_SOURCE = "traffic_ai"

# visitor column -> response keys, first non-empty wins
PROFILE_FIELDS = {
    "email": ("email",),
    "first_name": ("firstName", "first_name"),
    "last_name": ("lastName", "last_name"),
    "full_name": ("name", "fullName"),
    "company": ("company", "organization"),
    "job_title": ("jobTitle", "title"),
    "linkedin_url": ("linkedinUrl", "linkedin"),
    "city": ("city",),
    "state": ("state", "region"),
    "country": ("country",),
}


class EnrichmentClient:
    """Async client for the enrichment API.

    Usage:
        ```python
        client = EnrichmentClient(api_key="key")
        profile = await client.enrich("203.0.113.7", "Mozilla/5.0 ...")
        ```
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_key: Owner's enrichment API key
            base_url: API root (defaults to ENRICHMENT_API_URL)
            timeout: Per-request timeout in seconds (defaults to ENRICHMENT_TIMEOUT_SECONDS)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        settings = get_settings()
        self.api_key = api_key
        self.base_url = (base_url or settings.ENRICHMENT_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.ENRICHMENT_TIMEOUT_SECONDS
        self.transport = transport

    async def enrich(self, ip: str, user_agent: Optional[str]) -> Dict[str, Any]:
        """Look up a profile for an IP/user agent pair.

        Returns:
            Decoded JSON response body

        Raises:
            EnrichmentError: On transport failure, timeout, non-2xx or non-JSON body
        """
        url = f"{self.base_url}/v1/enrich"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = {"ip": ip, "userAgent": user_agent or ""}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise EnrichmentError(f"Enrichment request failed: {e}") from e

        if not response.is_success:
            raise EnrichmentError(
                f"Enrichment API returned {response.status_code}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EnrichmentError("Enrichment API returned invalid JSON", status_code=response.status_code) from e

        if not isinstance(data, dict):
            raise EnrichmentError("Enrichment API returned a non-object body", status_code=response.status_code)
        return data


def parse_profile(data: Dict[str, Any]) -> Optional[Dict[str, Optional[str]]]:
    """Map an enrichment response onto visitor identity columns.

    Returns:
        Identity dict, or None when the response identifies nobody
        (no email, name or company).
    """
    if not (data.get("email") or data.get("name") or data.get("company")):
        return None

    profile: Dict[str, Optional[str]] = {}
    for column, keys in PROFILE_FIELDS.items():
        profile[column] = None
        for key in keys:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                profile[column] = value.strip()
                break
    return profile


async def enrich_visitor(
    db: Session,
    visitor_pk: UUID,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Enrich one visitor and commit the patch.

    WHAT:
        Loads the visitor, finds the pixel owner's credential, calls the
        API, and applies a non-destructive patch when a profile is found.

    WHY:
        Missing credentials and API failures are expected in normal
        operation (trial accounts, rate limits), so they are logged and
        reported as a False result rather than raised.

    Returns:
        True if the visitor was enriched
    """
    row = (
        db.query(Visitor, Pixel.owner_id)
        .join(Pixel, Pixel.id == Visitor.pixel_id)
        .filter(Visitor.id == visitor_pk)
        .first()
    )
    if not row:
        logger.warning(f"[ENRICH] Visitor {visitor_pk} not found")
        return False

    visitor, owner_id = row
    if visitor.is_enriched:
        logger.debug(f"[ENRICH] Visitor {visitor_pk} already enriched")
        return False
    if not visitor.ip_address:
        logger.debug(f"[ENRICH] Visitor {visitor_pk} has no IP address")
        return False

    credential = db.query(ApiCredential).filter(ApiCredential.owner_id == owner_id).first()
    if not credential:
        logger.info(f"[ENRICH] No API credential for owner {owner_id}, skipping")
        return False

    client = EnrichmentClient(api_key=credential.api_key, transport=transport)
    try:
        data = await client.enrich(visitor.ip_address, visitor.user_agent)
    except EnrichmentError as e:
        logger.warning(
            f"[ENRICH] Lookup failed for visitor {visitor_pk}: {e}",
            extra={"status_code": e.status_code},
        )
        return False

    profile = parse_profile(data)
    if not profile:
        logger.info(f"[ENRICH] No profile found for visitor {visitor_pk}")
        return False

    updated = apply_enrichment(db, visitor.id, profile, ENRICHMENT_SOURCE, data)
    db.commit()

    logger.info(
        f"[ENRICH] Visitor enriched",
        extra={"visitor_pk": str(visitor_pk), "has_email": bool(profile.get("email"))},
    )
    return updated
