"""Domain exceptions.

Raised by the outbound HTTP clients and caught at the background-job boundary,
where they are logged and reported to Sentry instead of propagating.
"""

from typing import Optional


class LeadPixelError(Exception):
    """Base exception for the tracking pipeline."""
    pass


class EnrichmentError(LeadPixelError):
    """Enrichment API call failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class VisitorsApiError(LeadPixelError):
    """A pixel's visitors API could not be fetched or parsed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
