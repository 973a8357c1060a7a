"""Identity-resolution payload extraction.

WHAT:
    Turns the provider's flat, UPPER_SNAKE "resolution" object into the
    visitor identity fields and the demographic attribute blob.

WHY:
    The provider has renamed fields over time and fills them inconsistently
    (comma-separated multi-values, URLs without a scheme, location split
    across personal/company/plain keys). Every field is read through an
    ordered list of candidate keys and the first non-empty value wins.

REFERENCES:
    - leadpixel/routers/pixel_webhook.py (consumer)
    - leadpixel/services/visitors_api_sync.py (consumer)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

EMAIL_KEYS = (
    "PERSONAL_VERIFIED_EMAILS",
    "PERSONAL_EMAILS",
    "BUSINESS_EMAIL",
    "BUSINESS_VERIFIED_EMAILS",
)
PHONE_KEYS = (
    "MOBILE_PHONE",
    "ALL_MOBILES",
    "DIRECT_NUMBER",
    "PERSONAL_PHONE",
    "ALL_LANDLINES",
)
LINKEDIN_KEYS = ("INDIVIDUAL_LINKEDIN_URL", "LINKEDIN_URL", "COMPANY_LINKEDIN_URL")
CITY_KEYS = ("PERSONAL_CITY", "COMPANY_CITY", "CITY")
STATE_KEYS = ("PERSONAL_STATE", "COMPANY_STATE", "STATE")
JOB_TITLE_KEYS = ("JOB_TITLE", "HEADLINE")

# Provider visitor id spellings, checked on the event first, then on the resolution
PROVIDER_ID_KEYS = ("UUID", "EDID", "uuid", "edid", "Id", "id", "ID")

# attribute name -> candidate keys
DEMOGRAPHIC_KEYS = {
    "gender": ("GENDER",),
    "age_range": ("AGE_RANGE",),
    "income_range": ("INCOME_RANGE",),
    "seniority_level": ("SENIORITY_LEVEL",),
    "department": ("DEPARTMENT",),
    "company_industry": ("COMPANY_INDUSTRY",),
    "company_employee_count": ("COMPANY_EMPLOYEE_COUNT",),
    "company_revenue": ("COMPANY_REVENUE",),
    "company_domain": ("COMPANY_DOMAIN",),
    "homeowner": ("HOMEOWNER",),
    "married": ("MARRIED",),
    "children": ("CHILDREN",),
    "net_worth": ("NET_WORTH",),
}


@dataclass
class ResolvedIdentity:
    """Identity fields extracted from one resolution payload."""
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    linkedin_url: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    demographics: Dict[str, str] = field(default_factory=dict)

    def identity_fields(self) -> Dict[str, Optional[str]]:
        """Columns merged into the visitor row."""
        return {
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "company": self.company,
            "job_title": self.job_title,
            "linkedin_url": self.linkedin_url,
            "city": self.city,
            "state": self.state,
            "country": self.country,
        }

    def attributes(self) -> Dict[str, str]:
        """Phone and demographics for the visitor's `attributes` blob."""
        attrs = dict(self.demographics)
        if self.phone:
            attrs["phone"] = self.phone
        return attrs


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_value(value: Any) -> Optional[str]:
    """First entry of a comma-separated multi-value field."""
    text = _text(value)
    if not text:
        return None
    for part in text.split(","):
        part = part.strip()
        if part:
            return part
    return None


def pick(data: Mapping[str, Any], keys: Iterable[str], multi: bool = False) -> Optional[str]:
    """Return the first non-empty value among `keys`."""
    for key in keys:
        value = first_value(data.get(key)) if multi else _text(data.get(key))
        if value:
            return value
    return None


def normalize_linkedin_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    if url.lower().startswith(("http://", "https://")):
        return url
    return f"https://{url}"


def extract_provider_visitor_id(event: Mapping[str, Any]) -> Optional[str]:
    """Find the provider-issued visitor id on an event or its resolution."""
    found = pick(event, PROVIDER_ID_KEYS)
    if found:
        return found
    resolution = event.get("resolution")
    if isinstance(resolution, Mapping):
        return pick(resolution, PROVIDER_ID_KEYS)
    return None


def extract_identity(resolution: Optional[Mapping[str, Any]]) -> ResolvedIdentity:
    """Extract visitor identity and demographics from a resolution object.

    Example:
        >>> extract_identity({"PERSONAL_EMAILS": "x@y.com, z@y.com"}).email
        'x@y.com'
    """
    if not resolution:
        return ResolvedIdentity()

    first_name = pick(resolution, ("FIRST_NAME",))
    last_name = pick(resolution, ("LAST_NAME",))
    full_name = " ".join(n for n in (first_name, last_name) if n) or pick(resolution, ("FULL_NAME",))

    state = pick(resolution, STATE_KEYS)
    country = pick(resolution, ("COUNTRY",))
    if not country and state:
        # Provider data is US-only when no country is given
        country = "US"

    demographics = {}
    for name, keys in DEMOGRAPHIC_KEYS.items():
        value = pick(resolution, keys)
        if value:
            demographics[name] = value

    return ResolvedIdentity(
        email=pick(resolution, EMAIL_KEYS, multi=True),
        phone=pick(resolution, PHONE_KEYS, multi=True),
        first_name=first_name,
        last_name=last_name,
        full_name=full_name,
        company=pick(resolution, ("COMPANY_NAME",)),
        job_title=pick(resolution, JOB_TITLE_KEYS),
        linkedin_url=normalize_linkedin_url(pick(resolution, LINKEDIN_KEYS)),
        city=pick(resolution, CITY_KEYS),
        state=state,
        country=country,
        demographics=demographics,
    )
