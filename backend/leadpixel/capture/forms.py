"""Best-effort contact extraction from submitted forms.

This is a heuristic, not a parser. Each field is checked against an ordered
list of patterns over its `type`, `name`, `id` and `placeholder`; the first
pattern that matches decides what the field is, and the first non-empty
value found for each kind wins. Fields with unusual names are missed and a
field called "email_me_updates" can be misread. Callers must treat the
result as a hint.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple


@dataclass
class FormField:
    name: str = ""
    id: str = ""
    placeholder: str = ""
    type: str = "text"
    value: str = ""

    def descriptors(self) -> str:
        return " ".join(p for p in (self.name, self.id, self.placeholder) if p).lower()


@dataclass
class FormElement:
    id: Optional[str] = None
    name: Optional[str] = None
    action: Optional[str] = None
    fields: Tuple[FormField, ...] = ()


# (kind, input types, descriptor pattern), checked in order
FIELD_PATTERNS: List[Tuple[str, Tuple[str, ...], Pattern[str]]] = [
    ("email", ("email",), re.compile(r"e-?mail")),
    ("phone", ("tel",), re.compile(r"phone|mobile|\btel\b|cell")),
    ("name", (), re.compile(r"(full|first|last|your)?[\s_-]?name")),
]

# Name-like fields that are not a person's name
NAME_EXCLUDE = re.compile(r"user|company|business|org|file|domain")

EMAIL_VALUE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def classify_field(field: FormField) -> Optional[str]:
    """Return "email", "phone", "name" or None for one field."""
    field_type = (field.type or "").lower()
    if field_type in ("password", "hidden"):
        return None

    descriptors = field.descriptors()
    for kind, types, pattern in FIELD_PATTERNS:
        if field_type in types or pattern.search(descriptors):
            if kind == "name" and NAME_EXCLUDE.search(descriptors):
                continue
            return kind
    return None


def extract_contact(fields: Iterable[FormField]) -> Dict[str, str]:
    """Pull email/name/phone values out of a form's fields.

    Example:
        >>> extract_contact([FormField(name="work_email", value="a@b.com")])
        {'email': 'a@b.com'}
    """
    contact: Dict[str, str] = {}
    for field in fields:
        value = (field.value or "").strip()
        if not value:
            continue
        kind = classify_field(field)
        if not kind or kind in contact:
            continue
        if kind == "email" and not EMAIL_VALUE.match(value):
            continue
        contact[kind] = value
    return contact
