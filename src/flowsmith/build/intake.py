"""Pipeline entry checks on the raw request."""

from __future__ import annotations

import re

from flowsmith.core.errors import ErrorKind
from flowsmith.core.models import RawRequest, StageError

STAGE = "intake"  # pseudo-stage that runs before the pipeline proper

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_WHITESPACE = re.compile(r"\s+")


def normalize_brief(brief: str) -> str:
    """Collapse runs of whitespace and trim."""
    return _WHITESPACE.sub(" ", brief).strip()


def normalize_contact(contact_ref: str | None) -> str | None:
    if contact_ref is None:
        return None
    return contact_ref.strip().lower() or None


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL.match(value))


def validate_raw_request(raw: RawRequest, min_length: int = 5, max_length: int = 5000) -> tuple[str, list[StageError]]:
    """Check the request before any stage runs.

    Returns the normalized brief and the errors found. A missing or short
    brief and a malformed contact address are fatal; truncation is not.
    """
    errors: list[StageError] = []
    if not isinstance(raw.brief, str) or not raw.brief.strip():
        return "", [StageError(STAGE, ErrorKind.VALIDATION_INPUT, "Brief is missing", fatal=True)]

    brief = normalize_brief(raw.brief)
    if len(brief) < min_length:
        errors.append(StageError(
            STAGE,
            ErrorKind.VALIDATION_INPUT,
            f"Brief is {len(brief)} characters, minimum is {min_length}",
            fatal=True,
        ))
    elif len(brief) > max_length:
        errors.append(StageError(
            STAGE,
            ErrorKind.VALIDATION_INPUT,
            f"Brief truncated from {len(brief)} to {max_length} characters",
        ))
        brief = brief[:max_length].rstrip()

    contact = normalize_contact(raw.contact_ref)
    if contact is not None and not is_valid_email(contact):
        errors.append(StageError(
            STAGE,
            ErrorKind.VALIDATION_INPUT,
            f"Contact reference {raw.contact_ref!r} is not a valid e-mail address",
            fatal=True,
        ))
    return brief, errors
