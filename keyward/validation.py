"""Input checks shared by the account and key services.

Each helper returns the normalised value or raises InputValidationError with a
message naming the offending field.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

from keyward.constants import LIST_MAX_LIMIT, NAME_MAX_LENGTH, NAME_MIN_LENGTH
from keyward.errors import InputValidationError


def validate_name(name: str, field_name: str = "name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise InputValidationError(f"{field_name} is required")
    name = name.strip()
    if len(name) < NAME_MIN_LENGTH:
        raise InputValidationError(
            f"{field_name} must be at least {NAME_MIN_LENGTH} characters"
        )
    if len(name) > NAME_MAX_LENGTH:
        raise InputValidationError(
            f"{field_name} must be at most {NAME_MAX_LENGTH} characters"
        )
    return name


def validate_webhook_url(url: Optional[str]) -> Optional[str]:
    if url is None:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InputValidationError("webhook_url must be an absolute http(s) URL")
    return url


def validate_paging(limit: int, offset: int) -> None:
    if not 1 <= limit <= LIST_MAX_LIMIT:
        raise InputValidationError(f"limit must be between 1 and {LIST_MAX_LIMIT}")
    if offset < 0:
        raise InputValidationError("offset must be zero or greater")
