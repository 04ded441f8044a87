from __future__ import annotations

import re
import unicodedata

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-z0-9_.-]+$")

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 64
MAX_PASSWORD_LENGTH = 128
MIN_ORG_NAME_LENGTH = 2

# Zero-width and bidi override characters used for lookalike identifiers
_INVISIBLE = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    cleaned = "".join(c for c in value if c not in _INVISIBLE)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_identifier(value: str) -> str:
    """Fold a login identifier (username or email) the way registration stored it."""
    return _normalize_unicode(value.strip().lower())


def normalize_email(value: str) -> str:
    """Lower-case and validate an email address; raises ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_identifier(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def normalize_username(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    normalized = normalize_identifier(value)
    if len(normalized) < MIN_USERNAME_LENGTH:
        raise ValueError(f"username must be at least {MIN_USERNAME_LENGTH} characters")
    if len(normalized) > MAX_USERNAME_LENGTH:
        raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username may only contain letters, digits, dots, underscores and hyphens"
        )
    return normalized


def validate_password_strength(value: str, min_length: int = 8) -> str:
    """Require length bounds plus at least one upper, one lower and one digit."""
    if len(value) < min_length:
        raise ValueError(f"password must be at least {min_length} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    return value


def effective_org_name(organization_name: str | None, username: str) -> str:
    """Requested organization name when usable, else the username."""
    trimmed = (organization_name or "").strip()
    return trimmed if len(trimmed) >= MIN_ORG_NAME_LENGTH else username
