"""Tenant slug validation.

Slugs appear in URLs next to the application's static routes, so a slug
must be URL-safe and must never shadow one of those routes. Case-insensitive
uniqueness is enforced by the database (unique index on ``lower(slug)``),
not here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

RESERVED_SLUGS: frozenset[str] = frozenset(
    {
        "setup-cafe",
        "admin",
        "dashboard",
        "auth",
        "api",
        "login",
        "register",
        "logout",
    }
)

SLUG_MIN_LENGTH = 3
SLUG_MAX_LENGTH = 50

_SLUG_CHARSET = re.compile(r"^[a-z0-9-]+$")


@dataclass(frozen=True, slots=True)
class SlugValidation:
    valid: bool
    reason: str | None = None


def normalize_slug(candidate: str | None) -> str:
    """Trim and case-fold a slug candidate."""
    return (candidate or "").strip().lower()


def is_reserved_slug(candidate: str | None) -> bool:
    if not candidate:
        return False
    return normalize_slug(candidate) in RESERVED_SLUGS


def validate_slug(candidate: str | None) -> SlugValidation:
    """Validate a tenant slug. The first failing check wins."""
    if not candidate or not candidate.strip():
        return SlugValidation(False, "Slug must not be empty")

    slug = normalize_slug(candidate)

    if slug in RESERVED_SLUGS:
        return SlugValidation(False, f"Slug '{slug}' is reserved by the system")

    if not _SLUG_CHARSET.match(slug):
        return SlugValidation(
            False, "Slug may only contain lowercase letters, digits and hyphens"
        )

    if len(slug) < SLUG_MIN_LENGTH:
        return SlugValidation(False, f"Slug must be at least {SLUG_MIN_LENGTH} characters")

    if len(slug) > SLUG_MAX_LENGTH:
        return SlugValidation(False, f"Slug must be at most {SLUG_MAX_LENGTH} characters")

    if slug.startswith("-") or slug.endswith("-"):
        return SlugValidation(False, "Slug must not start or end with a hyphen")

    return SlugValidation(True)
