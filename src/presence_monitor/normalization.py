"""Utilities to normalize monitored identities and activity labels."""

from __future__ import annotations

import re
from typing import Optional

from .errors import InvalidIdentity

_IDENTITY_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")


def normalize_identity(value: Optional[str]) -> str:
    """Strip and validate a username; raise InvalidIdentity when unusable."""
    identity = (value or "").strip()
    if not identity:
        raise InvalidIdentity("identity must not be empty")
    if not _IDENTITY_PATTERN.match(identity):
        raise InvalidIdentity(
            f"invalid identity {identity!r}: expected 3-20 letters, digits or underscores"
        )
    return identity


def normalize_activity(value: Optional[str]) -> Optional[str]:
    """Collapse whitespace in an activity label; blank labels become None."""
    if not value:
        return None
    normalized = re.sub(r"\s{2,}", " ", value).strip()
    return normalized or None
