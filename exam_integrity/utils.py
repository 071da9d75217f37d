"""Utility functions for timestamps, sanitization and request context."""

from datetime import datetime, timezone
from typing import Optional

import bleach


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp; sqlmodel rejects naive values on bind."""
    return datetime.now(timezone.utc)


def sanitize_notes(text: Optional[str]) -> Optional[str]:
    """Sanitize reviewer notes.

    Reviewer notes are rendered on dashboards, so all HTML/script content is
    stripped down to plain text.
    """
    if text is None:
        return None
    sanitized = bleach.clean(text, tags=[], strip=True)
    return sanitized.strip() or None


def client_ip_from_headers(headers, fallback: Optional[str] = None) -> Optional[str]:
    """Return the originating client address.

    X-Forwarded-For may carry a comma-separated proxy chain; the first hop is
    the client.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return headers.get("x-real-ip") or fallback
