"""Utility functions."""

import hashlib
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from knowledge_ingest.core.constants import CHARS_PER_TOKEN


def estimate_tokens(text: str) -> int:
    """Estimate token count (rough approximation: ~4 chars per token)."""
    if not text or not text.strip():
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def compute_content_hash(content: str | bytes) -> str:
    """Compute SHA256 hash of content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def compute_document_id(url: str, prefix: Optional[str] = None) -> str:
    """Derive a stable document id from a URL, optionally prefixed."""
    digest = compute_content_hash(url).upper()
    if prefix and prefix.strip():
        return f"{prefix.strip()}-{digest}"
    return digest


def slugify_title(title: Optional[str], max_length: int = 64) -> str:
    """Build a document id from a title, or a random one when no title is usable."""
    if title and title.strip():
        safe = re.sub(r"[^a-z0-9]+", "-", title.strip().lower()).strip("-")
        if safe:
            return safe[:max_length]
    return f"doc-{uuid.uuid4().hex}"


def is_http_url(url: str) -> bool:
    """Check that a URL is absolute http(s) with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def host_of(url: str) -> str:
    """Lower-cased host name of a URL ('' when missing)."""
    return (urlparse(url).hostname or "").lower()


def normalize_text(text: str) -> str:
    """Normalize whitespace in text."""
    # Replace multiple whitespace with single space
    text = re.sub(r"\s+", " ", text)
    # Remove leading/trailing whitespace
    return text.strip()


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_iso8601(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO8601 string to an aware datetime (UTC when no offset is given)."""
    if s is None or not s.strip():
        return None
    try:
        parsed = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_iso8601(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as ISO8601 string."""
    if dt is None:
        return None
    return dt.isoformat()
