from __future__ import annotations

import hashlib
import html as html_lib
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup

from intern_collector.models import JobType

FINGERPRINT_SEPARATOR = "|"

_INTERN_KEYWORDS = ("intern", "实习")
_CAMPUS_KEYWORDS = ("campus", "graduate", "校招", "校园", "应届")
_SOCIAL_KEYWORDS = ("social", "experienced", "社招", "社会招聘")


def fingerprint(
    title: Optional[str],
    description: Optional[str],
    location: Optional[str],
    requirements: Optional[str],
) -> str:
    """SHA-256 over the four content fields, in this order.

    Tags, salary and category are deliberately left out: postings that only
    differ there are treated as unchanged.
    """

    blob = FINGERPRINT_SEPARATOR.join(
        [title or "", description or "", location or "", requirements or ""]
    ).encode("utf-8", errors="replace")
    return hashlib.sha256(blob).hexdigest()


def canonicalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    # Drop fragments for dedupe stability.
    parts = parts._replace(fragment="")
    return urlunsplit(parts)


def normalize_whitespace(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (text or "").strip())


def html_to_text(html: Optional[str]) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(" ", strip=True)
    return normalize_whitespace(html_lib.unescape(text))


def truncate(text: Optional[str], max_len: int = 50_000) -> Optional[str]:
    if text is None:
        return None
    if len(text) <= max_len:
        return text
    return text[:max_len]


def clean_text(value: Any, *, strip_html: bool = False) -> Optional[str]:
    """Coerce a raw field to a trimmed string, or None when empty."""
    if value is None:
        return None
    text = str(value)
    text = html_to_text(text) if strip_html else text.strip()
    return truncate(text) or None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse epoch seconds/milliseconds or an ISO-ish string into an aware datetime."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        # Millisecond epochs are 13 digits.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return parse_datetime(int(text))

    iso = text.replace("Z", "+00:00")
    if re.match(r"^\d{4}-\d{2}-\d{2} \d", iso):
        iso = iso.replace(" ", "T", 1)
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        pass
    else:
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    for fmt in ("%Y/%m/%d %H:%M:%S", "%Y/%m/%d", "%Y年%m月%d日"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def classify_job_type(*texts: Optional[str]) -> JobType:
    blob = " ".join(t for t in texts if t).lower()
    if not blob:
        return "unknown"
    if any(k in blob for k in _INTERN_KEYWORDS):
        return "intern"
    if any(k in blob for k in _CAMPUS_KEYWORDS):
        return "campus"
    if any(k in blob for k in _SOCIAL_KEYWORDS):
        return "social"
    return "unknown"


def is_intern_title(title: Optional[str]) -> bool:
    lowered = (title or "").lower()
    return any(k in lowered for k in _INTERN_KEYWORDS)


def derive_post_id(
    url: Optional[str],
    *,
    title: Optional[str] = None,
    description: Optional[str] = None,
    location: Optional[str] = None,
) -> str:
    """Stand-in identifier for sources that expose none: the URL, else a content hash."""

    if url and url.strip():
        return canonicalize_url(url)
    return fingerprint(title, description, location, None)[:32]


def uniq_preserve_order(items: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        cleaned = normalize_whitespace(item)
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        out.append(cleaned)
    return out
