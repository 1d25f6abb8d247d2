"""Helpers for creator post URLs.

Only URL syntax is checked here; whether the post exists is the analysis
service's job.
"""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

UNKNOWN_HANDLE = "@unknown"


def is_valid_post_url(url: str | None) -> bool:
    """Return True for an absolute http(s) URL with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def strip_query(url: str) -> str:
    """Drop query string and fragment (tracking params confuse the scraper)."""
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def account_handle(post_url: str | None, account_url: str | None = None) -> str:
    """Derive an ``@handle`` from the post URL, then the account URL.

    TikTok-style URLs carry the handle as a path segment
    (``https://www.tiktok.com/@someone/video/123``).
    """
    for candidate in (post_url, account_url):
        if not candidate:
            continue
        for segment in urlsplit(candidate).path.split("/"):
            if segment.startswith("@") and len(segment) > 1:
                return segment
    return UNKNOWN_HANDLE
