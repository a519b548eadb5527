"""Validation and URL/domain normalization helpers."""

from __future__ import annotations

import re
from urllib.parse import urlparse, urlunparse

_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def is_valid_http_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)
    except Exception:
        return False


def normalize_url(url: str) -> str:
    """Ensure a scheme: bare domains (`example.com/x`) become `https://example.com/x`."""
    u = (url or "").strip()
    if not u:
        return u
    if u.startswith("//"):
        return "https:" + u
    if not _SCHEME_RE.match(u):
        return "https://" + u.lstrip("/")
    return u


def normalize_domain(value: str) -> str:
    """Reduce a URL or host to a bare lowercase domain without `www.` or port."""
    v = (value or "").strip().lower()
    if not v:
        return ""
    try:
        host = urlparse(normalize_url(v)).hostname or ""
    except ValueError:
        return ""
    host = host.strip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def is_valid_domain(value: str) -> bool:
    return bool(_DOMAIN_RE.match(value or ""))


def canonical_url(url: str) -> str:
    """Scheme+host lowercased, fragment dropped; used as a dedup/coalescing key."""
    try:
        p = urlparse(normalize_url(url))
    except ValueError:
        return url
    path = p.path or "/"
    return urlunparse((p.scheme.lower(), p.netloc.lower(), path, p.params, p.query, ""))
