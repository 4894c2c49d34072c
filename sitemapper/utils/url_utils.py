from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit

# Query parameters that identify distinct pages of a paginated listing.
PAGINATION_PARAMS = frozenset({"page", "p", "pagenum", "paged", "offset", "start"})

TRACKING_PARAMS = frozenset({"fbclid", "gclid"})

DEFAULT_PORTS = {"http": 80, "https": 443}


def _strip_www(host: str) -> str:
    if host.startswith("www."):
        return host[4:]
    return host


def _keep_query_param(key: str) -> bool:
    key_lower = key.lower()
    if key_lower.startswith("utm_") or key_lower in TRACKING_PARAMS:
        return False
    return key_lower in PAGINATION_PARAMS


def canonicalize(url: str) -> str | None:
    """Map an absolute URL to its canonical identity string.

    Returns ``None`` for anything that is not a well-formed http(s) URL.
    Re-canonicalizing the result returns it unchanged.
    """
    if not url or not isinstance(url, str):
        return None

    try:
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            return None

        host = (parts.hostname or "").lower()
        if not host:
            return None
        host = _strip_www(host)

        port = parts.port
    except ValueError:
        return None

    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path or "/")
    if not path.startswith("/"):
        path = "/" + path
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    kept = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if _keep_query_param(key)
    ]
    query = urlencode(kept)

    normalized = f"{scheme}://{netloc}{path}"
    if query:
        normalized = f"{normalized}?{query}"
    return normalized


def primary_domain(url: str) -> str | None:
    """Host of a URL or bare domain, lowercased and without ``www.``."""
    if not url or not isinstance(url, str):
        return None

    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        host = (urlsplit(candidate).hostname or "").lower()
    except ValueError:
        return None

    if not host or ("." not in host and host != "localhost"):
        return None
    return _strip_www(host)


def is_in_scope(normalized_url: str, domain: str | None) -> bool:
    """Exact-domain scope check; subdomains are treated as external."""
    if not normalized_url or not domain:
        return False
    return primary_domain(normalized_url) == domain


def resolve_url(href: str, base_url: str) -> str | None:
    """Resolve a raw href against the page it was found on."""
    try:
        raw = (href or "").strip()
        if not raw:
            return None
        if raw.startswith("//"):
            base_scheme = urlsplit(base_url).scheme or "https"
            raw = f"{base_scheme}:{raw}"
        return urljoin(base_url, raw)
    except ValueError:
        return None


def seed_url_for(domain: str) -> str:
    """Turn the domain submitted with a crawl request into a fetchable URL."""
    domain = (domain or "").strip()
    if domain.lower().startswith(("http://", "https://")):
        return domain
    return f"https://{domain}"
