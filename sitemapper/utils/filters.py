from typing import Optional
from urllib.parse import urlsplit

# Non-HTML resources that are never fetched as pages
BLOCKED_EXTENSIONS = frozenset({
    "pdf", "jpg", "jpeg", "png", "gif", "svg", "webp", "ico",
    "css", "js", "json", "xml", "zip", "tar", "gz", "rar",
    "mp4", "mp3", "avi", "mov", "wmv", "flv",
    "doc", "docx", "xls", "xlsx", "ppt", "pptx",
})

NON_HTTP_SCHEMES = ("mailto:", "tel:", "javascript:", "data:")


def skip_reason(url: str) -> Optional[str]:
    """Why a raw or resolved URL should not be crawled, or None if it may be."""
    candidate = (url or "").strip()
    lowered = candidate.lower()

    if not candidate:
        return "empty link"

    for scheme in NON_HTTP_SCHEMES:
        if lowered.startswith(scheme):
            return f"non-HTTP protocol ({scheme[:-1]})"

    if candidate.startswith("#"):
        return "hash-only link"

    try:
        path = urlsplit(candidate).path.lower()
    except ValueError:
        return "malformed URL"

    last_segment = path.rsplit("/", 1)[-1]
    if "." in last_segment:
        extension = last_segment.rsplit(".", 1)[-1]
        if extension in BLOCKED_EXTENSIONS:
            return f"non-HTML extension (.{extension})"

    return None
