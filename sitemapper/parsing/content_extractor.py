"""Structured content extraction for already-crawled pages.

Everything here works on an HTML string and never fetches. The batch
pipeline combines these pieces into one content record per page.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from sitemapper.parsing.html_extractor import make_soup

CONTENT_SCHEMA_VERSION = 1

NON_CONTENT_TAGS = ["script", "style", "noscript", "iframe", "embed", "object", "svg"]

HEADING_LEVELS = ("h1", "h2", "h3")

# Open Graph properties copied into the SEO block, in output order
OG_FIELDS = ("title", "description", "image")


def _meta_content(soup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    value = (tag.get("content") or "").strip()
    return value or None


def extract_clean_text(html: str) -> str:
    """Visible text of the page body with whitespace collapsed."""
    soup = make_soup(html)
    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()

    root = soup.body or soup
    text = root.get_text(separator=" ")
    return " ".join(text.split())


def extract_headings(html: str) -> Dict[str, List[str]]:
    """h1-h3 texts grouped by level, each list in document order."""
    soup = make_soup(html)
    headings: Dict[str, List[str]] = {level: [] for level in HEADING_LEVELS}

    for tag in soup.find_all(list(HEADING_LEVELS)):
        text = " ".join(tag.get_text(separator=" ").split())
        if text:
            headings[tag.name].append(text)

    return headings


def extract_seo(html: str) -> Dict[str, Any]:
    soup = make_soup(html)

    title = None
    if soup.title is not None:
        title = soup.title.get_text().strip() or None

    canonical_url = None
    canonical_tag = soup.find("link", rel="canonical")
    if canonical_tag is not None:
        canonical_url = (canonical_tag.get("href") or "").strip() or None

    og = {field: _meta_content(soup, property=f"og:{field}") for field in OG_FIELDS}

    return {
        "title": title,
        "meta_description": _meta_content(soup, name="description"),
        "canonical_url": canonical_url,
        "robots": _meta_content(soup, name="robots"),
        "og": og,
    }


def extract_json_ld(html: str, url: str = "") -> List[Any]:
    """
    Raw JSON-LD blocks. A script holding an array contributes each element.
    A script that fails to parse is logged and skipped on its own.
    """
    soup = make_soup(html)
    blocks: List[Any] = []

    for index, script in enumerate(soup.find_all("script", type="application/ld+json")):
        raw = script.string if script.string is not None else script.get_text()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Skipping malformed JSON-LD block #{index} on {url or 'page'}: {exc}")
            continue

        if isinstance(data, list):
            blocks.extend(data)
        else:
            blocks.append(data)

    return blocks


def build_content_record(
    html: str,
    *,
    crawl_job_id: str,
    normalized_url: str,
    include_raw_html: bool = True,
) -> Dict[str, Any]:
    return {
        "crawl_job_id": crawl_job_id,
        "normalized_url": normalized_url,
        "fetched_at": datetime.now(timezone.utc),
        "content_schema_version": CONTENT_SCHEMA_VERSION,
        "clean_text": extract_clean_text(html),
        "headings": extract_headings(html),
        "seo": extract_seo(html),
        "schema": {"json_ld": extract_json_ld(html, normalized_url)},
        "raw_html": html if include_raw_html else None,
    }
