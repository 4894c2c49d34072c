from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from bs4 import BeautifulSoup


@dataclass
class PageMetadata:
    title: Optional[str] = None
    h1: Optional[str] = None
    meta_description: Optional[str] = None
    canonical: Optional[str] = None


def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def _clean(value: Optional[str]) -> Optional[str]:
    """Trim a value and turn empty strings into None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_metadata(html: str) -> PageMetadata:
    """
    Title, first h1, meta description and canonical link of a page.
    Missing or blank values come back as None.
    """
    soup = make_soup(html)

    title = _clean(soup.title.get_text()) if soup.title else None

    h1_tag = soup.find("h1")
    h1 = _clean(h1_tag.get_text()) if h1_tag else None

    description_tag = soup.find("meta", attrs={"name": "description"})
    meta_description = _clean(description_tag.get("content")) if description_tag else None

    canonical_tag = soup.find("link", rel="canonical")
    canonical = _clean(canonical_tag.get("href")) if canonical_tag else None

    return PageMetadata(
        title=title,
        h1=h1,
        meta_description=meta_description,
        canonical=canonical,
    )


def extract_links(html: str) -> List[str]:
    """
    Raw href values of every anchor, in document order.
    Resolution and filtering are left to the caller.
    """
    soup = make_soup(html)
    links: List[str] = []

    for tag in soup.find_all("a", href=True):
        href = tag["href"].strip()
        if href:
            links.append(href)

    return links
