from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from tortoise.exceptions import DoesNotExist

from sitemapper.storage.models import CrawlJob, ExtractionJob, Page, PageContent


PAGE_FIELDS = (
    "normalized_url",
    "url",
    "status_code",
    "title",
    "h1",
    "meta_description",
    "canonical",
    "depth",
    "internal_links_out",
    "external_links_out",
    "internal_links_in",
    "external_links_in",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store(ABC):
    """Persistence operations used by the orchestrator, pipeline and API.

    Records cross this boundary as plain dicts with string ids, so the core
    never touches ORM instances.
    """

    # Crawl jobs
    @abstractmethod
    async def create_crawl_job(self, *, domain: str, project_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_crawl_job(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def update_crawl_job(self, job_id: str, **fields: Any) -> None: ...

    # Pages
    @abstractmethod
    async def list_pages(self, crawl_job_id: str) -> List[Dict[str, Any]]:
        """Pages of a job ordered by normalized_url."""

    @abstractmethod
    async def count_pages(self, crawl_job_id: str) -> int: ...

    @abstractmethod
    async def insert_page(self, crawl_job_id: str, page: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def update_page(self, crawl_job_id: str, normalized_url: str, **fields: Any) -> None: ...

    # Extraction jobs
    @abstractmethod
    async def create_extraction_job(self, *, crawl_job_id: str, only_missing: bool) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_extraction_job(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def update_extraction_job(self, job_id: str, **fields: Any) -> None: ...

    # Page content
    @abstractmethod
    async def list_content_urls(self, crawl_job_id: str) -> Set[str]: ...

    @abstractmethod
    async def upsert_content(self, record: Dict[str, Any]) -> None:
        """Insert or update keyed by (crawl_job_id, normalized_url)."""

    @abstractmethod
    async def delete_content(self, crawl_job_id: str, normalized_url: str) -> None: ...

    @abstractmethod
    async def insert_content(self, record: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def count_content(self, crawl_job_id: str) -> int: ...


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _stringify_ids(row: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("id", "crawl_job_id"):
        if isinstance(row.get(key), uuid.UUID):
            row[key] = str(row[key])
    return row


def _content_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    fields = {
        key: value
        for key, value in record.items()
        if key not in ("crawl_job_id", "normalized_url", "schema")
    }
    if "schema" in record:
        fields["structured_data"] = record["schema"]
    return fields


class TortoiseStore(Store):
    """Store backed by the Tortoise ORM models; requires Tortoise.init()."""

    async def create_crawl_job(self, *, domain: str, project_id: str) -> Dict[str, Any]:
        job = await CrawlJob.create(
            domain=domain,
            project_id=project_id,
            status="pending",
            started_at=utcnow(),
        )
        return await self.get_crawl_job(str(job.id))

    async def get_crawl_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        key = _as_uuid(job_id)
        if key is None:
            return None
        rows = await CrawlJob.filter(id=key).values()
        return _stringify_ids(rows[0]) if rows else None

    async def update_crawl_job(self, job_id: str, **fields: Any) -> None:
        key = _as_uuid(job_id)
        if key is None:
            raise DoesNotExist(f"Crawl job {job_id} not found")
        await CrawlJob.filter(id=key).update(**fields)

    async def list_pages(self, crawl_job_id: str) -> List[Dict[str, Any]]:
        key = _as_uuid(crawl_job_id)
        if key is None:
            return []
        return list(
            await Page.filter(crawl_job_id=key)
            .order_by("normalized_url")
            .values(*PAGE_FIELDS)
        )

    async def count_pages(self, crawl_job_id: str) -> int:
        key = _as_uuid(crawl_job_id)
        if key is None:
            return 0
        return await Page.filter(crawl_job_id=key).count()

    async def insert_page(self, crawl_job_id: str, page: Dict[str, Any]) -> None:
        fields = {k: v for k, v in page.items() if k in PAGE_FIELDS}
        await Page.create(crawl_job_id=_as_uuid(crawl_job_id), **fields)

    async def update_page(self, crawl_job_id: str, normalized_url: str, **fields: Any) -> None:
        await Page.filter(
            crawl_job_id=_as_uuid(crawl_job_id),
            normalized_url=normalized_url,
        ).update(**fields)

    async def create_extraction_job(self, *, crawl_job_id: str, only_missing: bool) -> Dict[str, Any]:
        job = await ExtractionJob.create(
            crawl_job_id=_as_uuid(crawl_job_id),
            status="running",
            only_missing=only_missing,
            started_at=utcnow(),
        )
        return await self.get_extraction_job(str(job.id))

    async def get_extraction_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        key = _as_uuid(job_id)
        if key is None:
            return None
        rows = await ExtractionJob.filter(id=key).values()
        return _stringify_ids(rows[0]) if rows else None

    async def update_extraction_job(self, job_id: str, **fields: Any) -> None:
        key = _as_uuid(job_id)
        if key is None:
            raise DoesNotExist(f"Extraction job {job_id} not found")
        await ExtractionJob.filter(id=key).update(**fields)

    async def list_content_urls(self, crawl_job_id: str) -> Set[str]:
        urls = await PageContent.filter(
            crawl_job_id=_as_uuid(crawl_job_id)
        ).values_list("normalized_url", flat=True)
        return set(urls)

    async def upsert_content(self, record: Dict[str, Any]) -> None:
        await PageContent.update_or_create(
            defaults=_content_fields(record),
            crawl_job_id=_as_uuid(record["crawl_job_id"]),
            normalized_url=record["normalized_url"],
        )

    async def delete_content(self, crawl_job_id: str, normalized_url: str) -> None:
        await PageContent.filter(
            crawl_job_id=_as_uuid(crawl_job_id),
            normalized_url=normalized_url,
        ).delete()

    async def insert_content(self, record: Dict[str, Any]) -> None:
        await PageContent.create(
            crawl_job_id=_as_uuid(record["crawl_job_id"]),
            normalized_url=record["normalized_url"],
            **_content_fields(record),
        )

    async def count_content(self, crawl_job_id: str) -> int:
        return await PageContent.filter(crawl_job_id=_as_uuid(crawl_job_id)).count()
