"""Job lifecycle: statuses, allowed transitions and the read-only status views."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sitemapper.errors import InvalidTransitionError
from sitemapper.storage.store import Store
from sitemapper.utils.url_utils import canonicalize, is_in_scope, primary_domain


STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

# A failed job may be re-run; the new run resumes from its persisted pages.
# A re-run that fails again replaces the earlier failure.
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: frozenset({STATUS_RUNNING, STATUS_FAILED}),
    STATUS_RUNNING: frozenset({STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_FAILED: frozenset({STATUS_RUNNING, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset(),
}


def check_transition(current: Optional[str], new: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(current or STATUS_PENDING, frozenset())
    if new not in allowed:
        raise InvalidTransitionError(current or STATUS_PENDING, new)


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


async def get_crawl_status(store: Store, job_id: str) -> Optional[Dict[str, Any]]:
    """Status DTO for a crawl job, or None if it does not exist.

    Counters not written yet (a job that just started, or one interrupted
    before its first progress write) fall back to the live page count.
    """
    job = await store.get_crawl_job(job_id)
    if job is None:
        return None

    page_count = await store.count_pages(job_id)

    return {
        "crawl_job_id": job["id"],
        "domain": job.get("domain"),
        "project_id": job.get("project_id"),
        "status": job.get("status"),
        "started_at": _iso(job.get("started_at")),
        "completed_at": _iso(job.get("completed_at")),
        "failed_at": _iso(job.get("failed_at")),
        "last_activity_at": _iso(job.get("last_activity_at")),
        "pages_discovered": _first_set(job.get("pages_discovered"), page_count),
        "pages_crawled": _first_set(job.get("pages_crawled"), page_count),
        "duplicates_skipped": job.get("duplicates_skipped"),
        "max_depth_reached": job.get("max_depth_reached"),
        "stop_reason": job.get("stop_reason") or None,
        "error_message": job.get("error_message") or None,
    }


async def get_crawl_pages(store: Store, job_id: str) -> Optional[Dict[str, Any]]:
    """Pages and external registry of a job.

    Pages outside the job's primary domain or repeating a normalized_url are
    dropped here too, whatever the orchestrator already guarantees.
    """
    job = await store.get_crawl_job(job_id)
    if job is None:
        return None

    domain = primary_domain(job.get("domain") or "")
    pages: List[Dict[str, Any]] = []
    seen = set()

    for page in await store.list_pages(job_id):
        normalized = page.get("normalized_url") or canonicalize(page.get("url") or "")
        if not normalized or normalized in seen:
            continue
        if not is_in_scope(normalized, domain):
            continue
        seen.add(normalized)
        pages.append({**page, "normalized_url": normalized})

    return {
        "pages": pages,
        "external_links": job.get("external_links") or {},
    }


async def get_extraction_status(store: Store, job_id: str) -> Optional[Dict[str, Any]]:
    job = await store.get_extraction_job(job_id)
    if job is None:
        return None

    return {
        "extraction_job_id": job["id"],
        "crawl_job_id": job.get("crawl_job_id"),
        "status": job.get("status"),
        "only_missing": job.get("only_missing"),
        "started_at": _iso(job.get("started_at")),
        "completed_at": _iso(job.get("completed_at")),
        "failed_at": _iso(job.get("failed_at")),
        "last_activity_at": _iso(job.get("last_activity_at")),
        "pages_total": job.get("pages_total"),
        "pages_extracted": job.get("pages_extracted"),
        "pages_failed": job.get("pages_failed"),
        "pages_skipped": job.get("pages_skipped"),
        "pages_in_database": job.get("pages_in_database"),
        "failed_urls": job.get("failed_urls"),
        "error_message": job.get("error_message") or None,
    }
