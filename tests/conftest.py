import asyncio
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sitemapper.errors import FetchError
from sitemapper.fetcher import FetchResult
from sitemapper.storage.store import Store


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep deployment variables from leaking into configuration tests."""

    for key in [
        "DATABASE_URL",
        "POSTGRES_URL",
        "CRAWLER_USER_AGENT",
        "PORT",
        "MAX_PAGES",
        "MAX_DEPTH",
        "LOG_LEVEL",
        "SITEMAPPER_CONFIG",
        "SITEMAPPER_ENV_FILE",
    ]:
        monkeypatch.delenv(key, raising=False)

    yield

    for key in list(os.environ.keys()):
        if key.startswith("TEST_"):
            monkeypatch.delenv(key, raising=False)


class InMemoryStore(Store):
    """Store kept in dicts. ``fail_*`` flags make single operations raise."""

    def __init__(self):
        self.crawl_jobs = {}
        self.pages = {}
        self.extraction_jobs = {}
        self.content = {}

        self.crawl_updates = []
        self.fail_progress = False
        self.fail_list_pages = False
        self.fail_upsert = False
        self.fail_delete = False
        self.fail_insert_content = False

    # Crawl jobs
    async def create_crawl_job(self, *, domain, project_id):
        job_id = str(uuid.uuid4())
        self.crawl_jobs[job_id] = {
            "id": job_id,
            "domain": domain,
            "project_id": project_id,
            "status": "pending",
            "started_at": datetime.now(timezone.utc),
            "completed_at": None,
            "failed_at": None,
            "last_activity_at": None,
            "pages_discovered": None,
            "pages_crawled": None,
            "duplicates_skipped": None,
            "max_depth_reached": None,
            "stop_reason": None,
            "error_message": None,
            "external_links": None,
            "pending_frontier": None,
        }
        return dict(self.crawl_jobs[job_id])

    async def get_crawl_job(self, job_id):
        job = self.crawl_jobs.get(job_id)
        return dict(job) if job else None

    async def update_crawl_job(self, job_id, **fields):
        if job_id not in self.crawl_jobs:
            raise KeyError(job_id)
        if self.fail_progress and fields.get("status") == "running" and "pages_crawled" in fields:
            raise RuntimeError("progress write failed")
        self.crawl_updates.append(dict(fields))
        self.crawl_jobs[job_id].update(fields)

    # Pages
    async def list_pages(self, crawl_job_id):
        if self.fail_list_pages:
            raise RuntimeError("database unavailable")
        pages = self.pages.get(crawl_job_id, {})
        return [dict(pages[key]) for key in sorted(pages)]

    async def count_pages(self, crawl_job_id):
        return len(self.pages.get(crawl_job_id, {}))

    async def insert_page(self, crawl_job_id, page):
        pages = self.pages.setdefault(crawl_job_id, {})
        if page["normalized_url"] in pages:
            raise ValueError(f"duplicate page {page['normalized_url']}")
        pages[page["normalized_url"]] = dict(page)

    async def update_page(self, crawl_job_id, normalized_url, **fields):
        self.pages[crawl_job_id][normalized_url].update(fields)

    # Extraction jobs
    async def create_extraction_job(self, *, crawl_job_id, only_missing):
        job_id = str(uuid.uuid4())
        self.extraction_jobs[job_id] = {
            "id": job_id,
            "crawl_job_id": crawl_job_id,
            "status": "running",
            "only_missing": only_missing,
            "started_at": datetime.now(timezone.utc),
            "completed_at": None,
            "failed_at": None,
            "last_activity_at": None,
            "pages_total": None,
            "pages_extracted": None,
            "pages_failed": None,
            "pages_skipped": None,
            "pages_in_database": None,
            "failed_urls": None,
            "error_message": None,
        }
        return dict(self.extraction_jobs[job_id])

    async def get_extraction_job(self, job_id):
        job = self.extraction_jobs.get(job_id)
        return dict(job) if job else None

    async def update_extraction_job(self, job_id, **fields):
        self.extraction_jobs[job_id].update(fields)

    # Page content
    async def list_content_urls(self, crawl_job_id):
        return {url for job_id, url in self.content if job_id == crawl_job_id}

    async def upsert_content(self, record):
        if self.fail_upsert:
            raise RuntimeError("on conflict target missing")
        self.content[(record["crawl_job_id"], record["normalized_url"])] = dict(record)

    async def delete_content(self, crawl_job_id, normalized_url):
        if self.fail_delete:
            raise RuntimeError("delete refused")
        self.content.pop((crawl_job_id, normalized_url), None)

    async def insert_content(self, record):
        if self.fail_insert_content:
            raise RuntimeError("insert refused")
        key = (record["crawl_job_id"], record["normalized_url"])
        if key in self.content:
            raise ValueError("duplicate key")
        self.content[key] = dict(record)

    async def count_content(self, crawl_job_id):
        return sum(1 for job_id, _ in self.content if job_id == crawl_job_id)


class FakeFetcher:
    """Serves canned responses keyed by URL; unknown URLs fail like a refused connection.

    A response is an HTML string, a ``FetchResult`` or an exception to raise.
    """

    def __init__(self, responses=None, delay=0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)

        response = self.responses.get(url)
        if response is None:
            raise FetchError(url, f"Failed to fetch {url}: connection refused", "connection_error")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return FetchResult(final_url=url, status_code=200, html=response, content_type="text/html")
        return response


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher
