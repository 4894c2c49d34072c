import asyncio

import pytest
from aiohttp import test_utils

from sitemapper.api.server import BACKGROUND_TASKS, create_app
from sitemapper.extraction import ContentExtractionPipeline
from sitemapper.orchestrator import CrawlLimits, CrawlOrchestrator


def build_app(store, fetcher):
    orchestrator = CrawlOrchestrator(
        store,
        fetcher,
        limits=CrawlLimits(max_runtime=5, stall_timeout=5, watchdog_interval=0.01),
    )
    pipeline = ContentExtractionPipeline(store, fetcher, batch_delay=0)
    return create_app(store, orchestrator, pipeline)


async def wait_for_background(app):
    await asyncio.gather(*list(app[BACKGROUND_TASKS]))


@pytest.mark.asyncio
async def test_health(store, fake_fetcher):
    app = build_app(store, fake_fetcher())
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "service": "sitemapper"}


@pytest.mark.asyncio
async def test_start_crawl_and_read_results(store, fake_fetcher):
    fetcher = fake_fetcher(
        {"https://example.com": '<html><body><a href="https://external.org/">x</a></body></html>'}
    )
    app = build_app(store, fetcher)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post("/crawl", json={"domain": "example.com", "projectId": "p1"})
        assert resp.status == 202
        body = await resp.json()
        assert body["status"] == "running"
        job_id = body["crawl_job_id"]

        await wait_for_background(app)

        resp = await client.get(f"/crawl/{job_id}")
        assert resp.status == 200
        status = await resp.json()
        assert status["status"] == "completed"
        assert status["pages_crawled"] == 1
        assert status["stop_reason"] == "queue_exhausted"

        resp = await client.get(f"/crawl/{job_id}/pages")
        assert resp.status == 200
        pages = await resp.json()
        assert [p["normalized_url"] for p in pages["pages"]] == ["https://example.com/"]
        assert pages["external_links"]["https://external.org/"]["occurrences"] == 1


@pytest.mark.asyncio
async def test_start_crawl_rejects_bad_requests(store, fake_fetcher):
    app = build_app(store, fake_fetcher())
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post("/crawl", json={"domain": "example.com"})
        assert resp.status == 400
        assert "projectId" in (await resp.json())["message"]

        resp = await client.post("/crawl", data="{not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400

    assert store.crawl_jobs == {}


@pytest.mark.asyncio
async def test_unknown_crawl_job_is_404(store, fake_fetcher):
    app = build_app(store, fake_fetcher())
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        assert (await client.get("/crawl/nope")).status == 404
        assert (await client.get("/crawl/nope/pages")).status == 404
        assert (await client.post("/api/sitemaps/nope/extract-content")).status == 404


@pytest.mark.asyncio
async def test_extraction_endpoints(store, fake_fetcher):
    fetcher = fake_fetcher({"https://example.com": "<html><body><h1>Hi</h1></body></html>"})
    crawl = await store.create_crawl_job(domain="example.com", project_id="p1")
    await store.insert_page(
        crawl["id"], {"normalized_url": "https://example.com/", "url": "https://example.com"}
    )
    other = await store.create_crawl_job(domain="other.org", project_id="p1")

    app = build_app(store, fetcher)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post(f"/api/sitemaps/{crawl['id']}/extract-content")
        assert resp.status == 202
        body = await resp.json()
        job_id = body["extraction_job_id"]
        assert store.extraction_jobs[job_id]["only_missing"] is True

        await wait_for_background(app)

        resp = await client.get(f"/api/sitemaps/{crawl['id']}/extract-content/{job_id}")
        assert resp.status == 200
        status = await resp.json()
        assert status["status"] == "completed"
        assert status["pages_extracted"] == 1

        resp = await client.get(f"/api/sitemaps/{crawl['id'].upper()}/extract-content/{job_id}")
        assert resp.status == 200

        resp = await client.get(f"/api/sitemaps/{other['id']}/extract-content/{job_id}")
        assert resp.status == 400

        resp = await client.get(f"/api/sitemaps/{crawl['id']}/extract-content/unknown")
        assert resp.status == 404

        resp = await client.post(
            f"/api/sitemaps/{crawl['id']}/extract-content", json={"onlyMissing": False}
        )
        assert resp.status == 202
        second = (await resp.json())["extraction_job_id"]
        assert store.extraction_jobs[second]["only_missing"] is False
        await wait_for_background(app)


@pytest.mark.asyncio
async def test_unexpected_errors_return_500(store, fake_fetcher, monkeypatch):
    async def broken(**kwargs):
        raise RuntimeError("database is down")

    monkeypatch.setattr(store, "create_crawl_job", broken)
    app = build_app(store, fake_fetcher())
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post("/crawl", json={"domain": "example.com", "projectId": "p1"})
        assert resp.status == 500
        assert (await resp.json())["message"] == "database is down"


@pytest.mark.asyncio
async def test_resume_crawl(store, fake_fetcher):
    fetcher = fake_fetcher({"https://example.com/about": "<html><body>About</body></html>"})
    failed = await store.create_crawl_job(domain="example.com", project_id="p1")
    store.crawl_jobs[failed["id"]].update(
        status="failed",
        pending_frontier=[
            {"url": "https://example.com/about", "normalized_url": "https://example.com/about", "depth": 1}
        ],
    )
    store.pages[failed["id"]] = {
        "https://example.com/": {"normalized_url": "https://example.com/", "url": "https://example.com"}
    }
    done = await store.create_crawl_job(domain="example.com", project_id="p1")
    store.crawl_jobs[done["id"]]["status"] = "completed"

    app = build_app(store, fetcher)
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        resp = await client.post(f"/crawl/{failed['id']}/resume")
        assert resp.status == 202
        await wait_for_background(app)

        assert store.crawl_jobs[failed["id"]]["status"] == "completed"
        assert fetcher.calls == ["https://example.com/about"]

        assert (await client.post(f"/crawl/{done['id']}/resume")).status == 409
        assert (await client.post("/crawl/missing/resume")).status == 404
