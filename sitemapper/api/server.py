import asyncio
import json
import uuid
from typing import Any, Awaitable, Dict, Set

from aiohttp import web
from loguru import logger

from sitemapper.errors import InvalidInputError, JobNotFoundError
from sitemapper.extraction import ContentExtractionPipeline
from sitemapper.jobs import STATUS_COMPLETED, get_crawl_pages, get_crawl_status, get_extraction_status
from sitemapper.orchestrator import CrawlOrchestrator
from sitemapper.storage.store import Store


STORE = web.AppKey("store", Store)
ORCHESTRATOR = web.AppKey("orchestrator", CrawlOrchestrator)
PIPELINE = web.AppKey("pipeline", ContentExtractionPipeline)
BACKGROUND_TASKS = web.AppKey("background_tasks", set)
ACTIVE_CRAWLS = web.AppKey("active_crawls", set)


def _same_id(left: Any, right: Any) -> bool:
    """Compare job ids as UUIDs so case and formatting differences do not matter."""
    try:
        return uuid.UUID(str(left)) == uuid.UUID(str(right))
    except ValueError:
        return str(left) == str(right)


def _error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


async def _read_json(request: web.Request, *, optional: bool = False) -> Dict[str, Any]:
    if optional and not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidInputError(f"Request body is not valid JSON: {exc}") from exc
    if body is None and optional:
        return {}
    if not isinstance(body, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return body


def _spawn(app: web.Application, coro: Awaitable, name: str) -> None:
    """Run a job outside the request; the task set keeps it referenced."""
    tasks: Set[asyncio.Task] = app[BACKGROUND_TASKS]
    task = asyncio.create_task(coro, name=name)
    tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.opt(exception=t.exception()).error(f"Background job {name} crashed")

    task.add_done_callback(_done)


def _spawn_crawl(app: web.Application, job_id: str) -> None:
    active: Set[str] = app[ACTIVE_CRAWLS]
    active.add(job_id)

    async def crawl() -> None:
        try:
            await app[ORCHESTRATOR].run(job_id)
        finally:
            active.discard(job_id)

    _spawn(app, crawl(), f"crawl-{job_id}")


# -------------------------
# Middleware
# -------------------------

@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except InvalidInputError as exc:
        return _error(400, "Bad Request", str(exc))
    except JobNotFoundError as exc:
        return _error(404, "Not Found", str(exc))
    except Exception as exc:
        logger.exception(f"Unhandled error on {request.method} {request.path}: {exc}")
        return _error(500, "Internal Server Error", str(exc))


# -------------------------
# Handlers
# -------------------------

async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": "sitemapper"})


async def start_crawl(request: web.Request) -> web.Response:
    body = await _read_json(request)
    job = await request.app[ORCHESTRATOR].start(body.get("domain"), body.get("projectId"))

    job_id = job["id"]
    _spawn_crawl(request.app, job_id)

    return web.json_response(
        {
            "crawl_job_id": job_id,
            "status": "running",
            "message": f"Crawl started for {job.get('domain')}",
        },
        status=202,
    )


async def resume_crawl(request: web.Request) -> web.Response:
    job_id = request.match_info["job_id"]
    job = await request.app[STORE].get_crawl_job(job_id)
    if job is None:
        return _error(404, "Not Found", f"Crawl job {job_id} not found")

    if job_id in request.app[ACTIVE_CRAWLS]:
        return _error(409, "Conflict", f"Crawl job {job_id} is already running")
    if job.get("status") == STATUS_COMPLETED:
        return _error(409, "Conflict", f"Crawl job {job_id} is already completed")

    _spawn_crawl(request.app, job_id)

    return web.json_response(
        {
            "crawl_job_id": job_id,
            "status": "running",
            "message": f"Crawl resumed for {job.get('domain')}",
        },
        status=202,
    )


async def crawl_status(request: web.Request) -> web.Response:
    job_id = request.match_info["job_id"]
    status = await get_crawl_status(request.app[STORE], job_id)
    if status is None:
        return _error(404, "Not Found", f"Crawl job {job_id} not found")
    return web.json_response(status)


async def crawl_pages(request: web.Request) -> web.Response:
    job_id = request.match_info["job_id"]
    result = await get_crawl_pages(request.app[STORE], job_id)
    if result is None:
        return _error(404, "Not Found", f"Crawl job {job_id} not found")
    return web.json_response(result)


async def start_extraction(request: web.Request) -> web.Response:
    sitemap_id = request.match_info["sitemap_id"]
    body = await _read_json(request, optional=True)

    only_missing = body.get("onlyMissing", True)
    if not isinstance(only_missing, bool):
        raise InvalidInputError("onlyMissing must be a boolean")

    pipeline = request.app[PIPELINE]
    job = await pipeline.start(sitemap_id, only_missing)
    _spawn(request.app, pipeline.run(job), f"extraction-{job['id']}")

    return web.json_response(
        {
            "extraction_job_id": job["id"],
            "status": "running",
            "message": f"Content extraction started for sitemap {sitemap_id}",
        },
        status=202,
    )


async def extraction_status(request: web.Request) -> web.Response:
    sitemap_id = request.match_info["sitemap_id"]
    job_id = request.match_info["job_id"]

    status = await get_extraction_status(request.app[STORE], job_id)
    if status is None:
        return _error(404, "Not Found", f"Extraction job {job_id} not found")
    if not _same_id(status["crawl_job_id"], sitemap_id):
        return _error(
            400,
            "Bad Request",
            f"Extraction job {job_id} does not belong to sitemap {sitemap_id}",
        )
    return web.json_response(status)


# -------------------------
# Application
# -------------------------

async def _cancel_background_tasks(app: web.Application) -> None:
    tasks = list(app[BACKGROUND_TASKS])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def create_app(
    store: Store,
    orchestrator: CrawlOrchestrator,
    pipeline: ContentExtractionPipeline,
) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[STORE] = store
    app[ORCHESTRATOR] = orchestrator
    app[PIPELINE] = pipeline
    app[BACKGROUND_TASKS] = set()
    app[ACTIVE_CRAWLS] = set()

    app.router.add_get("/health", health)
    app.router.add_post("/crawl", start_crawl)
    app.router.add_post("/crawl/{job_id}/resume", resume_crawl)
    app.router.add_get("/crawl/{job_id}", crawl_status)
    app.router.add_get("/crawl/{job_id}/pages", crawl_pages)
    app.router.add_post("/api/sitemaps/{sitemap_id}/extract-content", start_extraction)
    app.router.add_get("/api/sitemaps/{sitemap_id}/extract-content/{job_id}", extraction_status)

    app.on_cleanup.append(_cancel_background_tasks)
    return app


async def start_api_server(app: web.Application, host: str = "0.0.0.0", port: int = 3000):
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"API listening on http://{host}:{port}")

    return runner, site
