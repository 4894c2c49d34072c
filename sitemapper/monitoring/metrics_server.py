from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    generate_latest,
    Counter,
    Gauge,
    Histogram,
)

# -------------------------
# Fetch metrics
# -------------------------

REQUEST_COUNT = Counter(
    "sitemapper_requests_total",
    "Total HTTP requests",
    ["purpose"],
)

FAILED_REQUESTS = Counter(
    "sitemapper_failed_requests_total",
    "HTTP requests that failed at the network level",
    ["purpose", "category"],
)

REQUEST_LATENCY = Histogram(
    "sitemapper_request_latency_seconds",
    "Time to fetch a page",
    ["purpose"],
)

SKIPPED_NON_HTML = Counter(
    "sitemapper_skipped_non_html_total",
    "Responses ignored because they were not HTML",
    ["purpose"],
)

# -------------------------
# Crawl metrics
# -------------------------

CRAWLED_PAGES = Counter(
    "sitemapper_crawled_pages_total",
    "Pages stored by the crawl orchestrator",
)

SKIPPED_LINKS = Counter(
    "sitemapper_skipped_links_total",
    "Frontier entries or links dropped before fetching",
    ["reason"],
)

FRONTIER_SIZE = Gauge(
    "sitemapper_frontier_size",
    "URLs waiting in the frontier of the running crawl",
)

CRAWL_JOBS = Counter(
    "sitemapper_crawl_jobs_total",
    "Crawl jobs that reached a terminal state",
    ["status", "stop_reason"],
)

# -------------------------
# Extraction metrics
# -------------------------

EXTRACTED_PAGES = Counter(
    "sitemapper_extracted_pages_total",
    "Content extraction outcomes per page",
    ["outcome"],
)

PERSIST_FALLBACKS = Counter(
    "sitemapper_content_persist_fallbacks_total",
    "Content upserts that fell back to delete+insert",
)


# -------------------------
# /metrics endpoint
# -------------------------

async def metrics_handler(request):
    data = generate_latest()

    # aiohttp rejects a charset inside content_type
    ctype = CONTENT_TYPE_LATEST.split(";")[0]

    return web.Response(
        body=data,
        content_type=ctype
    )


async def start_metrics_server(host="0.0.0.0", port=8000):
    app = web.Application()
    app.router.add_get("/metrics", metrics_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    return runner, site
