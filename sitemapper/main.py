import asyncio
import signal
from loguru import logger

# -------------------------------
# UVLOOP (used when installed)
# -------------------------------
try:
    import uvloop
    uvloop.install()
except ImportError:
    logger.warning("uvloop not available, using default asyncio loop.")

# -------------------------------
# INTERNAL IMPORTS
# -------------------------------
from tortoise import connections

from sitemapper.api.server import create_app, start_api_server
from sitemapper.extraction import ContentExtractionPipeline
from sitemapper.fetcher import PageFetcher
from sitemapper.monitoring.metrics_server import start_metrics_server
from sitemapper.orchestrator import CrawlLimits, CrawlOrchestrator
from sitemapper.storage.postgres.postgres_init import init_database
from sitemapper.storage.store import TortoiseStore
from sitemapper.utils.config_loader import load_config
from sitemapper.utils.logger import setup_logger


# -------------------------------
# MAIN APPLICATION
# -------------------------------
async def main() -> None:
    config = load_config()
    setup_logger(log_level=config.log_level, log_path=config.log_path)

    logger.info("Starting sitemapper...")

    metrics_runner = None
    api_runner = None

    # ---- Database ----
    await init_database(config.database_url)
    store = TortoiseStore()

    # ---- Fetchers ----
    crawl_fetcher = PageFetcher(
        timeout=config.request_timeout,
        max_redirects=config.max_redirects,
        user_agent=config.user_agent,
        purpose="crawl",
    )
    extraction_fetcher = PageFetcher(
        timeout=config.request_timeout,
        max_redirects=config.max_redirects,
        user_agent=config.user_agent,
        purpose="extraction",
    )

    async with crawl_fetcher, extraction_fetcher:
        orchestrator = CrawlOrchestrator(
            store,
            crawl_fetcher,
            limits=CrawlLimits(
                max_pages=config.max_pages,
                max_depth=config.max_depth,
                max_runtime=config.max_runtime_seconds,
                stall_timeout=config.stall_timeout_seconds,
                watchdog_interval=config.watchdog_interval_seconds,
            ),
        )
        pipeline = ContentExtractionPipeline(
            store,
            extraction_fetcher,
            batch_size=config.extraction_batch_size,
            batch_delay=config.extraction_batch_delay,
        )
        logger.info(
            f"Crawl limits: {config.max_pages} pages, depth {config.max_depth}, "
            f"{config.max_runtime_seconds:g}s runtime, {config.stall_timeout_seconds:g}s stall timeout"
        )

        # ---- Metrics Server ----
        if config.metrics_port:
            metrics_runner, _ = await start_metrics_server(port=config.metrics_port)

        # ---- HTTP API ----
        app = create_app(store, orchestrator, pipeline)
        api_runner, _ = await start_api_server(app, host=config.api_host, port=config.api_port)

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown_event.set)

        logger.info("Sitemapper started successfully.")

        try:
            await shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("Shutting down...")

            # running jobs are cancelled here and record their failure
            if api_runner is not None:
                await api_runner.cleanup()

            if metrics_runner is not None:
                await metrics_runner.shutdown()
                await metrics_runner.cleanup()

    await connections.close_all()


# -------------------------------
# ENTRYPOINT
# -------------------------------
def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
