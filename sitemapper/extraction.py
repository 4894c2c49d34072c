import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from sitemapper.errors import ExtractionError, InvalidTransitionError, JobNotFoundError, PersistenceError
from sitemapper.fetcher import PageFetcher
from sitemapper.jobs import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING, check_transition
from sitemapper.monitoring.metrics_server import EXTRACTED_PAGES, PERSIST_FALLBACKS
from sitemapper.parsing.content_extractor import build_content_record
from sitemapper.storage.store import Store


BATCH_SIZE = 10
BATCH_DELAY_SECONDS = 1.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PageOutcome:
    url: str
    normalized_url: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ContentExtractionPipeline:
    """Fetches already-crawled pages again and stores their structured content.

    Pages are processed in fixed-size batches; every page of a batch runs
    concurrently, and the next batch starts only after the current one has
    settled and the delay has elapsed.
    """

    def __init__(
        self,
        store: Store,
        fetcher: PageFetcher,
        *,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
    ):
        self.store = store
        self.fetcher = fetcher
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay

    async def start(self, crawl_job_id: str, only_missing: bool = True) -> Dict[str, Any]:
        crawl_job = await self.store.get_crawl_job(crawl_job_id)
        if crawl_job is None:
            raise JobNotFoundError(f"Crawl job {crawl_job_id} not found")

        job = await self.store.create_extraction_job(
            crawl_job_id=crawl_job_id, only_missing=only_missing
        )
        logger.info(f"Created content extraction job {job['id']} for sitemap {crawl_job_id}")
        return job

    async def run(self, extraction_job: Dict[str, Any]) -> None:
        job_id = extraction_job["id"]
        crawl_job_id = extraction_job["crawl_job_id"]
        only_missing = bool(extraction_job.get("only_missing", True))
        log = logger.bind(job_id=job_id)

        log.info(
            f"[CONTENT EXTRACTION START] Job {job_id} - Starting content extraction "
            f"for sitemap {crawl_job_id} (only missing: {only_missing})"
        )

        try:
            await self._extract_all(job_id, crawl_job_id, only_missing, log)
        except Exception as exc:
            log.exception(f"[CONTENT EXTRACTION FAILED] Job {job_id} - Error: {exc}")
            await self._fail(job_id, f"Content extraction failed: {exc}", log)

    async def _extract_all(self, job_id: str, crawl_job_id: str, only_missing: bool, log) -> None:
        try:
            all_pages = await self.store.list_pages(crawl_job_id)
            pages = all_pages
            if only_missing and all_pages:
                existing = await self.store.list_content_urls(crawl_job_id)
                pages = [p for p in all_pages if p["normalized_url"] not in existing]
                log.info(
                    f"[CONTENT EXTRACTION] Job {job_id} - Filtered to {len(pages)} pages "
                    f"missing content (out of {len(all_pages)} total)"
                )
        except Exception as exc:
            log.error(f"[CONTENT EXTRACTION FAILED] Job {job_id} - Error: {exc}")
            await self._fail(job_id, f"Failed to load pages: {exc}", log)
            return

        if not pages:
            log.info(f"[CONTENT EXTRACTION] Job {job_id} - No pages to extract")
            await self._check_stored_transition(job_id, STATUS_COMPLETED)
            await self.store.update_extraction_job(
                job_id,
                status=STATUS_COMPLETED,
                completed_at=_now(),
                pages_total=len(all_pages),
                pages_extracted=0,
                pages_failed=0,
                pages_skipped=len(all_pages),
            )
            return

        log.info(f"[CONTENT EXTRACTION] Job {job_id} - Found {len(pages)} pages to process")

        extracted = 0
        failed_urls: List[Dict[str, str]] = []

        for start in range(0, len(pages), self.batch_size):
            batch = pages[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._extract_page(crawl_job_id, page, log) for page in batch)
            )

            for outcome in outcomes:
                if outcome.ok:
                    extracted += 1
                else:
                    failed_urls.append({"url": outcome.url, "error": outcome.error})

            try:
                await self.store.update_extraction_job(
                    job_id,
                    status=STATUS_RUNNING,
                    last_activity_at=_now(),
                    pages_total=len(pages),
                    pages_extracted=extracted,
                    pages_failed=len(failed_urls),
                )
            except Exception as exc:
                log.warning(f"[CONTENT EXTRACTION] Job {job_id} - Failed to update progress: {exc}")

            if start + self.batch_size < len(pages):
                await asyncio.sleep(self.batch_delay)

        in_database: Optional[int] = None
        try:
            in_database = await self.store.count_content(crawl_job_id)
        except Exception as exc:
            log.error(f"[CONTENT EXTRACTION] Job {job_id} - Error counting saved records: {exc}")
        else:
            if in_database != extracted:
                log.warning(
                    f"[CONTENT EXTRACTION] Job {job_id} - Mismatch: expected {extracted} "
                    f"records, found {in_database} in database"
                )

        await self._check_stored_transition(job_id, STATUS_COMPLETED)
        await self.store.update_extraction_job(
            job_id,
            status=STATUS_COMPLETED,
            completed_at=_now(),
            pages_total=len(pages),
            pages_extracted=extracted,
            pages_failed=len(failed_urls),
            pages_in_database=in_database,
            failed_urls=failed_urls or None,
        )

        log.info(
            f"[CONTENT EXTRACTION COMPLETION] Job {job_id} - Total: {len(pages)}, "
            f"Extracted: {extracted}, Failed: {len(failed_urls)}, In DB: {in_database}"
        )
        for failure in failed_urls:
            log.info(f"[CONTENT EXTRACTION COMPLETION] Job {job_id} - {failure['url']}: {failure['error']}")

    async def _check_stored_transition(self, job_id: str, new_status: str) -> None:
        job = await self.store.get_extraction_job(job_id)
        check_transition(job.get("status") if job else None, new_status)

    async def _fail(self, job_id: str, message: str, log) -> None:
        """Best-effort failed write; never raises and never overwrites a completed job."""
        try:
            await self._check_stored_transition(job_id, STATUS_FAILED)
        except InvalidTransitionError as exc:
            log.warning(f"[CONTENT EXTRACTION FAILED] Job {job_id} - Not recording failure: {exc}")
            return
        except Exception as exc:
            log.warning(f"[CONTENT EXTRACTION FAILED] Job {job_id} - Could not read current status: {exc}")

        try:
            await self.store.update_extraction_job(
                job_id,
                status=STATUS_FAILED,
                failed_at=_now(),
                error_message=message,
            )
        except Exception as exc:
            log.error(f"[CONTENT EXTRACTION FAILED] Job {job_id} - Could not record failure: {exc}")
            return
        EXTRACTED_PAGES.labels(outcome="job_failed").inc()

    async def _extract_page(self, crawl_job_id: str, page: Dict[str, Any], log) -> PageOutcome:
        normalized_url = page["normalized_url"]
        url = page.get("url") or normalized_url

        try:
            result = await self.fetcher.fetch(url)
            if result.html is None:
                raise ExtractionError(f"Failed to fetch HTML content from {url}")

            record = build_content_record(
                result.html,
                crawl_job_id=crawl_job_id,
                normalized_url=normalized_url,
            )
            await self._persist(record, log)
        except Exception as exc:
            EXTRACTED_PAGES.labels(outcome="failed").inc()
            log.error(f"[CONTENT EXTRACTION] Failed to extract content for {url}: {exc}")
            return PageOutcome(url, normalized_url, str(exc) or exc.__class__.__name__)

        EXTRACTED_PAGES.labels(outcome="extracted").inc()
        log.info(f"[CONTENT EXTRACTION] Extracted content for {normalized_url}")
        return PageOutcome(url, normalized_url)

    async def _persist(self, record: Dict[str, Any], log) -> None:
        """Upsert, falling back to delete then insert when the upsert fails."""
        try:
            await self.store.upsert_content(record)
            return
        except Exception as upsert_exc:
            upsert_error = upsert_exc

        PERSIST_FALLBACKS.inc()
        log.warning(
            f"[CONTENT EXTRACTION] Upsert failed for {record['normalized_url']} "
            f"({upsert_error}); retrying with delete and insert"
        )

        try:
            await self.store.delete_content(record["crawl_job_id"], record["normalized_url"])
        except Exception as exc:
            log.error(f"[CONTENT EXTRACTION] Delete error (non-fatal): {exc}")

        try:
            await self.store.insert_content(record)
        except Exception as exc:
            raise PersistenceError(
                f"Database error (upsert failed, insert also failed): {exc}. "
                f"Original: {upsert_error}"
            ) from exc
