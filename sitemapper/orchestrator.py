import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from loguru import logger

from sitemapper.errors import FetchError, InvalidInputError, InvalidTransitionError, JobNotFoundError
from sitemapper.fetcher import PageFetcher
from sitemapper.jobs import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    check_transition,
)
from sitemapper.link_graph import LinkGraph
from sitemapper.monitoring.metrics_server import (
    CRAWL_JOBS,
    CRAWLED_PAGES,
    FRONTIER_SIZE,
    SKIPPED_LINKS,
)
from sitemapper.parsing.html_extractor import PageMetadata, extract_links, parse_metadata
from sitemapper.storage.store import Store
from sitemapper.utils.filters import skip_reason
from sitemapper.utils.url_utils import (
    canonicalize,
    is_in_scope,
    primary_domain,
    resolve_url,
    seed_url_for,
)
from sitemapper.watchdog import CrawlWatchdog


MAX_PAGES = 1000
MAX_DEPTH = 10
MAX_RUNTIME_SECONDS = 15 * 60
STALL_TIMEOUT_SECONDS = 2 * 60

STOP_MAX_PAGES = "max_pages_reached"
STOP_EXHAUSTED = "queue_exhausted"
STOP_ERROR = "error"
STOP_INVALID_SEED = "invalid_seed_url"
STOP_CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CrawlLimits:
    max_pages: int = MAX_PAGES
    max_depth: int = MAX_DEPTH
    max_runtime: float = MAX_RUNTIME_SECONDS
    stall_timeout: float = STALL_TIMEOUT_SECONDS
    watchdog_interval: float = 30.0


@dataclass
class FrontierEntry:
    normalized_url: str
    depth: int
    original_url: str


@dataclass
class CrawlState:
    job_id: str
    domain: str
    seed_url: str
    graph: LinkGraph
    frontier: Deque[FrontierEntry] = field(default_factory=deque)
    # every normalized URL ever enqueued (or already stored)
    seen: Set[str] = field(default_factory=set)
    pages: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # inbound counts persisted by earlier runs of the same job
    resumed_in: Dict[str, int] = field(default_factory=dict)
    # seen-set size reported by earlier runs; failed and skipped URLs are
    # not rebuilt on resume, so the live set can be smaller
    discovered_before: int = 0
    duplicates_skipped: int = 0
    max_depth_reached: int = 0
    links_discovered: int = 0
    in_flight: Optional[FrontierEntry] = None

    def pending_frontier(self) -> List[Dict[str, Any]]:
        """Unvisited entries, including the one being processed, as JSON."""
        entries = list(self.frontier)
        if self.in_flight is not None and self.in_flight.normalized_url not in self.pages:
            entries.insert(0, self.in_flight)
        return [
            {"url": e.original_url, "normalized_url": e.normalized_url, "depth": e.depth}
            for e in entries
        ]

    def counters(self) -> Dict[str, int]:
        return {
            "pages_discovered": max(self.discovered_before, len(self.seen)),
            "pages_crawled": len(self.pages),
            "duplicates_skipped": self.duplicates_skipped,
            "max_depth_reached": self.max_depth_reached,
        }


class CrawlOrchestrator:
    """Breadth-first crawl of a single domain for one crawl job.

    The traversal is strictly sequential: one fetch in flight, and the
    frontier, seen-set, page map and link graph have a single writer.
    """

    def __init__(
        self,
        store: Store,
        fetcher: PageFetcher,
        *,
        limits: Optional[CrawlLimits] = None,
        metadata_parser: Callable[[str], PageMetadata] = parse_metadata,
        link_extractor: Callable[[str], List[str]] = extract_links,
    ):
        self.store = store
        self.fetcher = fetcher
        self.limits = limits or CrawlLimits()
        self.metadata_parser = metadata_parser
        self.link_extractor = link_extractor

    # --------------------------
    #  Job creation
    # --------------------------
    async def start(self, domain: Optional[str], project_id: Optional[str]) -> Dict[str, Any]:
        if not domain:
            raise InvalidInputError("domain is required")
        if not project_id:
            raise InvalidInputError("projectId is required")

        job = await self.store.create_crawl_job(domain=domain, project_id=project_id)
        logger.info(f"Created crawl job {job['id']} for {domain}")
        return job

    # --------------------------
    #  Run / resume
    # --------------------------
    async def run(self, job_id: str) -> Optional[str]:
        """Crawl (or resume) a job until it reaches a terminal state.

        Returns the final stop reason, or None when the job was already
        completed and nothing was done.
        """
        job = await self.store.get_crawl_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Crawl job {job_id} not found")

        log = logger.bind(job_id=job_id)

        if job.get("status") == STATUS_COMPLETED:
            log.warning(f"[CRAWL START] Job {job_id} is already completed; nothing to resume")
            return None

        seed_url = seed_url_for(job.get("domain") or "")
        seed = canonicalize(seed_url)
        domain = primary_domain(seed_url)

        log.info(f"[CRAWL START] Job {job_id} - Seed URL: {seed_url}")
        log.info(
            f"[CRAWL START] Job {job_id} - Max pages: {self.limits.max_pages}, "
            f"Max depth: {self.limits.max_depth}"
        )

        if seed is None or domain is None or not is_in_scope(seed, domain):
            log.error(f"[CRAWL FAILED] Job {job_id} - Invalid seed URL: {seed_url}")
            await self._fail(job_id, None, STOP_INVALID_SEED, f"Invalid seed URL: {seed_url}")
            return STOP_INVALID_SEED

        check_transition(job.get("status"), STATUS_RUNNING)
        try:
            await self.store.update_crawl_job(
                job_id,
                status=STATUS_RUNNING,
                failed_at=None,
                completed_at=None,
                stop_reason=None,
                error_message=None,
                last_activity_at=_now(),
            )
            state = await self._load_state(job, seed, seed_url, domain)
        except Exception as exc:
            log.exception(f"[CRAWL FAILED] Job {job_id} - Could not start crawl: {exc}")
            await self._fail(job_id, None, STOP_ERROR, f"Failed to start crawl: {exc}")
            return STOP_ERROR

        watchdog = CrawlWatchdog(
            max_runtime=self.limits.max_runtime,
            stall_timeout=self.limits.stall_timeout,
            check_interval=self.limits.watchdog_interval,
        )
        traversal = asyncio.create_task(self._crawl(state, watchdog, log))
        watchdog.arm(traversal)

        try:
            return await traversal
        except asyncio.CancelledError:
            if not watchdog.tripped:
                log.warning(f"[CRAWL FAILED] Job {job_id} - Cancelled from outside")
                await self._fail(job_id, state, STOP_CANCELLED, "Crawl cancelled before completion")
                raise
            log.error(f"[CRAWL FAILED] Job {job_id} - {watchdog.message}")
            await self._fail(job_id, state, watchdog.reason, watchdog.message)
            return watchdog.reason
        except Exception as exc:
            log.exception(f"[CRAWL FAILED] Job {job_id} - Crawl failed with error: {exc}")
            await self._fail(job_id, state, STOP_ERROR, str(exc) or exc.__class__.__name__)
            return STOP_ERROR
        finally:
            watchdog.disarm()
            FRONTIER_SIZE.set(0)

    async def _load_state(
        self, job: Dict[str, Any], seed: str, seed_url: str, domain: str
    ) -> CrawlState:
        job_id = job["id"]
        state = CrawlState(
            job_id=job_id,
            domain=domain,
            seed_url=seed_url,
            graph=LinkGraph(job.get("external_links")),
            discovered_before=job.get("pages_discovered") or 0,
            duplicates_skipped=job.get("duplicates_skipped") or 0,
            max_depth_reached=job.get("max_depth_reached") or 0,
        )

        for page in await self.store.list_pages(job_id):
            normalized = page.get("normalized_url")
            if not normalized:
                continue
            state.pages[normalized] = page
            state.seen.add(normalized)
            state.resumed_in[normalized] = page.get("internal_links_in") or 0

        if seed not in state.seen:
            state.seen.add(seed)
            state.frontier.append(FrontierEntry(seed, 0, seed_url))

        for saved in job.get("pending_frontier") or []:
            normalized = saved.get("normalized_url")
            if not normalized or normalized in state.seen:
                continue
            state.seen.add(normalized)
            state.frontier.append(
                FrontierEntry(normalized, int(saved.get("depth") or 0), saved.get("url") or normalized)
            )

        if state.pages or len(state.frontier) > 1:
            logger.bind(job_id=job_id).info(
                f"[CRAWL START] Job {job_id} - Resuming with {len(state.pages)} stored pages "
                f"and {len(state.frontier)} queued URLs"
            )

        return state

    # --------------------------
    #  Traversal
    # --------------------------
    async def _crawl(self, state: CrawlState, watchdog: CrawlWatchdog, log) -> str:
        max_pages = self.limits.max_pages

        while state.frontier and len(state.pages) < max_pages:
            entry = state.frontier.popleft()
            FRONTIER_SIZE.set(len(state.frontier))

            reason = self._drop_reason(state, entry)
            if reason is not None:
                log.debug(f"[SKIP] Job {state.job_id} - {entry.original_url} - skipped due to {reason}")
                continue

            # cleared only once the entry is settled, so a cancelled fetch
            # still lands in the saved frontier
            state.in_flight = entry
            try:
                stored = await self._process_entry(state, entry, log)
            except FetchError as exc:
                log.warning(f"[ERROR] Job {state.job_id} - {exc}")
                stored = False
            except Exception as exc:
                log.error(f"[ERROR] Job {state.job_id} - Error processing {entry.original_url}: {exc}")
                stored = False
            state.in_flight = None

            if stored:
                watchdog.touch()
                await self._write_progress(state, log)

        stop_reason = STOP_MAX_PAGES if len(state.pages) >= max_pages else STOP_EXHAUSTED
        log.info(f"[CRAWL COMPLETION] Job {state.job_id} - Crawl finished. Reason: {stop_reason}")

        await self._finalize(state, stop_reason, watchdog, log)
        return stop_reason

    def _drop_reason(self, state: CrawlState, entry: FrontierEntry) -> Optional[str]:
        if entry.depth > self.limits.max_depth:
            SKIPPED_LINKS.labels(reason="max_depth").inc()
            return f"depth ({entry.depth} > {self.limits.max_depth})"

        if not is_in_scope(entry.normalized_url, state.domain):
            SKIPPED_LINKS.labels(reason="out_of_scope").inc()
            return f"external domain ({entry.normalized_url})"

        if entry.normalized_url in state.pages:
            state.duplicates_skipped += 1
            SKIPPED_LINKS.labels(reason="duplicate").inc()
            return f"duplicate normalized URL (already crawled): {entry.normalized_url}"

        reason = skip_reason(entry.original_url) or skip_reason(entry.normalized_url)
        if reason is not None:
            SKIPPED_LINKS.labels(reason="skip_policy").inc()
        return reason

    async def _process_entry(self, state: CrawlState, entry: FrontierEntry, log) -> bool:
        """Fetch, classify links and store one page. Returns True if a page was stored."""
        log.info(
            f"[PROGRESS] Job {state.job_id} - Crawling page {len(state.pages) + 1}/"
            f"{self.limits.max_pages} (depth {entry.depth}): {entry.original_url}"
        )

        result = await self.fetcher.fetch(entry.original_url)

        if result.html is None:
            SKIPPED_LINKS.labels(reason="non_html").inc()
            log.info(f"[SKIP] Job {state.job_id} - Skipping non-HTML: {entry.original_url}")
            return False

        final_normalized = canonicalize(result.final_url)
        if final_normalized is None or not is_in_scope(final_normalized, state.domain):
            SKIPPED_LINKS.labels(reason="redirected_out_of_scope").inc()
            log.info(
                f"[SKIP] Job {state.job_id} - {entry.original_url} redirected out of scope "
                f"to {result.final_url}"
            )
            return False

        if final_normalized != entry.normalized_url:
            if final_normalized in state.pages:
                state.duplicates_skipped += 1
                log.info(
                    f"[SKIP] Job {state.job_id} - {entry.original_url} redirects to already "
                    f"crawled {final_normalized}"
                )
                return False
            state.seen.add(final_normalized)

        metadata = self.metadata_parser(result.html)
        links = self.link_extractor(result.html)
        state.links_discovered += len(links)

        enqueued = self._classify_links(state, entry, result.final_url, links)
        log.info(
            f"[PROGRESS] Job {state.job_id} - Found {len(links)} links on {entry.original_url}, "
            f"enqueued {enqueued}"
        )

        internal_out, external_out = state.graph.out_counts(entry.normalized_url)
        page = {
            "normalized_url": entry.normalized_url,
            "url": result.final_url,
            "status_code": result.status_code,
            "title": metadata.title,
            "h1": metadata.h1,
            "meta_description": metadata.meta_description,
            "canonical": metadata.canonical,
            "depth": entry.depth,
            "internal_links_out": internal_out,
            "external_links_out": external_out,
            "internal_links_in": state.graph.incoming_count(entry.normalized_url, state.pages),
            "external_links_in": 0,
        }

        await self.store.insert_page(state.job_id, page)

        state.pages[entry.normalized_url] = page
        state.max_depth_reached = max(state.max_depth_reached, entry.depth)
        CRAWLED_PAGES.inc()
        log.info(f"[PROGRESS] Job {state.job_id} - Stored page: {entry.normalized_url}")
        return True

    def _classify_links(
        self, state: CrawlState, entry: FrontierEntry, base_url: str, links: List[str]
    ) -> int:
        source = entry.normalized_url
        enqueued = 0

        for href in links:
            if skip_reason(href) is not None:
                continue

            resolved = resolve_url(href, base_url)
            normalized = canonicalize(resolved) if resolved else None
            if normalized is None:
                continue

            if not is_in_scope(normalized, state.domain):
                state.graph.add_external(source, normalized)
                continue

            state.graph.add_internal(source, normalized)

            if normalized in state.seen:
                state.duplicates_skipped += 1
                continue

            if entry.depth >= self.limits.max_depth:
                continue

            # marked seen at enqueue time so it can never be queued twice
            state.seen.add(normalized)
            state.frontier.append(FrontierEntry(normalized, entry.depth + 1, resolved))
            enqueued += 1

        FRONTIER_SIZE.set(len(state.frontier))
        return enqueued

    async def _write_progress(self, state: CrawlState, log) -> None:
        """Best-effort progress write; a failure here never affects the crawl."""
        try:
            await self.store.update_crawl_job(
                state.job_id,
                status=STATUS_RUNNING,
                last_activity_at=_now(),
                **state.counters(),
            )
        except Exception as exc:
            log.warning(f"[WARNING] Job {state.job_id} - Failed to update job progress: {exc}")

    # --------------------------
    #  Termination
    # --------------------------
    async def _reconcile_in_counts(
        self, state: CrawlState, log, watchdog: Optional[CrawlWatchdog] = None
    ) -> int:
        """Rewrite inbound counts that grew after their page was stored.

        Only edges from stored pages count, so a page whose fetch or insert
        never completed contributes nothing and can be retried on resume.
        """
        reconciled = 0
        for normalized, page in state.pages.items():
            incoming = state.resumed_in.get(normalized, 0) + state.graph.incoming_count(
                normalized, state.pages
            )
            if incoming == page.get("internal_links_in"):
                continue
            try:
                await self.store.update_page(state.job_id, normalized, internal_links_in=incoming)
            except Exception as exc:
                log.error(f"[ERROR] Job {state.job_id} - Could not update inbound links of {normalized}: {exc}")
                continue
            page["internal_links_in"] = incoming
            reconciled += 1
            if watchdog is not None:
                watchdog.touch()
        return reconciled

    async def _check_stored_transition(self, job_id: str, new_status: str) -> None:
        """Raise InvalidTransitionError if the persisted status cannot move to new_status."""
        job = await self.store.get_crawl_job(job_id)
        check_transition(job.get("status") if job else None, new_status)

    async def _finalize(self, state: CrawlState, stop_reason: str, watchdog: CrawlWatchdog, log) -> None:
        reconciled = await self._reconcile_in_counts(state, log, watchdog)
        log.info(f"[CRAWL COMPLETION] Job {state.job_id} - Reconciled inbound links on {reconciled} pages")

        # no watchdog trip may land once the completed row can be committed
        watchdog.disarm()
        await self._check_stored_transition(state.job_id, STATUS_COMPLETED)

        counters = state.counters()
        await self.store.update_crawl_job(
            state.job_id,
            status=STATUS_COMPLETED,
            completed_at=_now(),
            last_activity_at=_now(),
            stop_reason=stop_reason,
            external_links=state.graph.external_registry(),
            pending_frontier=None,
            **counters,
        )
        CRAWL_JOBS.labels(status=STATUS_COMPLETED, stop_reason=stop_reason).inc()

        log.info(
            f"[CRAWL COMPLETED] Job {state.job_id} - {counters['pages_crawled']} pages crawled, "
            f"{counters['pages_discovered']} unique URLs discovered, "
            f"{counters['duplicates_skipped']} duplicates skipped, "
            f"{state.links_discovered} raw links seen, max depth {counters['max_depth_reached']}"
        )

    async def _fail(
        self,
        job_id: str,
        state: Optional[CrawlState],
        stop_reason: str,
        message: str,
    ) -> None:
        log = logger.bind(job_id=job_id)
        try:
            await self._check_stored_transition(job_id, STATUS_FAILED)
        except InvalidTransitionError as exc:
            log.warning(f"[CRAWL FAILED] Job {job_id} - Not recording {stop_reason}: {exc}")
            return
        except Exception as exc:
            log.warning(f"[CRAWL FAILED] Job {job_id} - Could not read current status: {exc}")

        fields: Dict[str, Any] = {
            "status": STATUS_FAILED,
            "failed_at": _now(),
            "stop_reason": stop_reason,
            "error_message": message,
        }
        if state is not None:
            await self._reconcile_in_counts(state, log)
            fields.update(state.counters())
            fields["external_links"] = state.graph.external_registry()
            fields["pending_frontier"] = state.pending_frontier()

        try:
            await self.store.update_crawl_job(job_id, **fields)
        except Exception as exc:
            log.error(
                f"[CRAWL FAILED] Job {job_id} - Could not record failure ({stop_reason}): {exc}"
            )
        CRAWL_JOBS.labels(status=STATUS_FAILED, stop_reason=stop_reason).inc()
