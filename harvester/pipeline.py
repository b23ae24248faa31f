"""Listing-driven harvest: collect candidates, ingest each article, persist, snapshot."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, ContextManager, Sequence

from models import generate_record_id

from .config import HarvestConfig, RetryConfig
from .extractors import FieldExtractor, run_extractors, summarize, wrap_body
from .listing import ListingCollector
from .persistence import ArticlePersistence, ArticlePersistenceError
from .records import ArticleRecord, CandidateEntry, EntryState, IngestionOutcome, IngestionStats
from .session import NavigationError, PageSession, PageSessionError
from .sites import SiteDefinition
from .snapshot import write_snapshot

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[PageSession]]


class ListingLoadError(RuntimeError):
    """Raised when the listing page cannot be loaded at all."""


class JobStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(slots=True)
class HarvestResult:
    status: JobStatus
    stats: IngestionStats = field(default_factory=IngestionStats)
    outcomes: list[IngestionOutcome] = field(default_factory=list)
    swept: int = 0
    snapshot_path: Path | None = None
    error: str | None = None

    def summary(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "processed": self.stats.processed,
            "succeeded": self.stats.succeeded,
            "exhausted": self.stats.exhausted,
            "swept": self.swept,
            "snapshot_path": str(self.snapshot_path) if self.snapshot_path else None,
            "error": self.error,
        }


class ArticleIngestor:
    """Visit one candidate with bounded retries and persist the assembled record."""

    def __init__(
        self,
        *,
        resource: str,
        extractors: Sequence[FieldExtractor],
        persistence: ArticlePersistence,
        retry: RetryConfig | None = None,
        timeout: float = 10.0,
        wait_until: str = "domcontentloaded",
        failure_log: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
        id_factory: Callable[[], str] = generate_record_id,
    ) -> None:
        self._resource = resource
        self._extractors = list(extractors)
        self._persistence = persistence
        self._retry = retry or RetryConfig()
        self._timeout = timeout
        self._wait_until = wait_until
        self._failure_log = failure_log
        self._failure_log_lock = threading.Lock()
        self._sleep = sleep
        self._id_factory = id_factory

    def ingest(self, session: PageSession, entry: CandidateEntry) -> IngestionOutcome:
        outcome = IngestionOutcome(entry=entry)
        max_attempts = max(1, self._retry.max_attempts)
        LOGGER.info("Visiting article: %s (%s)", entry.headline, entry.link)

        while outcome.attempts < max_attempts:
            outcome.state = EntryState.ATTEMPTING
            outcome.attempts += 1
            try:
                session.navigate(entry.link, timeout=self._timeout, wait_until=self._wait_until)
                fields = run_extractors(session, self._extractors)
                record = self.assemble(entry, fields)
                outcome.fields = record.to_row()
                self._persistence.insert(record)
            except (PageSessionError, ArticlePersistenceError) as exc:
                self._note_attempt_failure(outcome, exc, max_attempts)
                continue
            except Exception as exc:
                LOGGER.exception(
                    "Unhandled error for %s on attempt %d/%d", entry.link, outcome.attempts, max_attempts
                )
                self._note_attempt_failure(outcome, exc, max_attempts)
                continue

            outcome.record = record
            outcome.error = None
            outcome.state = EntryState.SUCCEEDED
            LOGGER.info("Collected and saved article: %s (attempt %d)", entry.headline, outcome.attempts)
            return outcome

        outcome.state = EntryState.EXHAUSTED
        LOGGER.error(
            "Giving up on %s after %d attempts: %s", entry.link, outcome.attempts, outcome.error
        )
        self._record_failure(outcome)
        return outcome

    def assemble(self, entry: CandidateEntry, fields: dict[str, object]) -> ArticleRecord:
        body_text = str(fields.get("body", ""))
        return ArticleRecord(
            id=self._id_factory(),
            slug=entry.slug,
            headline=entry.headline,
            summary=summarize(body_text),
            body=wrap_body(body_text, entry.link, self._resource),
            author=str(fields.get("author", "")),
            resource=self._resource,
            media=str(fields.get("media", "")),
            link=entry.link,
            date=str(fields.get("date", "")),
        )

    def _note_attempt_failure(self, outcome: IngestionOutcome, exc: Exception, max_attempts: int) -> None:
        outcome.error = f"{type(exc).__name__}: {exc}"
        LOGGER.warning(
            "Error processing article %s, attempt %d/%d: %s",
            outcome.entry.headline,
            outcome.attempts,
            max_attempts,
            exc,
        )
        if outcome.attempts < max_attempts:
            delay = self._retry.delay_for(outcome.attempts)
            if delay > 0:
                self._sleep(delay)

    def _record_failure(self, outcome: IngestionOutcome) -> None:
        if self._failure_log is None:
            return
        payload = {
            "headline": outcome.entry.headline,
            "link": outcome.entry.link,
            "slug": outcome.entry.slug,
            "resource": self._resource,
            "attempts": outcome.attempts,
            "error": outcome.error,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        line = json.dumps(payload, ensure_ascii=False) + "\n"
        try:
            with self._failure_log_lock:
                self._failure_log.parent.mkdir(parents=True, exist_ok=True)
                with self._failure_log.open("a", encoding="utf-8") as handle:
                    handle.write(line)
        except OSError as file_error:  # pragma: no cover - filesystem failure path
            LOGGER.warning("Failed to record harvest failure for %s: %s", outcome.entry.link, file_error)


class HarvestJob:
    """Run one full harvest of a site's listing page."""

    def __init__(
        self,
        site: SiteDefinition,
        config: HarvestConfig,
        *,
        persistence: ArticlePersistence,
        session_factory: SessionFactory,
        collector: ListingCollector | None = None,
        sleep: Callable[[float], None] = time.sleep,
        id_factory: Callable[[], str] = generate_record_id,
    ) -> None:
        self._site = site
        self._config = config
        self._persistence = persistence
        self._session_factory = session_factory
        self._collector = collector or ListingCollector(site.listing_rules)
        self._ingestor = ArticleIngestor(
            resource=site.resource,
            extractors=site.extractors.build(),
            persistence=persistence,
            retry=config.retry,
            timeout=config.timeout.article_timeout,
            wait_until=config.session.wait_until,
            failure_log=config.failure_log_path,
            sleep=sleep,
            id_factory=id_factory,
        )

    def run(self) -> HarvestResult:
        try:
            self._persistence.check_connection()
        except ArticlePersistenceError as exc:
            LOGGER.error("Cannot reach the datastore; aborting harvest of %s: %s", self._site.slug, exc)
            return HarvestResult(status=JobStatus.ABORTED, error=str(exc))

        try:
            with self._session_factory() as session:
                return self._run_with_session(session)
        except (ListingLoadError, ArticlePersistenceError, PageSessionError) as exc:
            LOGGER.error("Harvest of %s aborted: %s", self._site.slug, exc)
            return HarvestResult(status=JobStatus.ABORTED, error=str(exc))
        except Exception as exc:
            LOGGER.exception("Unexpected error while harvesting %s", self._site.slug)
            return HarvestResult(status=JobStatus.ABORTED, error=f"{type(exc).__name__}: {exc}")

    def _run_with_session(self, session: PageSession) -> HarvestResult:
        LOGGER.info("Navigating to listing page %s", self._site.listing_url)
        try:
            session.navigate(
                self._site.listing_url,
                timeout=self._config.timeout.listing_timeout,
                wait_until=self._config.session.wait_until,
            )
        except NavigationError as exc:
            raise ListingLoadError(f"Failed to load listing page {self._site.listing_url}: {exc}") from exc

        if self._site.consent_selector:
            session.dismiss(self._site.consent_selector)

        candidates = self._collector.collect(session)
        swept = self._persistence.sweep(self._site.resource)
        if not candidates:
            LOGGER.warning("No articles found on %s; nothing to ingest", self._site.listing_url)

        if self._config.max_workers > 1 and len(candidates) > 1:
            outcomes = self._ingest_parallel(candidates)
        else:
            outcomes = [self._ingestor.ingest(session, entry) for entry in candidates]

        stats = IngestionStats(
            processed=len(outcomes),
            succeeded=sum(1 for outcome in outcomes if outcome.succeeded),
            exhausted=sum(1 for outcome in outcomes if outcome.state == EntryState.EXHAUSTED),
        )

        snapshot_path: Path | None = self._config.snapshot_path
        try:
            write_snapshot(self._config.snapshot_path, outcomes)
        except OSError as exc:
            LOGGER.error("Failed to write snapshot %s: %s", self._config.snapshot_path, exc)
            snapshot_path = None

        LOGGER.info(
            "Processed %d articles for %s: %d succeeded, %d exhausted",
            stats.processed,
            self._site.resource,
            stats.succeeded,
            stats.exhausted,
        )
        return HarvestResult(
            status=JobStatus.COMPLETED,
            stats=stats,
            outcomes=outcomes,
            swept=swept,
            snapshot_path=snapshot_path,
        )

    def _ingest_parallel(self, candidates: Sequence[CandidateEntry]) -> list[IngestionOutcome]:
        pending: queue.Queue[tuple[int, CandidateEntry]] = queue.Queue()
        for index, entry in enumerate(candidates):
            pending.put((index, entry))
        results: list[IngestionOutcome | None] = [None] * len(candidates)

        def _drain() -> None:
            # Each worker owns its session; Playwright pages are bound to the thread that opened them.
            with self._session_factory() as worker_session:
                while True:
                    try:
                        index, entry = pending.get_nowait()
                    except queue.Empty:
                        return
                    results[index] = self._ingestor.ingest(worker_session, entry)

        workers = min(self._config.max_workers, len(candidates))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(_drain) for _ in range(workers)]
            for future in futures:
                try:
                    future.result()
                except Exception:
                    LOGGER.exception("Ingestion worker stopped unexpectedly")

        outcomes: list[IngestionOutcome] = []
        for index, outcome in enumerate(results):
            if outcome is None:
                outcome = IngestionOutcome(
                    entry=candidates[index],
                    state=EntryState.EXHAUSTED,
                    error="No ingestion worker was available",
                )
                LOGGER.error("Article %s was never attempted", candidates[index].link)
            outcomes.append(outcome)
        return outcomes
