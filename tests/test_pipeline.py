import json
import unittest
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock

import httpx
from sqlalchemy import select

from harvester.config import HarvestConfig, RetryConfig
from harvester.extractors import (
    AUTHOR_FALLBACK,
    MEDIA_PLACEHOLDER,
    AuthorExtractor,
    BodyExtractor,
    DateExtractor,
    ExtractorSettings,
    MediaExtractor,
    MediaLocator,
)
from harvester.http_session import HttpPageSession
from harvester.listing import ListingRule
from harvester.persistence import ArticlePersistence, ArticlePersistenceError, build_engine, prepare_schema
from harvester.pipeline import ArticleIngestor, HarvestJob, JobStatus
from harvester.records import CandidateEntry, EntryState
from harvester.session import ElementMatch, NavigationError, PageSessionError
from harvester.sites import SiteDefinition
from harvester.snapshot import load_snapshot
from models import Article

RESOURCE = "Site News"
LISTING_URL = "https://site/news"

FIRST_PARAGRAPH = "one two three four five six seven eight nine ten eleven twelve thirteen fourteen fifteen"
SECOND_PARAGRAPH = (
    "sixteen seventeen eighteen nineteen twenty twentyone twentytwo twentythree "
    "twentyfour twentyfive twentysix twentyseven"
)

LISTING_HTML = """
<html><body>
  <div class="card"><a href="/x"><h2>A B C D</h2></a></div>
  <div class="card"><a href="/y"><h2>Broken story</h2></a></div>
  <div class="card"><a href="/bare"><h2>Bare page</h2></a></div>
</body></html>
"""

ARTICLE_X_HTML = f"""
<html><body><article>
  <span class="byline">Jane Reporter</span>
  <time datetime="2024-05-01T10:15:00+02:00">1 May</time>
  <figure><img src="/images/lead.jpg"><figcaption>Lead caption</figcaption></figure>
  <p>{FIRST_PARAGRAPH}</p>
  <div class="advertisement"><p>Advert copy</p></div>
  <p>{SECOND_PARAGRAPH}</p>
</article></body></html>
"""

ARTICLE_BARE_HTML = "<html><body><div>No structured content</div></body></html>"


def _site() -> SiteDefinition:
    return SiteDefinition(
        slug="site",
        resource=RESOURCE,
        listing_url=LISTING_URL,
        listing_rules=(ListingRule(selector="div.card a", headline_selector="h2"),),
        extractors=ExtractorSettings(
            body=BodyExtractor(selector="article p", exclude=(".advertisement", "figcaption")),
            author=AuthorExtractor(selectors=("span.byline",)),
            media=MediaExtractor(
                chain=(MediaLocator("article figure img", "src"), MediaLocator("video", "poster"))
            ),
            date=DateExtractor(),
        ),
        consent_selector="#consent",
    )


class _SiteServer:
    """Serve canned pages and count every request per path."""

    def __init__(self, pages: dict[str, str], *, failures: dict[str, int] | None = None) -> None:
        self.pages = dict(pages)
        self.failures = dict(failures or {})
        self.requests: Counter[str] = Counter()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests[path] += 1
        remaining = self.failures.get(path, 0)
        if remaining:
            self.failures[path] = remaining - 1 if remaining > 0 else remaining
            return httpx.Response(503, html="<html>unavailable</html>")
        if path not in self.pages:
            return httpx.Response(404, html="<html>missing</html>")
        return httpx.Response(200, html=self.pages[path])

    def session_factory(self):
        transport = httpx.MockTransport(self)
        return lambda: HttpPageSession(transport=transport)


def _default_pages() -> dict[str, str]:
    return {"/news": LISTING_HTML, "/x": ARTICLE_X_HTML, "/bare": ARTICLE_BARE_HTML}


class HarvestJobTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = TemporaryDirectory()
        root = Path(self._tmpdir.name)
        self.engine = build_engine(f"sqlite:///{root / 'harvest.db'}")
        self.session_local = prepare_schema(self.engine)
        self.persistence = ArticlePersistence(self.session_local)
        self.config = HarvestConfig(
            site_slug="site",
            db_url="sqlite://",
            snapshot_path=root / "site-articles.json",
            log_dir=root / "logs",
        )
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self.engine.dispose()
        self._tmpdir.cleanup()

    def _job(self, server: _SiteServer, *, config: HarvestConfig | None = None) -> HarvestJob:
        return HarvestJob(
            _site(),
            config or self.config,
            persistence=self.persistence,
            session_factory=server.session_factory(),
            sleep=self.sleeps.append,
        )

    def _stored(self) -> list[Article]:
        with self.session_local() as session:
            return list(session.execute(select(Article).order_by(Article.link)).scalars())

    def test_end_to_end_listing_to_records(self) -> None:
        server = _SiteServer(_default_pages(), failures={"/y": -1})

        result = self._job(server).run()

        self.assertEqual(result.status, JobStatus.COMPLETED)
        self.assertEqual((result.stats.processed, result.stats.succeeded, result.stats.exhausted), (3, 2, 1))

        stored = {article.link: article for article in self._stored()}
        self.assertEqual(set(stored), {"https://site/x", "https://site/bare"})

        article = stored["https://site/x"]
        self.assertEqual(article.headline, "A B C D")
        self.assertTrue(article.slug.startswith("abc"))
        self.assertGreater(len(article.slug), 3)
        self.assertEqual(
            article.body,
            f"<p>{FIRST_PARAGRAPH}</p><p>{SECOND_PARAGRAPH}</p>"
            "<br><br><ul><li><a href='https://site/x'>Visit Site News</a></li></ul>",
        )
        self.assertEqual(
            article.summary,
            FIRST_PARAGRAPH + " sixteen seventeen eighteen nineteen twenty twentyone twentytwo "
            "twentythree twentyfour twentyfive...",
        )
        self.assertEqual(article.author, "Jane Reporter")
        self.assertEqual(article.media, "https://site/images/lead.jpg")
        self.assertEqual(article.date, "2024-05-01T08:15:00.000Z")
        self.assertEqual(article.resource, RESOURCE)
        self.assertTrue(article.id)

    def test_fields_default_when_page_has_no_content(self) -> None:
        server = _SiteServer(_default_pages(), failures={"/y": -1})

        self._job(server).run()

        bare = {article.link: article for article in self._stored()}["https://site/bare"]
        self.assertEqual(bare.author, AUTHOR_FALLBACK)
        self.assertEqual(bare.media, MEDIA_PLACEHOLDER)
        self.assertEqual(bare.date, "")
        self.assertEqual(bare.summary, "")
        self.assertEqual(
            bare.body,
            "<br><br><ul><li><a href='https://site/bare'>Visit Site News</a></li></ul>",
        )

    def test_exhausted_entry_is_skipped_logged_and_snapshotted(self) -> None:
        server = _SiteServer(_default_pages(), failures={"/y": -1})

        result = self._job(server).run()

        self.assertEqual(server.requests["/y"], 3)
        self.assertNotIn("https://site/y", {article.link for article in self._stored()})

        snapshot = load_snapshot(self.config.snapshot_path)
        self.assertEqual([entry["link"] for entry in snapshot], ["https://site/x", "https://site/y", "https://site/bare"])
        by_link = {entry["link"]: entry for entry in snapshot}
        self.assertEqual(by_link["https://site/y"]["status"], "exhausted")
        self.assertEqual(by_link["https://site/y"]["attempts"], 3)
        succeeded_links = {entry["link"] for entry in snapshot if entry["status"] == "succeeded"}
        self.assertEqual(succeeded_links, {"https://site/x", "https://site/bare"})
        self.assertEqual(result.snapshot_path, self.config.snapshot_path)

        failure_lines = self.config.failure_log_path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(failure_lines), 1)
        failure = json.loads(failure_lines[0])
        self.assertEqual(failure["link"], "https://site/y")
        self.assertEqual(failure["attempts"], 3)
        self.assertEqual(failure["resource"], RESOURCE)

    def test_transient_failures_are_retried_until_success(self) -> None:
        server = _SiteServer(_default_pages(), failures={"/y": -1, "/x": 2})
        config = replace(self.config, retry=RetryConfig(max_attempts=3, base_delay=0.5, backoff_factor=2.0))

        result = self._job(server, config=config).run()

        outcome = next(item for item in result.outcomes if item.entry.link == "https://site/x")
        self.assertEqual(outcome.state, EntryState.SUCCEEDED)
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(server.requests["/x"], 3)
        # two retries for /x, two for /y before it is exhausted
        self.assertEqual(self.sleeps, [0.5, 1.0, 0.5, 1.0])

    def test_second_run_replaces_first_run_records(self) -> None:
        self.persistence.insert(
            _foreign_record("other-1", resource="Other Wire"),
        )
        server = _SiteServer(_default_pages(), failures={"/y": -1})

        self._job(server).run()
        first_ids = {article.id for article in self._stored() if article.resource == RESOURCE}

        server.failures["/y"] = -1
        result = self._job(server).run()
        stored = self._stored()

        second_ids = {article.id for article in stored if article.resource == RESOURCE}
        self.assertEqual(result.swept, 2)
        self.assertEqual(len(second_ids), 2)
        self.assertTrue(first_ids.isdisjoint(second_ids))
        self.assertEqual(
            sorted(article.link for article in stored if article.resource == RESOURCE),
            ["https://site/bare", "https://site/x"],
        )
        self.assertEqual([article.id for article in stored if article.resource == "Other Wire"], ["other-1"])

    def test_listing_failure_aborts_without_sweeping(self) -> None:
        self.persistence.insert(_foreign_record("kept-1", resource=RESOURCE))
        server = _SiteServer(_default_pages(), failures={"/news": -1})
        opened: list[HttpPageSession] = []
        transport = httpx.MockTransport(server)

        def factory() -> HttpPageSession:
            session = HttpPageSession(transport=transport)
            opened.append(session)
            return session

        job = HarvestJob(_site(), self.config, persistence=self.persistence, session_factory=factory)
        result = job.run()

        self.assertEqual(result.status, JobStatus.ABORTED)
        self.assertIn("listing page", result.error)
        self.assertEqual(server.requests["/news"], 1)
        self.assertEqual(server.requests["/x"], 0)
        self.assertEqual([article.id for article in self._stored()], ["kept-1"])
        self.assertFalse(self.config.snapshot_path.exists())
        self.assertEqual(len(opened), 1)
        with self.assertRaises(PageSessionError):
            opened[0].navigate(LISTING_URL, timeout=1.0)

    def test_unreachable_datastore_aborts_before_opening_session(self) -> None:
        persistence = MagicMock(spec=ArticlePersistence)
        persistence.check_connection.side_effect = ArticlePersistenceError("connection refused")
        session_factory = MagicMock()

        job = HarvestJob(_site(), self.config, persistence=persistence, session_factory=session_factory)
        result = job.run()

        self.assertEqual(result.status, JobStatus.ABORTED)
        self.assertEqual(result.error, "connection refused")
        session_factory.assert_not_called()
        persistence.sweep.assert_not_called()

    def test_empty_listing_completes_with_empty_snapshot(self) -> None:
        server = _SiteServer({"/news": "<html><body><p>Quiet day</p></body></html>"})

        result = self._job(server).run()

        self.assertEqual(result.status, JobStatus.COMPLETED)
        self.assertEqual(result.stats.processed, 0)
        self.assertEqual(load_snapshot(self.config.snapshot_path), [])

    def test_parallel_workers_keep_candidate_order(self) -> None:
        server = _SiteServer(_default_pages(), failures={"/y": -1})
        config = replace(self.config, max_workers=2)

        result = self._job(server, config=config).run()

        self.assertEqual(result.status, JobStatus.COMPLETED)
        self.assertEqual(
            [outcome.entry.link for outcome in result.outcomes],
            ["https://site/x", "https://site/y", "https://site/bare"],
        )
        self.assertEqual(result.stats.succeeded, 2)
        self.assertEqual(len(self._stored()), 2)
        self.assertEqual(server.requests["/y"], 3)


class _ScriptedSession:
    """Page session stub whose first navigations or reads can fail on demand."""

    def __init__(self, *, navigation_failures: int = 0, broken_reads: int = 0) -> None:
        self.navigation_failures = navigation_failures
        self.broken_reads = broken_reads
        self.navigations: list[str] = []
        self.url: str | None = None

    def navigate(self, url: str, *, timeout: float, wait_until: str = "domcontentloaded") -> None:
        self.navigations.append(url)
        if self.navigation_failures:
            self.navigation_failures -= 1
            raise NavigationError(f"Timed out after {timeout:.1f}s while loading {url}")
        self.url = url

    def texts(self, selector: str, *, exclude=()) -> list[str]:
        if self.broken_reads:
            self.broken_reads -= 1
            raise PageSessionError("Target page, context or browser has been closed")
        return ["Body text"]

    def text(self, selector: str) -> str:
        return "Byline"

    def attribute(self, selector: str, name: str) -> str:
        return "2024-01-02T03:04:05Z" if name == "datetime" else "https://cdn.example.com/m.jpg"

    def query_all(self, selector: str, *, text_selector=None, attribute=None) -> list[ElementMatch]:
        return []

    def dismiss(self, selector: str) -> bool:
        return False

    def close(self) -> None:
        pass


class ArticleIngestorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.persistence = MagicMock(spec=ArticlePersistence)
        self.entry = CandidateEntry(headline="A B C D", link="https://site/x", slug="abcq1")
        self.ids = iter(f"id-{index}" for index in range(1, 10))

    def _ingestor(self, **overrides) -> ArticleIngestor:
        options = dict(
            resource=RESOURCE,
            extractors=_site().extractors.build(),
            persistence=self.persistence,
            retry=RetryConfig(max_attempts=3),
            timeout=10.0,
            sleep=lambda _delay: None,
            id_factory=lambda: next(self.ids),
        )
        options.update(overrides)
        return ArticleIngestor(**options)

    def test_navigates_with_fixed_timeout(self) -> None:
        session = MagicMock(wraps=_ScriptedSession())

        outcome = self._ingestor().ingest(session, self.entry)

        self.assertEqual(outcome.state, EntryState.SUCCEEDED)
        session.navigate.assert_called_once_with("https://site/x", timeout=10.0, wait_until="domcontentloaded")

    def test_broken_session_during_extraction_triggers_retry(self) -> None:
        session = _ScriptedSession(broken_reads=1)

        outcome = self._ingestor().ingest(session, self.entry)

        self.assertEqual(outcome.state, EntryState.SUCCEEDED)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(len(session.navigations), 2)
        self.persistence.insert.assert_called_once()
        record = self.persistence.insert.call_args.args[0]
        self.assertEqual(record.id, "id-1")
        self.assertEqual(record.author, "Byline")
        self.assertEqual(record.date, "2024-01-02T03:04:05.000Z")

    def test_exhausted_after_max_attempts_without_insert(self) -> None:
        session = _ScriptedSession(navigation_failures=5)

        outcome = self._ingestor().ingest(session, self.entry)

        self.assertEqual(outcome.state, EntryState.EXHAUSTED)
        self.assertEqual(outcome.attempts, 3)
        self.assertIsNone(outcome.record)
        self.assertIn("NavigationError", outcome.error)
        self.persistence.insert.assert_not_called()

    def test_persistence_failure_is_retried_with_fresh_id(self) -> None:
        self.persistence.insert.side_effect = [ArticlePersistenceError("deadlock detected"), None]
        session = _ScriptedSession()

        outcome = self._ingestor().ingest(session, self.entry)

        self.assertEqual(outcome.state, EntryState.SUCCEEDED)
        self.assertEqual(outcome.record.id, "id-2")
        self.assertEqual(outcome.attempts, 2)

    def test_exhausted_entry_keeps_best_effort_fields(self) -> None:
        self.persistence.insert.side_effect = ArticlePersistenceError("disk full")

        outcome = self._ingestor(retry=RetryConfig(max_attempts=1)).ingest(_ScriptedSession(), self.entry)

        self.assertEqual(outcome.state, EntryState.EXHAUSTED)
        self.assertEqual(outcome.fields["author"], "Byline")
        self.assertEqual(outcome.to_payload()["status"], "exhausted")

    def test_failure_log_lines_stay_whole_across_workers(self) -> None:
        entries = [
            CandidateEntry(headline=f"Story {index}", link=f"https://site/{index}", slug=f"story{index}")
            for index in range(64)
        ]
        with TemporaryDirectory() as tmpdir:
            failure_log = Path(tmpdir) / "logs" / "harvest_failures.ndjson"
            ingestor = self._ingestor(retry=RetryConfig(max_attempts=1), failure_log=failure_log)

            with ThreadPoolExecutor(max_workers=8) as executor:
                outcomes = list(
                    executor.map(lambda entry: ingestor.ingest(_ScriptedSession(navigation_failures=1), entry), entries)
                )
            lines = failure_log.read_text(encoding="utf-8").splitlines()

        self.assertTrue(all(outcome.state == EntryState.EXHAUSTED for outcome in outcomes))
        self.assertEqual(len(lines), len(entries))
        self.assertEqual(
            sorted(json.loads(line)["link"] for line in lines),
            sorted(entry.link for entry in entries),
        )


def _foreign_record(record_id: str, *, resource: str):
    from harvester.records import ArticleRecord

    return ArticleRecord(
        id=record_id,
        slug="foreign",
        headline="Foreign",
        summary="",
        body="",
        author=AUTHOR_FALLBACK,
        resource=resource,
        media=MEDIA_PLACEHOLDER,
        link=f"https://elsewhere.example.com/{record_id}",
        date="",
    )


if __name__ == "__main__":
    unittest.main()
