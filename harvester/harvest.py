"""Command-line entrypoint for listing-driven article harvesting."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from .config import SESSION_BACKENDS, HarvestConfig, RetryConfig, SessionConfig, TimeoutConfig, resolve_db_url
from .http_session import HttpPageSession
from .persistence import ArticlePersistence, ArticlePersistenceError, build_engine, prepare_schema
from .pipeline import HarvestJob, HarvestResult, JobStatus, SessionFactory
from .playwright_support import PlaywrightPageSession
from .sites import SiteDefinition, get_site_definition, list_sites

LOGGER = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    available_sites = list_sites()
    if not available_sites:
        raise RuntimeError("No sites registered for harvesting")

    parser = argparse.ArgumentParser(description="Harvest listing-page articles into the database")
    parser.add_argument(
        "--site",
        choices=available_sites,
        default=available_sites[0],
        help="Slug of the news site to harvest",
    )
    parser.add_argument(
        "--db-url",
        type=str,
        default=resolve_db_url(),
        help="SQLAlchemy database URL (defaults to $HARVESTER_DATABASE_URL or $POSTGRES_CONNECTION_STRING)",
    )
    parser.add_argument(
        "--snapshot-path",
        type=Path,
        default=None,
        help="Where to write the JSON snapshot (defaults to data/<site>-articles.json)",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=HarvestConfig().log_dir,
        help="Directory for the NDJSON failure log",
    )
    parser.add_argument(
        "--session",
        choices=SESSION_BACKENDS,
        default="playwright",
        help="Page session backend: rendered Chromium (playwright) or static HTTP (http)",
    )
    parser.add_argument("--headed", action="store_true", help="Show the browser window (playwright only)")
    parser.add_argument("--user-agent", type=str, default=None, help="Override the site's default user agent")
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=RetryConfig().max_attempts,
        help="Navigation attempts per article before it is skipped (default: 3)",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=RetryConfig().base_delay,
        help="Seconds to wait before the first retry; later retries back off (default: 0)",
    )
    parser.add_argument(
        "--article-timeout",
        type=float,
        default=TimeoutConfig().article_timeout,
        help="Seconds to wait for an article page to load (default: 10)",
    )
    parser.add_argument(
        "--listing-timeout",
        type=float,
        default=TimeoutConfig().listing_timeout,
        help="Seconds to wait for the listing page to load (default: 60)",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=1,
        help="Article pages visited concurrently, each with its own session (default: 1)",
    )
    return parser


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def build_config(args: argparse.Namespace, site: SiteDefinition) -> HarvestConfig:
    if args.max_attempts < 1:
        raise ValueError("--max-attempts must be at least 1")
    if args.article_timeout <= 0 or args.listing_timeout <= 0:
        raise ValueError("Timeouts must be positive")

    config = HarvestConfig(
        site_slug=site.slug,
        db_url=args.db_url,
        snapshot_path=args.snapshot_path or site.default_snapshot_path,
        log_dir=args.log_dir,
        max_workers=max(1, args.max_workers),
        session=SessionConfig(
            backend=args.session,
            headless=not args.headed,
            user_agent=args.user_agent or site.default_user_agent,
        ),
    )
    config.retry.max_attempts = args.max_attempts
    config.retry.base_delay = max(0.0, args.retry_delay)
    config.timeout.article_timeout = args.article_timeout
    config.timeout.listing_timeout = args.listing_timeout
    return config


def build_session_factory(config: HarvestConfig) -> SessionFactory:
    if config.session.backend == "http":
        return lambda: HttpPageSession(config.session)
    return lambda: PlaywrightPageSession(config.session)


def run_harvest(
    config: HarvestConfig,
    site: SiteDefinition,
    *,
    session_factory: SessionFactory | None = None,
) -> HarvestResult:
    if not config.db_url:
        raise ValueError("Database URL is required to run a harvest")

    try:
        config.ensure_directories()
    except OSError as exc:
        LOGGER.error("Cannot prepare output directories: %s", exc)
        return HarvestResult(status=JobStatus.ABORTED, error=f"{type(exc).__name__}: {exc}")

    LOGGER.info("Connecting to the database...")
    try:
        engine = build_engine(config.db_url)
    except (SQLAlchemyError, ImportError) as exc:
        LOGGER.error("Invalid database configuration: %s", exc)
        return HarvestResult(status=JobStatus.ABORTED, error=str(exc))

    try:
        session_local = prepare_schema(engine)
        job = HarvestJob(
            site,
            config,
            persistence=ArticlePersistence(session_local),
            session_factory=session_factory or build_session_factory(config),
        )
        return job.run()
    except ArticlePersistenceError as exc:
        LOGGER.error("Datastore unavailable: %s", exc)
        return HarvestResult(status=JobStatus.ABORTED, error=str(exc))
    finally:
        engine.dispose()
        LOGGER.info("Database connection closed.")


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        site = get_site_definition(args.site)
    except KeyError as exc:
        parser.error(str(exc))

    try:
        config = build_config(args, site)
    except ValueError as exc:
        parser.error(str(exc))

    if not config.db_url:
        parser.error("--db-url is required (or set HARVESTER_DATABASE_URL)")

    result = run_harvest(config, site)
    LOGGER.info("Harvest finished: %s", result.summary())
    return 0 if result.status == JobStatus.COMPLETED else 1


__all__ = [
    "build_arg_parser",
    "build_config",
    "build_session_factory",
    "configure_logging",
    "main",
    "run_harvest",
]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
