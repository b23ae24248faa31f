"""Celery wiring for queued harvest runs.

Broker and result backend default to the harvest database through kombu's
SQLAlchemy transport. Task time limits are derived from the harvest timeouts.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from celery import Celery

from .config import HarvestConfig, resolve_db_url

HARVEST_QUEUE = "harvest"
# Upper bound on articles one listing page is expected to yield.
ARTICLES_PER_RUN = 100
# Allowance for collecting the listing, writing the snapshot and teardown.
TIME_LIMIT_GRACE = 60


def _with_prefix(url: str, prefix: str) -> str:
    return url if url.startswith(prefix) else f"{prefix}{url}"


def resolve_queue_urls(db_url: Optional[str]) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)`` for the given harvest database."""

    broker_url = os.getenv("HARVESTER_CELERY_BROKER_URL")
    backend_url = os.getenv("HARVESTER_CELERY_RESULT_BACKEND")
    if db_url:
        broker_url = broker_url or _with_prefix(db_url, "sqla+")
        backend_url = backend_url or _with_prefix(db_url, "db+")
    return broker_url or "memory://", backend_url or "cache+memory://"


def harvest_time_limit(config: HarvestConfig) -> int:
    """Hard task time limit, in seconds, for one harvest run with ``config``."""

    per_article = config.timeout.article_timeout * config.retry.max_attempts
    per_article += sum(config.retry.delay_for(attempt) for attempt in range(1, config.retry.max_attempts))
    workers = max(1, config.max_workers)
    return int(config.timeout.listing_timeout + per_article * ARTICLES_PER_RUN / workers) + TIME_LIMIT_GRACE


def celery_settings(config: HarvestConfig, backend_url: str, *, eager: bool) -> dict[str, Any]:
    settings: dict[str, Any] = {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "task_always_eager": eager,
        "task_default_queue": HARVEST_QUEUE,
        "task_routes": {"harvester.harvest_site": {"queue": HARVEST_QUEUE}},
        "task_time_limit": harvest_time_limit(config),
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        # A harvest owns a browser; never reserve a second one behind it.
        "worker_prefetch_multiplier": 1,
        "broker_connection_retry_on_startup": True,
    }
    if backend_url.startswith("db+"):
        settings["database_short_lived_sessions"] = True
    return settings


def create_celery_app(config: HarvestConfig | None = None) -> Celery:
    """Instantiate the Celery app from the environment and a harvest config."""

    config = config or HarvestConfig(db_url=resolve_db_url())
    broker_url, backend_url = resolve_queue_urls(config.db_url)
    eager = os.getenv("HARVESTER_CELERY_TASK_ALWAYS_EAGER", "true").strip().lower() not in {"0", "false", "no", "off"}

    app = Celery("harvester", broker=broker_url, backend=backend_url, include=["harvester.tasks"])
    app.conf.update(**celery_settings(config, backend_url, eager=eager))
    return app


celery_app = create_celery_app()


__all__ = ["celery_app", "celery_settings", "create_celery_app", "harvest_time_limit", "resolve_queue_urls"]
