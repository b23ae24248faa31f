"""Celery task wrapping a single harvest run."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Task

from .celery_app import celery_app
from .config import HarvestConfig, RetryConfig, SessionConfig, TimeoutConfig, resolve_db_url
from .harvest import run_harvest
from .pipeline import JobStatus
from .sites import get_site_definition

LOGGER = logging.getLogger(__name__)


class HarvestAbortedError(RuntimeError):
    """Raised when a queued harvest aborts before processing any article."""


def _build_config(site_slug: str, db_url: str, config_payload: Mapping[str, Any]) -> HarvestConfig:
    site = get_site_definition(site_slug)
    default_retry = RetryConfig()
    default_timeout = TimeoutConfig()

    snapshot_raw = config_payload.get("snapshot_path")
    log_dir_raw = config_payload.get("log_dir")
    config = HarvestConfig(
        site_slug=site.slug,
        db_url=db_url,
        snapshot_path=Path(snapshot_raw) if snapshot_raw else site.default_snapshot_path,
        max_workers=max(1, int(config_payload.get("max_workers", 1))),
        retry=RetryConfig(
            max_attempts=max(1, int(config_payload.get("max_attempts", default_retry.max_attempts))),
            backoff_factor=float(config_payload.get("backoff_factor", default_retry.backoff_factor)),
            base_delay=max(0.0, float(config_payload.get("retry_delay", default_retry.base_delay))),
        ),
        timeout=TimeoutConfig(
            listing_timeout=float(config_payload.get("listing_timeout", default_timeout.listing_timeout)),
            article_timeout=float(config_payload.get("article_timeout", default_timeout.article_timeout)),
        ),
        session=SessionConfig(
            backend=str(config_payload.get("session", "playwright")),
            headless=bool(config_payload.get("headless", True)),
            user_agent=str(config_payload.get("user_agent") or site.default_user_agent),
        ),
    )
    if log_dir_raw:
        config.log_dir = Path(log_dir_raw)
    return config


@celery_app.task(name="harvester.harvest_site", bind=True, max_retries=3, default_retry_delay=300)
def harvest_site_task(self: Task, job: Mapping[str, Any]) -> dict[str, Any]:
    site_slug = str(job.get("site") or "bbc")
    db_url = job.get("db_url") or resolve_db_url()
    if not db_url:
        LOGGER.error("Harvest task for %s skipped: no database URL", site_slug)
        return {"status": "skipped", "reason": "no_db_url"}

    try:
        site = get_site_definition(site_slug)
    except KeyError:
        LOGGER.warning("Skipping harvest for unknown site %s", site_slug)
        return {"status": "skipped", "reason": "unknown_site"}

    config = _build_config(site.slug, str(db_url), job.get("config") or {})
    result = run_harvest(config, site)
    summary = result.summary()

    if result.status == JobStatus.ABORTED:
        LOGGER.warning("Harvest of %s aborted: %s", site.slug, result.error)
        raise self.retry(exc=HarvestAbortedError(result.error or "harvest aborted"))

    LOGGER.info(
        "Harvest of %s stored %d of %d articles",
        site.slug,
        result.stats.succeeded,
        result.stats.processed,
    )
    return summary


__all__ = ["harvest_site_task", "HarvestAbortedError"]
