"""Configuration shared by the harvest job, its CLI and its task wrapper."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_DATA_DIR = Path("data")
DEFAULT_LOG_DIR = DEFAULT_DATA_DIR / "logs"

DEFAULT_USER_AGENT = "news-harvester/1.0"
DEFAULT_WAIT_UNTIL = "domcontentloaded"

SESSION_BACKENDS = ("playwright", "http")

DB_URL_ENV_VARS = ("HARVESTER_DATABASE_URL", "POSTGRES_CONNECTION_STRING")


def resolve_db_url() -> Optional[str]:
    """Return the first database URL configured in the environment."""

    for name in DB_URL_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_factor: float = 1.5
    # The listing-driven job retries immediately unless a delay is requested.
    base_delay: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""

        if self.base_delay <= 0:
            return 0.0
        return self.base_delay * (self.backoff_factor ** max(0, attempt - 1))


@dataclass(slots=True)
class TimeoutConfig:
    listing_timeout: float = 60.0
    article_timeout: float = 10.0


@dataclass(slots=True)
class SessionConfig:
    """Controls how page sessions are opened."""

    backend: str = "playwright"
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    wait_until: str = DEFAULT_WAIT_UNTIL

    def __post_init__(self) -> None:
        if self.backend not in SESSION_BACKENDS:
            raise ValueError(
                f"Unknown session backend '{self.backend}' (expected one of {', '.join(SESSION_BACKENDS)})"
            )


@dataclass(slots=True)
class HarvestConfig:
    site_slug: str = "bbc"
    db_url: Optional[str] = None
    snapshot_path: Path = DEFAULT_DATA_DIR / "bbc-articles.json"
    log_dir: Path = DEFAULT_LOG_DIR
    max_workers: int = 1
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    def ensure_directories(self) -> None:
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def failure_log_path(self) -> Path:
        return self.log_dir / "harvest_failures.ndjson"
