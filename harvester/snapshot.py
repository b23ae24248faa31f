"""JSON snapshot of every candidate attempted during a harvest run."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

from .records import IngestionOutcome

LOGGER = logging.getLogger(__name__)


def write_snapshot(path: Path, outcomes: Iterable[IngestionOutcome]) -> int:
    payload = [outcome.to_payload() for outcome in outcomes]
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp_path.replace(path)
    LOGGER.info("Wrote snapshot of %d entries to %s", len(payload), path)
    return len(payload)


def load_snapshot(path: Path) -> list[dict]:
    return json.loads(path.read_text(encoding="utf-8"))
