"""Data models passed between the harvest stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


@dataclass(frozen=True, slots=True)
class CandidateEntry:
    """A headline/link pair discovered on the listing page."""

    headline: str
    link: str
    slug: str


@dataclass(frozen=True, slots=True)
class ArticleRecord:
    id: str
    slug: str
    headline: str
    summary: str
    body: str
    author: str
    resource: str
    media: str
    link: str
    date: str

    def to_row(self) -> dict[str, str]:
        return asdict(self)


class EntryState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class IngestionOutcome:
    entry: CandidateEntry
    state: EntryState = EntryState.PENDING
    attempts: int = 0
    record: ArticleRecord | None = None
    # Best-effort fields gathered by the latest attempt, kept for the snapshot.
    fields: dict[str, str] | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == EntryState.SUCCEEDED

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "headline": self.entry.headline,
            "link": self.entry.link,
            "slug": self.entry.slug,
        }
        if self.record is not None:
            payload.update(self.record.to_row())
        elif self.fields:
            payload.update(self.fields)
        payload["status"] = self.state.value
        payload["attempts"] = self.attempts
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class IngestionStats:
    processed: int = 0
    succeeded: int = 0
    exhausted: int = 0
