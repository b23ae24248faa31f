"""Field extractors run against a loaded article page.

Each extractor is isolated: a miss or an error in one field is logged and
replaced by that field's declared default so the remaining fields, and the
article as a whole, are still recovered. Only a broken page session escapes
the driver, because retrying navigation is the one thing that can fix it.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Generic, Iterable, Sequence, TypeVar
from urllib.parse import urljoin

from .session import LocatorNotFound, PageSession, PageSessionError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

AUTHOR_FALLBACK = "See article for details"
MEDIA_PLACEHOLDER = "https://news.bbc.co.uk/nol/shared/img/bbc_news_120x60.gif"
SUMMARY_WORDS = 25
SUMMARY_ELLIPSIS = "..."

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class ExtractionError(RuntimeError):
    """Raised when an extractor cannot derive a value for its field."""


@dataclass(frozen=True, slots=True)
class FieldExtractor(Generic[T]):
    name: str
    extract: Callable[[PageSession], T]
    default: T


def run_extractors(session: PageSession, extractors: Iterable[FieldExtractor]) -> dict[str, object]:
    """Invoke every extractor, substituting defaults for the ones that fail."""

    values: dict[str, object] = {}
    for extractor in extractors:
        try:
            value = extractor.extract(session)
        except LocatorNotFound as exc:
            LOGGER.info("No %s found on %s: %s", extractor.name, session.url, exc)
            values[extractor.name] = extractor.default
        except PageSessionError:
            raise
        except ExtractionError as exc:
            LOGGER.info("Falling back to default %s on %s: %s", extractor.name, session.url, exc)
            values[extractor.name] = extractor.default
        except Exception:
            LOGGER.exception("Extractor %s failed on %s", extractor.name, session.url)
            values[extractor.name] = extractor.default
        else:
            if value is None or (isinstance(value, str) and not value.strip()):
                LOGGER.info("Extractor %s returned nothing on %s; using default", extractor.name, session.url)
                value = extractor.default
            values[extractor.name] = value
    return values


@dataclass(frozen=True, slots=True)
class BodyExtractor:
    """Join the text of every content block, skipping non-content substructures."""

    selector: str = "article p"
    exclude: tuple[str, ...] = ()

    def __call__(self, session: PageSession) -> str:
        blocks = [text for text in session.texts(self.selector, exclude=self.exclude) if text]
        if not blocks:
            raise ExtractionError(f"Content blocks '{self.selector}' are empty")
        return "\n\n".join(blocks)


@dataclass(frozen=True, slots=True)
class AuthorExtractor:
    selectors: tuple[str, ...]

    def __call__(self, session: PageSession) -> str:
        for selector in self.selectors:
            try:
                value = session.text(selector)
            except LocatorNotFound:
                continue
            if value:
                return value
        raise ExtractionError(f"No byline matched {list(self.selectors)}")


@dataclass(frozen=True, slots=True)
class MediaLocator:
    selector: str
    attribute: str = "src"


@dataclass(frozen=True, slots=True)
class MediaExtractor:
    """Try each media locator in priority order; the first usable URL wins."""

    chain: tuple[MediaLocator, ...]

    def __call__(self, session: PageSession) -> str:
        for locator in self.chain:
            try:
                raw_value = session.attribute(locator.selector, locator.attribute)
            except LocatorNotFound:
                LOGGER.debug("Media locator %s[%s] missed", locator.selector, locator.attribute)
                continue
            resolved = _resolve_media_url(raw_value, session.url)
            if resolved:
                return resolved
        raise ExtractionError("Media fallback chain exhausted")


@dataclass(frozen=True, slots=True)
class DateExtractor:
    selector: str = "time"
    attribute: str = "datetime"

    def __call__(self, session: PageSession) -> str:
        raw_value = session.attribute(self.selector, self.attribute)
        return parse_timestamp(raw_value)


@dataclass(frozen=True, slots=True)
class ExtractorSettings:
    """Site-specific locators for every article field."""

    body: BodyExtractor = field(default_factory=BodyExtractor)
    author: AuthorExtractor = field(default_factory=lambda: AuthorExtractor(selectors=()))
    media: MediaExtractor = field(default_factory=lambda: MediaExtractor(chain=()))
    date: DateExtractor = field(default_factory=DateExtractor)
    author_fallback: str = AUTHOR_FALLBACK
    media_placeholder: str = MEDIA_PLACEHOLDER

    def build(self) -> list[FieldExtractor]:
        return [
            FieldExtractor("body", self.body, ""),
            FieldExtractor("author", self.author, self.author_fallback),
            FieldExtractor("media", self.media, self.media_placeholder),
            FieldExtractor("date", self.date, ""),
        ]


def parse_timestamp(raw_value: str) -> str:
    """Normalise a machine-readable timestamp to UTC ISO-8601 with a Z suffix."""

    value = (raw_value or "").strip()
    if not value:
        raise ExtractionError("Timestamp attribute is empty")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ExtractionError(f"Unrecognised timestamp '{value}'") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    normalized = parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return normalized.replace("+00:00", "Z")


def summarize(body: str, words: int = SUMMARY_WORDS) -> str:
    tokens = (body or "").split()
    if not tokens:
        return ""
    return " ".join(tokens[:words]) + SUMMARY_ELLIPSIS


def citation_block(link: str, resource: str) -> str:
    href = html.escape(link, quote=True)
    return f"<br><br><ul><li><a href='{href}'>Visit {html.escape(resource)}</a></li></ul>"


def wrap_body(body: str | Sequence[str] | None, link: str | None, resource: str) -> str:
    """Render a body as paragraphs followed by a link back to the source."""

    if isinstance(body, str) or body is None:
        paragraphs = [part.strip() for part in _PARAGRAPH_BREAK.split(body or "")]
    else:
        paragraphs = [part.strip() for part in body]
    paragraphs = [part for part in paragraphs if part]

    rendered = "".join(f"<p>{html.escape(part, quote=False)}</p>" for part in paragraphs)
    if link:
        rendered += citation_block(link, resource)
    return rendered


def _resolve_media_url(raw_value: str | None, page_url: str | None) -> str | None:
    if raw_value is None:
        return None
    value = raw_value.strip()
    if not value or value.startswith("data:"):
        return None
    if value.startswith("//"):
        return f"https:{value}"
    if value.startswith(("http://", "https://")):
        return value
    if page_url:
        return urljoin(page_url, value)
    return None
