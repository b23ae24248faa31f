"""Discover candidate articles on a loaded listing page."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit

from .records import CandidateEntry
from .session import PageSession
from .slugs import SlugGenerator

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ListingRule:
    """One way of finding article cards on a listing page."""

    selector: str
    headline_selector: str | None = None
    link_attribute: str = "href"
    base_url: str | None = None


class ListingCollector:
    """Apply listing rules in order and return deduplicated candidate entries."""

    def __init__(
        self,
        rules: Sequence[ListingRule],
        *,
        slug_factory: Callable[[str, str], str] | None = None,
    ) -> None:
        self._rules = list(rules)
        self._slug_factory = slug_factory or SlugGenerator()

    def collect(self, session: PageSession) -> list[CandidateEntry]:
        entries: list[CandidateEntry] = []
        seen_links: set[str] = set()
        dropped = 0

        for rule in self._rules:
            matches = session.query_all(
                rule.selector,
                text_selector=rule.headline_selector,
                attribute=rule.link_attribute,
            )
            LOGGER.debug("Listing rule '%s' matched %d elements", rule.selector, len(matches))
            for match in matches:
                headline = (match.text or "").strip()
                link = normalize_article_link(match.attribute, rule.base_url or session.url)
                if not headline or link is None:
                    dropped += 1
                    continue
                if link in seen_links:
                    continue
                seen_links.add(link)
                entries.append(
                    CandidateEntry(
                        headline=headline,
                        link=link,
                        slug=self._slug_factory(headline, link),
                    )
                )

        LOGGER.info("Collected %d candidate articles (%d unusable matches dropped)", len(entries), dropped)
        return entries


def normalize_article_link(raw_href: str | None, base_url: str | None) -> str | None:
    if raw_href is None:
        return None
    href = raw_href.strip()
    if not href or href.startswith(("#", "javascript:", "mailto:")):
        return None

    absolute = urljoin(base_url, href) if base_url else href
    parsed = urlsplit(absolute)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    return urlunsplit((parsed.scheme, parsed.netloc, parsed.path or "/", parsed.query, ""))
