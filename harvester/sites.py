"""Site registry: listing locations, resource tags and field locators."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

from .extractors import (
    AuthorExtractor,
    BodyExtractor,
    DateExtractor,
    ExtractorSettings,
    MediaExtractor,
    MediaLocator,
)
from .listing import ListingRule


@dataclass(slots=True)
class SiteDefinition:
    """Configuration for a supported news site."""

    slug: str
    resource: str
    listing_url: str
    listing_rules: tuple[ListingRule, ...]
    extractors: ExtractorSettings = field(default_factory=ExtractorSettings)
    consent_selector: str | None = None
    default_user_agent: str = "news-harvester/1.0"

    @property
    def default_snapshot_path(self) -> Path:
        return Path("data") / f"{self.slug}-articles.json"


_BBC_NON_CONTENT = (
    ".advertisement",
    ".ad-container",
    ".ad",
    ".widget",
    '[role="list"]',
    "figcaption",
    "nav",
    '[data-component="links-block"]',
    ".ssrcss-1ik71mx-MetadataStripContainer",
    ".ssrcss-tvuve5-StyledFigureCopyright",
)


_SITE_REGISTRY: Dict[str, SiteDefinition] = {
    "bbc": SiteDefinition(
        slug="bbc",
        resource="BBC News",
        listing_url="https://www.bbc.com/news",
        listing_rules=(
            ListingRule(
                selector='div[data-testid^="london-card"] a[data-testid="internal-link"]',
                headline_selector='h2[data-testid="card-headline"]',
                base_url="https://www.bbc.com",
            ),
        ),
        extractors=ExtractorSettings(
            body=BodyExtractor(selector="article p", exclude=_BBC_NON_CONTENT),
            author=AuthorExtractor(
                selectors=(
                    "span.sc-2b5e3b35-7.bZCrck",
                    '[data-testid="byline-new-contributors"] span',
                )
            ),
            media=MediaExtractor(
                chain=(
                    MediaLocator("article figure img", "src"),
                    MediaLocator("video", "poster"),
                    MediaLocator('meta[property="og:image"]', "content"),
                )
            ),
            date=DateExtractor(selector="time", attribute="datetime"),
        ),
        consent_selector="#bbccookies-continue-button",
        default_user_agent="bbc-harvester/1.0",
    ),
}


def get_site_definition(site_slug: str) -> SiteDefinition:
    """Return the registered site definition for the given slug."""

    try:
        return _SITE_REGISTRY[site_slug]
    except KeyError as exc:
        raise KeyError(f"Unknown site '{site_slug}'") from exc


def list_sites() -> list[str]:
    """Return a sorted list of supported site slugs."""

    return sorted(_SITE_REGISTRY)
