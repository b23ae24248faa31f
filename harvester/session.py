"""Page session interface shared by the rendering and static backends."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, Sequence

_WHITESPACE = re.compile(r"\s+")


class PageSessionError(RuntimeError):
    """Raised when the page session itself is unusable."""


class NavigationError(PageSessionError):
    """Raised when a page cannot be loaded within the allotted time."""


class LocatorNotFound(PageSessionError):
    """Raised when a locator matches nothing on the current document."""


@dataclass(frozen=True, slots=True)
class ElementMatch:
    text: str | None
    attribute: str | None


class PageSession(Protocol):
    """Navigate to pages and evaluate locators against the loaded document."""

    @property
    def url(self) -> str | None:  # pragma: no cover - interface only
        ...

    def navigate(self, url: str, *, timeout: float, wait_until: str = "domcontentloaded") -> None:  # pragma: no cover
        ...

    def text(self, selector: str) -> str:  # pragma: no cover - interface only
        ...

    def texts(self, selector: str, *, exclude: Sequence[str] = ()) -> list[str]:  # pragma: no cover
        ...

    def attribute(self, selector: str, name: str) -> str:  # pragma: no cover - interface only
        ...

    def query_all(
        self,
        selector: str,
        *,
        text_selector: str | None = None,
        attribute: str | None = None,
    ) -> list[ElementMatch]:  # pragma: no cover - interface only
        ...

    def dismiss(self, selector: str) -> bool:  # pragma: no cover - interface only
        ...

    def close(self) -> None:  # pragma: no cover - interface only
        ...


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.replace("\xa0", " ")).strip()
