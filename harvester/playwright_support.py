"""Playwright-backed page session for JavaScript-rendered listing and article pages."""

from __future__ import annotations

import logging
from typing import Sequence

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from .config import SessionConfig
from .session import ElementMatch, LocatorNotFound, NavigationError, PageSessionError, normalize_text

LOGGER = logging.getLogger(__name__)

# Excluded substructures are removed from a detached clone so later locators still see the full page.
_TEXTS_SCRIPT = """
([selector, exclude]) => {
  const root = document.documentElement.cloneNode(true);
  for (const excluded of exclude) {
    root.querySelectorAll(excluded).forEach((element) => element.remove());
  }
  return Array.from(root.querySelectorAll(selector)).map((element) => element.textContent || "");
}
"""

_QUERY_ALL_SCRIPT = """
([selector, textSelector, attribute]) =>
  Array.from(document.querySelectorAll(selector)).map((element) => {
    const target = textSelector ? element.querySelector(textSelector) : element;
    return {
      text: target ? (target.innerText || target.textContent || "") : null,
      attribute: attribute ? element.getAttribute(attribute) : null,
    };
  })
"""


class PlaywrightPageSession:
    """Drive a single Chromium page through the listing and every article visit."""

    def __init__(self, config: SessionConfig | None = None, *, page=None) -> None:
        self._config = config or SessionConfig()
        self._page = page
        self._owns_page = page is None
        self._playwright_cm = None
        self._playwright = None
        self._browser = None
        self._context = None

    def __enter__(self) -> "PlaywrightPageSession":
        if self._page is not None:
            return self
        try:
            self._playwright_cm = sync_playwright()
            self._playwright = self._playwright_cm.__enter__()
            self._browser = self._playwright.chromium.launch(headless=self._config.headless)
            self._context = self._browser.new_context(user_agent=self._config.user_agent)
            self._page = self._context.new_page()
        except PlaywrightError as exc:
            self.close()
            raise PageSessionError(f"Failed to start Chromium: {exc}") from exc
        return self

    def __exit__(self, *_exc_info) -> bool:
        self.close()
        return False

    def close(self) -> None:
        if not self._owns_page:
            self._page = None
            return
        teardown = [
            ("context", self._context.close if self._context is not None else None),
            ("browser", self._browser.close if self._browser is not None else None),
            (
                "playwright driver",
                (lambda: self._playwright_cm.__exit__(None, None, None)) if self._playwright_cm is not None else None,
            ),
        ]
        # Every step runs even when an earlier one fails; a crashed browser must not leak the driver.
        for name, step in teardown:
            if step is None:
                continue
            try:
                step()
            except Exception as exc:
                LOGGER.warning("Failed to close Playwright %s: %s", name, exc)

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
        self._playwright_cm = None

    @property
    def url(self) -> str | None:
        if self._page is None:
            return None
        return self._page.url

    def navigate(self, url: str, *, timeout: float, wait_until: str = "domcontentloaded") -> None:
        page = self._require_page()
        try:
            response = page.goto(url, wait_until=wait_until, timeout=int(timeout * 1000))
        except PlaywrightTimeoutError as exc:
            raise NavigationError(f"Timed out after {timeout:.1f}s while loading {url}") from exc
        except PlaywrightError as exc:
            raise NavigationError(f"Failed to load {url}: {exc}") from exc

        if response is not None and not response.ok:
            raise NavigationError(f"Unexpected status {response.status} for {url}")

    def text(self, selector: str) -> str:
        page = self._require_page()
        try:
            handle = page.query_selector(selector)
            if handle is None:
                raise LocatorNotFound(f"No element matches '{selector}' on {page.url}")
            return normalize_text(handle.inner_text())
        except PlaywrightError as exc:
            raise PageSessionError(f"Failed to read '{selector}': {exc}") from exc

    def texts(self, selector: str, *, exclude: Sequence[str] = ()) -> list[str]:
        page = self._require_page()
        try:
            values = page.evaluate(_TEXTS_SCRIPT, [selector, list(exclude)])
        except PlaywrightError as exc:
            raise PageSessionError(f"Failed to read '{selector}': {exc}") from exc
        if not values:
            raise LocatorNotFound(f"No element matches '{selector}' on {page.url}")
        return [normalize_text(value) for value in values]

    def attribute(self, selector: str, name: str) -> str:
        page = self._require_page()
        try:
            for handle in page.query_selector_all(selector):
                value = handle.get_attribute(name)
                if value and value.strip():
                    return value.strip()
        except PlaywrightError as exc:
            raise PageSessionError(f"Failed to read '{name}' from '{selector}': {exc}") from exc
        raise LocatorNotFound(f"No element matching '{selector}' carries '{name}' on {page.url}")

    def query_all(
        self,
        selector: str,
        *,
        text_selector: str | None = None,
        attribute: str | None = None,
    ) -> list[ElementMatch]:
        page = self._require_page()
        try:
            raw_matches = page.evaluate(_QUERY_ALL_SCRIPT, [selector, text_selector, attribute])
        except PlaywrightError as exc:
            raise PageSessionError(f"Failed to evaluate '{selector}': {exc}") from exc

        matches: list[ElementMatch] = []
        for raw in raw_matches or []:
            text = raw.get("text")
            value = raw.get("attribute")
            matches.append(
                ElementMatch(
                    text=normalize_text(text) or None if text is not None else None,
                    attribute=value.strip() or None if value is not None else None,
                )
            )
        return matches

    def dismiss(self, selector: str) -> bool:
        page = self._require_page()
        try:
            if not page.is_visible(selector):
                LOGGER.debug("Nothing to dismiss for '%s'", selector)
                return False
            page.click(selector)
        except PlaywrightError as exc:
            LOGGER.warning("Failed to dismiss '%s': %s", selector, exc)
            return False
        LOGGER.info("Dismissed overlay '%s'", selector)
        return True

    def _require_page(self):
        if self._page is None:
            raise PageSessionError("Session must be used as a context manager")
        return self._page
