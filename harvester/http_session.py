"""Static page session backed by httpx and BeautifulSoup."""

from __future__ import annotations

import copy
import logging
from typing import Sequence

import httpx
from bs4 import BeautifulSoup, Tag

from .config import SessionConfig
from .session import ElementMatch, LocatorNotFound, NavigationError, PageSessionError, normalize_text

LOGGER = logging.getLogger(__name__)


class HttpPageSession:
    """Fetch documents over HTTP and evaluate CSS locators without rendering."""

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config or SessionConfig(backend="http")
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None
        self._soup: BeautifulSoup | None = None
        self._url: str | None = None
        self._closed = False

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "headers": {"User-Agent": self._config.user_agent},
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    @property
    def url(self) -> str | None:
        return self._url

    def navigate(self, url: str, *, timeout: float, wait_until: str = "domcontentloaded") -> None:
        # Static documents are complete once the body arrives; wait_until has nothing to wait for.
        self._ensure_open()
        try:
            response = self._client.get(url, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise NavigationError(f"Timed out after {timeout:.1f}s while loading {url}") from exc
        except httpx.HTTPError as exc:
            raise NavigationError(f"Failed to load {url}: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise NavigationError(f"Unexpected status {response.status_code} for {url}")

        content_type = response.headers.get("content-type", "")
        if "html" not in content_type:
            raise NavigationError(f"Unsupported content type '{content_type}' for {url}")

        self._soup = BeautifulSoup(response.text, "html.parser")
        self._url = str(response.url)
        LOGGER.debug("Loaded %s (%d bytes)", self._url, len(response.content))

    def text(self, selector: str) -> str:
        element = self._document().select_one(selector)
        if element is None:
            raise LocatorNotFound(f"No element matches '{selector}' on {self._url}")
        return normalize_text(element.get_text(" "))

    def texts(self, selector: str, *, exclude: Sequence[str] = ()) -> list[str]:
        document = self._document()
        if exclude:
            document = copy.copy(document)
            for excluded in exclude:
                for element in document.select(excluded):
                    element.decompose()

        elements = document.select(selector)
        if not elements:
            raise LocatorNotFound(f"No element matches '{selector}' on {self._url}")
        return [normalize_text(element.get_text(" ")) for element in elements]

    def attribute(self, selector: str, name: str) -> str:
        for element in self._document().select(selector):
            value = element.get(name)
            if isinstance(value, list):
                value = " ".join(value)
            if value and value.strip():
                return value.strip()
        raise LocatorNotFound(f"No element matching '{selector}' carries '{name}' on {self._url}")

    def query_all(
        self,
        selector: str,
        *,
        text_selector: str | None = None,
        attribute: str | None = None,
    ) -> list[ElementMatch]:
        matches: list[ElementMatch] = []
        for element in self._document().select(selector):
            matches.append(
                ElementMatch(
                    text=self._element_text(element, text_selector),
                    attribute=self._element_attribute(element, attribute),
                )
            )
        return matches

    def dismiss(self, selector: str) -> bool:
        # Consent banners are script driven; a static document has nothing to click.
        return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._soup = None
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpPageSession":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise PageSessionError("Page session has been closed")

    def _document(self) -> BeautifulSoup:
        self._ensure_open()
        if self._soup is None:
            raise PageSessionError("No document loaded; call navigate() first")
        return self._soup

    @staticmethod
    def _element_text(element: Tag, text_selector: str | None) -> str | None:
        target = element.select_one(text_selector) if text_selector else element
        if target is None:
            return None
        return normalize_text(target.get_text(" ")) or None

    @staticmethod
    def _element_attribute(element: Tag, attribute: str | None) -> str | None:
        if not attribute:
            return None
        value = element.get(attribute)
        if isinstance(value, list):
            value = " ".join(value)
        if value is None:
            return None
        return value.strip() or None
