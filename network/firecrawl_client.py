"""Firecrawl client used as the remote-rendering fallback for blocked sites."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from bs4 import BeautifulSoup

from core.types import OUTER_HTML_SCRIPT
from utils.error_handling import ExtractionError


logger = logging.getLogger(__name__)


class FirecrawlClient:
    """HTTP wrapper around the Firecrawl `/v2/scrape` endpoint returning rendered HTML."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.enabled: bool = bool(config.get("enabled", False))

        raw_keys = config.get("api_keys")
        api_keys: list[str] = []
        if isinstance(raw_keys, list):
            for key in raw_keys:
                if isinstance(key, str) and key.strip():
                    api_keys.append(key.strip())

        primary_key = str(config.get("api_key") or "").strip()
        if primary_key and primary_key not in api_keys:
            api_keys.insert(0, primary_key)

        self.api_keys: list[str] = api_keys
        self._key_index: int = 0
        self.api_key: str = api_keys[0] if api_keys else ""
        self.base_url: str = str(
            config.get("base_url", "https://api.firecrawl.dev/v2/scrape")
        )
        self.timeout: int = int(config.get("timeout_seconds", 90))
        self.max_requests: int = int(config.get("max_requests_per_run", 60))
        self.wait_for_ms: int = int(config.get("wait_for_ms", 3000))
        self.only_main_content: bool = bool(config.get("only_main_content", False))
        self.location: Optional[Dict[str, Any]] = (
            config.get("location") if isinstance(config.get("location"), dict) else None
        )

        self._request_count = 0
        self._cache: Dict[str, Optional[str]] = {}

        self._session = requests.Session()
        self._apply_auth_header()
        self._session.headers.update({"Content-Type": "application/json"})
        self._insufficient_credits = False

        if not self.available:
            logger.info("Firecrawl client initialised in disabled state")

    @property
    def available(self) -> bool:
        return self.enabled and bool(self.api_key) and not self._insufficient_credits

    @property
    def requests_made(self) -> int:
        return self._request_count

    # Public API -----------------------------------------------------------------
    def scrape_html(self, url: str) -> Optional[str]:
        """Return rendered HTML for *url* or None when disabled/failed."""

        if not self.available:
            return None

        if url in self._cache:
            return self._cache[url]

        if self._request_count >= self.max_requests:
            logger.warning(
                "Firecrawl request limit reached (%s); skipping %s",
                self.max_requests,
                url,
            )
            return None

        payload: Dict[str, Any] = {
            "url": url,
            "formats": ["rawHtml"],
            "onlyMainContent": self.only_main_content,
            "waitFor": self.wait_for_ms,
        }
        if self.location:
            payload["location"] = self.location

        try:
            self._request_count += 1
            response = self._session.post(
                self.base_url, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            html = self._extract_html(response.json())
            self._cache[url] = html
            if html:
                logger.info("Firecrawl returned %s chars for %s", len(html), url)
            return html
        except requests.RequestException as exc:
            if self._should_rotate_key(exc) and self._rotate_key():
                return self.scrape_html(url)
            logger.warning("Firecrawl request failed for %s: %s", url, exc)
            self._cache[url] = None
        except ValueError as exc:
            logger.warning("Firecrawl JSON decoding failed for %s: %s", url, exc)
            self._cache[url] = None

        return None

    # Internal helpers -----------------------------------------------------------
    @staticmethod
    def _extract_html(payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None

        for container in (payload, payload.get("data")):
            if not isinstance(container, dict):
                continue
            for key in ("rawHtml", "html"):
                if isinstance(container.get(key), str) and container[key]:
                    return container[key]
        return None

    def _apply_auth_header(self) -> None:
        if self.api_key:
            self._session.headers.update({"Authorization": f"Bearer {self.api_key}"})
        else:
            self._session.headers.pop("Authorization", None)

    def _rotate_key(self) -> bool:
        if self._key_index + 1 >= len(self.api_keys):
            self._insufficient_credits = True
            logger.warning("Firecrawl API keys exhausted; further requests disabled")
            return False

        self._key_index += 1
        self.api_key = self.api_keys[self._key_index]
        self._apply_auth_header()
        logger.info(
            "Rotated Firecrawl API key (index %s/%s)",
            self._key_index + 1,
            len(self.api_keys),
        )
        return True

    @staticmethod
    def _should_rotate_key(exc: requests.RequestException) -> bool:
        response = getattr(exc, "response", None)
        if response is None:
            return False
        if getattr(response, "status_code", None) == 402:
            return True
        body = getattr(response, "text", "") or ""
        return "insufficient credits" in body.lower()


class StaticHtmlSession:
    """Render session over markup that was rendered elsewhere.

    Lets the DOM, structured-data and healing extractors run unchanged on
    Firecrawl output. There is no viewport, so screenshots are unavailable.
    """

    def __init__(self, url: str, html: str) -> None:
        self.url = url
        self.html = html or ""

    async def goto_and_settle(self, url: str) -> None:
        if url != self.url:
            raise ExtractionError("Static session cannot navigate", {"url": url})

    async def screenshot(self) -> bytes:
        raise ExtractionError("Screenshots are not available for remote-rendered markup", {"url": self.url})

    async def evaluate(self, script: str, *args: Any) -> Any:
        if script == OUTER_HTML_SCRIPT:
            return self.html
        raise ExtractionError("Scripts cannot run against remote-rendered markup", {"url": self.url})

    async def title(self) -> str:
        soup = BeautifulSoup(self.html, "html.parser")
        return soup.title.get_text(strip=True) if soup.title else ""

    def current_url(self) -> str:
        return self.url


__all__ = ["FirecrawlClient", "StaticHtmlSession"]
