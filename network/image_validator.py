"""Image URL reachability check run over accepted records before they are stored."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import requests

from core.types import ProductRecord
from utils.helpers import MIN_INLINE_IMAGE_LENGTH


logger = logging.getLogger(__name__)

VALID_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif", "image/avif")
USER_AGENT = "Mozilla/5.0 (compatible; CatalogHarvester ImageCheck/1.0)"


class ImageValidator:
    """HEAD-checks image URLs: image MIME type and a minimum byte size.

    Servers that refuse HEAD get a one-byte ranged GET instead. A record whose
    image fails the check keeps its place with `image_url` cleared.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        config = config or {}
        self.enabled: bool = bool(config.get("enabled", True))
        self.timeout: float = float(config.get("timeout_seconds", 8))
        self.min_bytes: int = int(config.get("min_bytes", 1000))
        self.max_workers: int = int(config.get("max_workers", 10))
        self.mime_types = tuple(config.get("mime_types", VALID_MIME_TYPES))

        self._session = requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT, "Accept": "image/*"})
        self._session.max_redirects = 3
        self._cache: Dict[str, bool] = {}

    # Public API -----------------------------------------------------------------
    def check_url(self, image_url: Optional[str]) -> bool:
        if not image_url:
            return False
        if image_url.startswith("data:image"):
            return len(image_url) > MIN_INLINE_IMAGE_LENGTH
        if not image_url.lower().startswith(("http://", "https://")):
            return False

        if image_url not in self._cache:
            self._cache[image_url] = self._probe(image_url)
        return self._cache[image_url]

    def validate_records(self, records: List[ProductRecord]) -> List[ProductRecord]:
        """Return *records* in order, with unreachable or non-image `image_url`s set to None."""
        if not self.enabled:
            return list(records)

        urls = list(dict.fromkeys(r.image_url for r in records if r.image_url))
        if not urls:
            return list(records)

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(urls)), thread_name_prefix="image_check"
        ) as executor:
            verdicts = dict(zip(urls, executor.map(self.check_url, urls)))

        checked: List[ProductRecord] = []
        invalid = 0
        for record in records:
            if record.image_url and not verdicts.get(record.image_url, False):
                invalid += 1
                record = record.model_copy(update={"image_url": None})
            checked.append(record)

        if invalid:
            logger.warning("Image validation: %s/%s records had invalid images", invalid, len(records))
        return checked

    # Internal helpers -----------------------------------------------------------
    def _probe(self, image_url: str) -> bool:
        try:
            response = self._session.head(image_url, timeout=self.timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.debug("HEAD failed for %s (%s); trying a ranged GET", image_url, exc)
            return self._ranged_get(image_url)

        content_type = response.headers.get("Content-Type", "").lower()
        if not any(mime in content_type for mime in self.mime_types):
            return False
        try:
            content_length = int(response.headers.get("Content-Length") or 0)
        except ValueError:
            content_length = 0
        return not (0 < content_length < self.min_bytes)

    def _ranged_get(self, image_url: str) -> bool:
        try:
            response = self._session.get(
                image_url,
                headers={"Range": "bytes=0-0"},
                timeout=self.timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            logger.debug("Ranged GET failed for %s: %s", image_url, exc)
            return False
        try:
            return response.status_code < 400
        finally:
            response.close()


__all__ = ["ImageValidator"]
