"""Site registry: which catalog pages to scrape and how."""

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, ValidationError, field_validator

from core.types import ScrapeContext
from utils.error_handling import ConfigurationError
from utils.logger import get_logger

logger = get_logger(__name__)


class SiteHints(BaseModel):
    """Optional per-site hints for the renderer: timing and how the listing loads more cards."""

    wait_time_ms: Optional[int] = Field(default=None, ge=0, le=60_000)
    scroll_count: Optional[int] = Field(default=None, ge=0, le=50)
    scroll_behavior: Optional[Literal["infinite", "load_more"]] = None
    max_clicks: Optional[int] = Field(default=None, ge=0, le=20)

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CategoryTarget(BaseModel):
    name: str = Field(..., min_length=1)
    url: str
    category: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        parts = urlsplit(value.strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"invalid catalog URL: {value!r}")
        return value.strip()


class SiteConfig(BaseModel):
    name: str = Field(..., min_length=1)
    enabled: bool = True
    categories: List[CategoryTarget] = Field(..., min_length=1)
    use_remote_renderer: bool = False
    remote_fallback: bool = False
    hints: SiteHints = Field(default_factory=SiteHints)

    def contexts(self) -> List[ScrapeContext]:
        return [
            ScrapeContext(
                site=self.name,
                url=target.url,
                category=target.category or target.name,
                hints=self.hints.as_dict(),
            )
            for target in self.categories
        ]


class SiteRegistry:
    """Validated list of sites loaded from `config/sites.json`."""

    def __init__(self, sites: List[SiteConfig]):
        seen = set()
        for site in sites:
            key = site.name.strip().lower()
            if key in seen:
                raise ConfigurationError(f"Duplicate site name: {site.name}", {"site": site.name})
            seen.add(key)
        self.sites = sites

    @classmethod
    def from_data(cls, data: Any) -> "SiteRegistry":
        raw_sites = data.get("sites") if isinstance(data, dict) else data
        if not isinstance(raw_sites, list):
            raise ConfigurationError("Site registry must contain a 'sites' list")

        sites: List[SiteConfig] = []
        for index, raw in enumerate(raw_sites):
            try:
                sites.append(SiteConfig.model_validate(raw))
            except ValidationError as exc:
                name = raw.get("name") if isinstance(raw, dict) else None
                raise ConfigurationError(
                    f"Invalid site entry #{index} ({name or 'unnamed'}): {exc.errors()[0]['msg']}",
                    {"index": index, "site": name},
                ) from exc
        return cls(sites)

    @classmethod
    def load(cls, path: str = "config/sites.json") -> "SiteRegistry":
        file_path = Path(path)
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Site registry not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in site registry {path}: {exc}") from exc

        registry = cls.from_data(data)
        logger.info(f"Loaded {len(registry.sites)} sites ({len(registry.enabled())} enabled) from {path}")
        return registry

    def enabled(self) -> List[SiteConfig]:
        return [site for site in self.sites if site.enabled]

    def get(self, name: str) -> Optional[SiteConfig]:
        key = name.strip().lower()
        return next((site for site in self.sites if site.name.lower() == key), None)

    def select(self, names: Optional[List[str]] = None) -> List[SiteConfig]:
        """Enabled sites, or the named ones (enabled or not) when names are given."""
        if not names:
            return self.enabled()
        selected = []
        for name in names:
            site = self.get(name)
            if site is None:
                raise ConfigurationError(f"Unknown site: {name}", {"site": name})
            selected.append(site)
        return selected
