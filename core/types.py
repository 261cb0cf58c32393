"""
Core data types for the catalog extraction engine.

Candidates travel through the extractors as plain dicts; only records that
passed validation are frozen into ProductRecord at the end of a site scrape.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.helpers import canonical_product_url, clean_text


# ============================================================================
# Aliases
# ============================================================================

URL = str
HTMLContent = str
Candidate = Dict[str, Any]
SelectorSet = Dict[str, str]


# ============================================================================
# Page scripts evaluated through the render collaborator
# ============================================================================

OUTER_HTML_SCRIPT = "() => document.documentElement.outerHTML"

PAGE_METRICS_SCRIPT = """
() => ({
    scrollHeight: Math.max(document.body ? document.body.scrollHeight : 0,
                           document.documentElement.scrollHeight),
    viewportHeight: window.innerHeight,
    viewportWidth: window.innerWidth
})
"""

SCROLL_TO_SCRIPT = "(y) => window.scrollTo(0, y)"


# ============================================================================
# Strategy and method names
# ============================================================================

STRATEGY_SEMANTIC = "semantic"
STRATEGY_VISION = "vision"
STRATEGY_HYBRID = "hybrid"
STRATEGY_SELECTORS = "selectors"

STAGE_ALTERNATIVE_SELECTORS = "alternative-selectors"
STAGE_SEMANTIC_HTML = "semantic-html"
STAGE_SCHEMA_ORG = "schema-org"
STAGE_LLM_EXTRACTION = "llm-extraction"


# ============================================================================
# Records
# ============================================================================


class ProductRecord(BaseModel):
    """An accepted product listing. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=200)
    price: Optional[float] = None
    price_formatted: Optional[str] = None
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    source: Optional[str] = None
    category: Optional[str] = None
    scraped_at: Optional[datetime] = None
    extraction_method: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        return clean_text(value, 200)

    @field_validator("product_url")
    @classmethod
    def _http_only(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.lower().startswith(("http://", "https://")):
            raise ValueError("product_url must use http or https")
        return value

    @property
    def record_id(self) -> str:
        """Provenance-stable identifier used by the record store."""
        source = (self.source or "").lower().replace(" ", "")
        key = canonical_product_url(self.product_url) or self.name.lower()
        return hashlib.md5(f"{source}|{key}".encode("utf-8")).hexdigest()

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "ProductRecord":
        return cls(
            name=candidate["name"],
            price=candidate.get("price") if isinstance(candidate.get("price"), (int, float)) else None,
            price_formatted=candidate.get("priceFormatted"),
            image_url=candidate.get("imageUrl"),
            product_url=candidate.get("productUrl"),
        )

    def with_provenance(
        self,
        source: str,
        category: Optional[str],
        scraped_at: Optional[datetime] = None,
        method: Optional[str] = None,
    ) -> "ProductRecord":
        """Return a copy stamped with where and when it was scraped."""
        return self.model_copy(
            update={
                "source": source,
                "category": category,
                "scraped_at": scraped_at or datetime.now(UTC),
                "extraction_method": method or self.extraction_method,
            }
        )

    def to_storage(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["record_id"] = self.record_id
        return payload


@dataclass
class ExtractionResult:
    """Output of every extractor, strategy and healing stage."""

    products: List[Candidate] = field(default_factory=list)
    confidence: float = 0.0
    method: str = ""
    error: Optional[str] = None

    def __post_init__(self) -> None:
        self.confidence = max(0.0, min(1.0, float(self.confidence or 0.0)))

    @property
    def count(self) -> int:
        return len(self.products)

    @property
    def url_coverage(self) -> float:
        if not self.products:
            return 0.0
        with_url = sum(1 for p in self.products if p.get("productUrl"))
        return with_url / len(self.products)

    @classmethod
    def empty(cls, method: str, error: Optional[str] = None) -> "ExtractionResult":
        return cls(products=[], confidence=0.0, method=method, error=error)


@dataclass
class SitePattern:
    """Per-site learned extraction state."""

    site: str
    category: Optional[str] = None
    strategy_name: str = STRATEGY_HYBRID
    selector_set: Optional[SelectorSet] = None
    confidence: float = 0.5
    success_count: int = 0
    failure_count: int = 0
    avg_product_count: float = 0.0
    last_success: Optional[str] = None
    last_failure: Optional[str] = None
    last_error: Optional[str] = None
    needs_relearning: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SitePattern":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ScrapeContext:
    """What the orchestrator hands the engine for one catalog page."""

    site: str
    url: URL
    category: Optional[str] = None
    hints: Dict[str, Any] = field(default_factory=dict)
    heal_attempts: int = 0


@dataclass
class PageAnalysis:
    """Page signals inspected by the strategy selector."""

    has_schema_org: bool = False
    has_semantic_markup: bool = False
    product_card_count: int = 0
    best_card_selector: Optional[str] = None
    is_spa: bool = False
    element_count: int = 0
    blocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class RenderSession(Protocol):
    """A live page the engine can navigate, inspect and screenshot."""

    async def goto_and_settle(self, url: str) -> None: ...

    async def screenshot(self) -> bytes: ...

    async def evaluate(self, script: str, *args: Any) -> Any: ...

    async def title(self) -> str: ...

    def current_url(self) -> str: ...


@runtime_checkable
class LanguageModel(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 2000,
        temperature: float = 0.2,
        system_prompt: Optional[str] = None,
    ) -> str: ...

    async def analyze_image(
        self, image: bytes, prompt: str, *, max_tokens: int = 4000
    ) -> str: ...


@runtime_checkable
class RecordStore(Protocol):
    def list_all(self) -> List[Dict[str, Any]]: ...

    def create_many(self, records: List[ProductRecord]) -> int: ...

    def update_many(self, records: List[ProductRecord]) -> int: ...


async def page_html(session: RenderSession) -> HTMLContent:
    """Rendered markup of the session's current page."""
    html = await session.evaluate(OUTER_HTML_SCRIPT)
    return html if isinstance(html, str) else ""
