"""
Self-healing cascade.

Runs when the chosen strategy comes back thin. Stages run in a fixed order
and each one is isolated: an exception or an empty result moves on to the
next stage. The cascade always stops after the last stage.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from core.product_validator import ProductValidator
from core.types import (
    Candidate,
    LanguageModel,
    RenderSession,
    ScrapeContext,
    SelectorSet,
    STAGE_ALTERNATIVE_SELECTORS,
    STAGE_LLM_EXTRACTION,
    STAGE_SCHEMA_ORG,
    STAGE_SEMANTIC_HTML,
    page_html,
)
from extractors.dom_extractor import DOMExtractor
from extractors.prompts import healing_prompt
from extractors.structured_data import StructuredDataExtractor
from utils.error_handling import LLMError
from utils.helpers import clean_text, first_json_array, normalize_image_url, normalize_url, parse_price
from utils.logger import get_logger, log_extraction_event

logger = get_logger(__name__)

ALTERNATIVE_SELECTOR_SETS: List[SelectorSet] = [
    {
        "container": '.product-tile, .product-card, [data-component="product"]',
        "name": ".product-title, .product-name, h3 a",
        "price": ".product-price, .price",
        "image": "img.product-image, img[data-src]",
        "link": 'a.product-link, a[href*="/product"]',
    },
    {
        "container": '[class*="ProductCard"], [class*="product-item"]',
        "name": '[class*="title"], [class*="name"]',
        "price": '[class*="price"]',
        "image": "img",
        "link": "a",
    },
]

MARKUP_AREA_SELECTOR = 'main, [class*="product"], #content'
STRIPPED_TAGS = ["script", "style", "iframe", "svg", "noscript", "header", "footer", "nav"]
PRODUCT_HREF_HINTS = ("/p/", "/product/", ".html")


@dataclass
class HealingResult:
    success: bool
    products: List[Candidate] = field(default_factory=list)
    stage: Optional[str] = None
    selector_set: Optional[SelectorSet] = None
    stages_tried: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


StageOutcome = Tuple[List[Candidate], Optional[SelectorSet]]


def llm_markup_slice(html: str, base_url: Optional[str], max_chars: int = 30000) -> str:
    """Main content area without chrome; a list of product links when that is still too big."""
    soup = BeautifulSoup(html or "", "html.parser")
    area = soup.select_one(MARKUP_AREA_SELECTOR) or soup.body or soup
    for tag in area.find_all(STRIPPED_TAGS):
        tag.decompose()

    markup = area.decode_contents()
    if len(markup) <= max_chars:
        return markup

    anchors = []
    for anchor in area.select("a[href]"):
        href = anchor.get("href") or ""
        if not any(hint in href for hint in PRODUCT_HREF_HINTS):
            continue
        text = clean_text(anchor.get_text(" "), 200)
        if len(text) <= 5:
            continue
        img = anchor.find("img")
        anchors.append(
            {
                "href": normalize_url(href, base_url) or href,
                "text": text,
                "img": (img.get("src") or img.get("data-src") or "") if img else "",
            }
        )
        if len(anchors) >= 50:
            break

    if anchors:
        return json.dumps(anchors)
    return markup[:max_chars]


class SelfHealer:
    """Fallback cascade: alternate selectors, microdata, JSON-LD, then the LLM."""

    def __init__(
        self,
        dom: DOMExtractor,
        structured: StructuredDataExtractor,
        validator: ProductValidator,
        llm: Optional[LanguageModel] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.dom = dom
        self.structured = structured
        self.validator = validator
        self.llm = llm
        self.selector_sets: List[SelectorSet] = config.get("selector_sets", ALTERNATIVE_SELECTOR_SETS)
        self.max_html_chars = config.get("max_html_chars", 30000)
        self.llm_max_tokens = config.get("llm_max_tokens", 3000)
        self.llm_temperature = config.get("llm_temperature", 0.2)
        self.min_name_length = config.get("min_name_length", 5)

    def _stages(
        self, context: ScrapeContext, html: str, base_url: str
    ) -> List[Tuple[str, Callable[[], Awaitable[StageOutcome]]]]:
        return [
            (STAGE_ALTERNATIVE_SELECTORS, lambda: self.try_alternative_selectors(html, base_url)),
            (STAGE_SEMANTIC_HTML, lambda: self.try_semantic_html(html, base_url)),
            (STAGE_SCHEMA_ORG, lambda: self.try_schema_org(html, base_url)),
            (STAGE_LLM_EXTRACTION, lambda: self.try_llm_extraction(html, base_url, context)),
        ]

    async def heal(
        self, session: RenderSession, context: ScrapeContext, html: Optional[str] = None
    ) -> HealingResult:
        logger.info("Starting self-healing cascade")
        if html is None:
            html = await page_html(session)
        base_url = session.current_url() or context.url

        result = HealingResult(success=False)
        for stage, run in self._stages(context, html, base_url):
            result.stages_tried.append(stage)
            try:
                logger.debug(f"Trying healing strategy: {stage}")
                candidates, selector_set = await run()
                accepted = self._accept(candidates)
            except Exception as exc:  # noqa: BLE001 - a failing stage advances the cascade
                logger.warning(f'Strategy "{stage}" failed: {exc}')
                result.errors[stage] = str(exc)
                self._log_stage(context, stage, 0, error=str(exc))
                continue

            self._log_stage(context, stage, len(accepted))
            if accepted:
                logger.info(f'Healing succeeded with "{stage}": {len(accepted)} products')
                result.success = True
                result.products = accepted
                result.stage = stage
                result.selector_set = selector_set
                return result
            logger.debug(f'Strategy "{stage}" returned 0 products')

        logger.warning("All healing strategies exhausted")
        return result

    def _accept(self, candidates: List[Candidate]) -> List[Candidate]:
        shaped = [c for c in candidates if c.get("name") and (c.get("imageUrl") or c.get("productUrl"))]
        return self.validator.filter_products(shaped)

    @staticmethod
    def _log_stage(context: ScrapeContext, stage: str, count: int, error: Optional[str] = None) -> None:
        data = {"site": context.site, "stage": stage, "products": count}
        if error:
            data["error"] = error
        log_extraction_event("healing", data, level="WARNING" if error else "INFO")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def try_alternative_selectors(self, html: str, base_url: str) -> StageOutcome:
        soup = BeautifulSoup(html or "", "html.parser")
        for selector_set in self.selector_sets:
            result = self.dom.extract_with_patterns(soup, base_url, selector_set)
            shaped = [p for p in result.products if p.get("name") and (p.get("imageUrl") or p.get("productUrl"))]
            if shaped:
                return shaped, dict(selector_set)
        return [], None

    async def try_semantic_html(self, html: str, base_url: str) -> StageOutcome:
        return self.structured.extract_microdata_only(html, base_url).products, None

    async def try_schema_org(self, html: str, base_url: str) -> StageOutcome:
        return self.structured.extract_schema_org_only(html, base_url).products, None

    async def try_llm_extraction(self, html: str, base_url: str, context: ScrapeContext) -> StageOutcome:
        if self.llm is None:
            logger.debug("LLM extraction skipped: no language model configured")
            return [], None

        markup = llm_markup_slice(html, base_url, self.max_html_chars)
        prompt = healing_prompt(markup, context.category or "catalog", self.max_html_chars)
        try:
            reply = await self.llm.complete(
                prompt, max_tokens=self.llm_max_tokens, temperature=self.llm_temperature
            )
        except LLMError as exc:
            logger.warning(f"LLM extraction failed: {exc}")
            return [], None

        products = [p for p in (self._normalize(raw, base_url) for raw in first_json_array(reply)) if p]
        logger.info(f"LLM extraction parsed {len(products)} valid products")
        return products, None

    def _normalize(self, raw: Dict[str, Any], base_url: str) -> Optional[Candidate]:
        name = raw.get("name")
        if not isinstance(name, str):
            return None
        name = clean_text(name, 200)
        if len(name) < self.min_name_length:
            return None
        price_text = raw.get("price")
        return {
            "name": name,
            "price": parse_price(price_text),
            "priceFormatted": str(price_text) if price_text else None,
            "imageUrl": normalize_image_url(raw.get("imageUrl") or raw.get("image"), base_url),
            "productUrl": normalize_url(raw.get("productUrl") or raw.get("url"), base_url),
        }
