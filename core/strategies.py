"""
Extraction strategies. Each one turns a rendered page into an ExtractionResult.
"""

from typing import Any, Dict, List, Optional

from core.product_validator import ProductValidator
from core.types import (
    Candidate,
    ExtractionResult,
    RenderSession,
    ScrapeContext,
    SelectorSet,
    STRATEGY_HYBRID,
    STRATEGY_SELECTORS,
    STRATEGY_SEMANTIC,
    STRATEGY_VISION,
    page_html,
)
from extractors.dom_extractor import DOMExtractor, dom_confidence
from extractors.structured_data import StructuredDataExtractor
from extractors.vision_extractor import VisionExtractor
from utils.helpers import fuzzy_match
from utils.logger import get_logger

logger = get_logger(__name__)


def find_best_match(
    product: Candidate, candidates: List[Candidate], threshold: float
) -> Optional[Candidate]:
    """DOM candidate whose name overlaps *product*'s most, above *threshold*."""
    if not product.get("name"):
        return None
    best, best_score = None, 0.0
    for candidate in candidates:
        score = fuzzy_match(product["name"], candidate.get("name"))
        if score > best_score and score > threshold:
            best, best_score = candidate, score
    return best


def enrich_with_dom(
    products: List[Candidate], dom_products: List[Candidate], threshold: float
) -> List[Candidate]:
    """Fill missing URL/image on *products* from fuzzy-matched DOM candidates."""
    if not dom_products:
        return list(products)

    enriched: List[Candidate] = []
    for product in products:
        if product.get("productUrl") and product.get("imageUrl"):
            enriched.append(product)
            continue
        match = find_best_match(product, dom_products, threshold)
        if match is None:
            enriched.append(product)
            continue
        enriched.append(
            {
                **product,
                "price": product.get("price") if product.get("price") is not None else match.get("price"),
                "priceFormatted": product.get("priceFormatted") or match.get("priceFormatted"),
                "productUrl": product.get("productUrl") or match.get("productUrl"),
                "imageUrl": product.get("imageUrl") or match.get("imageUrl"),
            }
        )
    return enriched


class BaseStrategy:
    name = "base"

    def __init__(self) -> None:
        self.selector_set: Optional[SelectorSet] = None

    async def extract(
        self, session: RenderSession, context: ScrapeContext, html: Optional[str] = None
    ) -> ExtractionResult:
        raise NotImplementedError

    @staticmethod
    async def _html(session: RenderSession, html: Optional[str]) -> str:
        return html if html is not None else await page_html(session)

    @staticmethod
    def _base_url(session: RenderSession, context: ScrapeContext) -> str:
        return session.current_url() or context.url


class SemanticStrategy(BaseStrategy):
    """Structured data (JSON-LD, then microdata)."""

    name = STRATEGY_SEMANTIC

    def __init__(self, structured: StructuredDataExtractor) -> None:
        super().__init__()
        self.structured = structured

    async def extract(self, session, context, html=None) -> ExtractionResult:
        logger.info("Using semantic strategy")
        markup = await self._html(session, html)
        return self.structured.extract(markup, self._base_url(session, context))


class VisionStrategy(BaseStrategy):
    name = STRATEGY_VISION

    def __init__(self, vision: VisionExtractor) -> None:
        super().__init__()
        self.vision = vision

    async def extract(self, session, context, html=None) -> ExtractionResult:
        logger.info("Using vision strategy")
        result = await self.vision.extract(session, context)
        result.method = STRATEGY_VISION
        return result


class SelectorStrategy(BaseStrategy):
    """Replays a selector set that worked for this site before."""

    name = STRATEGY_SELECTORS

    def __init__(self, dom: DOMExtractor, selector_set: SelectorSet) -> None:
        super().__init__()
        self.dom = dom
        self.selector_set = dict(selector_set)

    async def extract(self, session, context, html=None) -> ExtractionResult:
        logger.info(f"Using learned selectors (container: {self.selector_set.get('container')})")
        markup = await self._html(session, html)
        return self.dom.extract_with_patterns(markup, self._base_url(session, context), self.selector_set)


class HybridStrategy(BaseStrategy):
    """DOM first; vision enriched with DOM links when the DOM comes up short."""

    name = STRATEGY_HYBRID

    def __init__(
        self,
        dom: DOMExtractor,
        vision: VisionExtractor,
        validator: ProductValidator,
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__()
        config = config or {}
        self.dom = dom
        self.vision = vision
        self.validator = validator
        self.min_dom_products = config.get("min_dom_products", 5)
        self.fuzzy_match_threshold = config.get("fuzzy_match_threshold", 0.3)
        self.vision_max_chunks = config.get("vision_max_chunks", 3)

    async def extract(self, session, context, html=None) -> ExtractionResult:
        logger.info("Using hybrid strategy")
        markup = await self._html(session, html)
        base_url = self._base_url(session, context)

        dom_result = self.dom.extract(markup, base_url)
        accepted = self.validator.filter_products(dom_result.products)
        logger.info(f"DOM found {len(dom_result.products)} candidates, {len(accepted)} accepted")

        if len(accepted) >= self.min_dom_products:
            return ExtractionResult(accepted, dom_confidence(accepted), "dom-direct")

        vision_result = await self.vision.extract(session, context, max_chunks=self.vision_max_chunks)
        if vision_result.products:
            enriched = enrich_with_dom(
                vision_result.products, dom_result.products, self.fuzzy_match_threshold
            )
            return ExtractionResult(enriched, dom_confidence(enriched), "vision-enriched")

        return ExtractionResult(accepted, dom_confidence(accepted), "fallback")
