"""
Page analysis and strategy selection.

Decision order, first match wins:
    published structured data       -> semantic
    Product microdata               -> semantic
    enough repeating product cards  -> hybrid
    single-page-app markers         -> vision
    anything else                   -> hybrid

A stored SitePattern above the trust threshold overrides the decision.
"""

from typing import Any, Dict, Optional, Tuple

from bs4 import BeautifulSoup

from core.product_validator import ProductValidator
from core.strategies import (
    BaseStrategy,
    HybridStrategy,
    SelectorStrategy,
    SemanticStrategy,
    VisionStrategy,
)
from core.types import (
    PageAnalysis,
    SitePattern,
    STRATEGY_HYBRID,
    STRATEGY_SELECTORS,
    STRATEGY_SEMANTIC,
    STRATEGY_VISION,
)
from extractors.dom_extractor import DOMExtractor
from extractors.structured_data import StructuredDataExtractor
from extractors.vision_extractor import VisionExtractor
from utils.helpers import clean_text
from utils.logger import get_logger, log_extraction_event

logger = get_logger(__name__)

PRODUCT_INDICATORS = [
    '[class*="product-card"]',
    '[class*="product-grid"]',
    '[class*="product-item"]',
    '[class*="ProductCard"]',
    '[data-testid*="product"]',
    'article[class*="product"]',
]

SPA_MARKERS = ["[data-reactroot]", "#__next", "script#__NEXT_DATA__"]

BLOCK_INDICATORS = [
    "access denied",
    "blocked",
    "captcha",
    "robot",
    "confirm you are",
]


class StrategySelector:
    """Chooses an extraction strategy from page signals or learned patterns."""

    def __init__(
        self,
        dom: DOMExtractor,
        structured: StructuredDataExtractor,
        vision: VisionExtractor,
        validator: ProductValidator,
        config: Optional[Dict[str, Any]] = None,
        hybrid_config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.dom = dom
        self.structured = structured
        self.vision = vision
        self.validator = validator
        self.hybrid_config = hybrid_config or {}
        self.min_card_count = config.get("min_card_count", 3)
        self.trust_threshold = config.get("trust_threshold", 0.8)
        self.block_text_window = config.get("block_text_window", 500)
        self.block_indicators = [i.lower() for i in config.get("block_indicators", BLOCK_INDICATORS)]

        self._strategies: Dict[str, BaseStrategy] = {
            STRATEGY_SEMANTIC: SemanticStrategy(structured),
            STRATEGY_VISION: VisionStrategy(vision),
            STRATEGY_HYBRID: HybridStrategy(dom, vision, validator, self.hybrid_config),
        }

    def get(self, name: str) -> BaseStrategy:
        return self._strategies.get(name) or self._strategies[STRATEGY_HYBRID]

    # ------------------------------------------------------------------
    # Page signals
    # ------------------------------------------------------------------
    def analyze_page(self, html: str, title: str = "") -> PageAnalysis:
        soup = BeautifulSoup(html or "", "html.parser")
        analysis = PageAnalysis(element_count=len(soup.find_all(True)))

        try:
            analysis.has_schema_org = self.structured.has_schema_org(soup)
            analysis.has_semantic_markup = self.structured.has_semantic_markup(soup)

            for selector in PRODUCT_INDICATORS:
                count = len(soup.select(selector))
                if count > analysis.product_card_count:
                    analysis.product_card_count = count
                    analysis.best_card_selector = selector

            analysis.is_spa = any(soup.select_one(marker) is not None for marker in SPA_MARKERS)
        except Exception as exc:  # noqa: BLE001 - a broken page yields default signals
            logger.warning(f"Page analysis error: {exc}")

        analysis.blocked = self.detect_block(title, soup)
        return analysis

    def detect_block(self, title: Optional[str], html: Any) -> bool:
        """Bot-wall check on the title and the start of the body text."""
        soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html or "", "html.parser")
        body = soup.body or soup
        body_text = clean_text(body.get_text(" "), self.block_text_window).lower()
        haystacks = [(title or "").lower(), body_text]
        for indicator in self.block_indicators:
            if any(indicator in text for text in haystacks):
                logger.warning(f"Bot detection page detected ('{indicator}')")
                return True
        return False

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def choose(self, analysis: PageAnalysis) -> Tuple[BaseStrategy, str]:
        if analysis.has_schema_org:
            return self._strategies[STRATEGY_SEMANTIC], "schema.org data present"
        if analysis.has_semantic_markup:
            return self._strategies[STRATEGY_SEMANTIC], "product microdata present"
        if analysis.product_card_count >= self.min_card_count:
            return (
                self._strategies[STRATEGY_HYBRID],
                f"{analysis.product_card_count} product cards ({analysis.best_card_selector})",
            )
        if analysis.is_spa:
            return self._strategies[STRATEGY_VISION], "single-page app markers"
        return self._strategies[STRATEGY_HYBRID], "default"

    def from_pattern(self, pattern: Optional[SitePattern]) -> Optional[BaseStrategy]:
        """Rebuild a trusted pattern's strategy, or None when it should not be reused."""
        if pattern is None or pattern.needs_relearning:
            return None
        if pattern.confidence <= self.trust_threshold:
            return None
        if pattern.strategy_name == STRATEGY_SELECTORS:
            if not pattern.selector_set:
                return None
            return SelectorStrategy(self.dom, pattern.selector_set)
        return self._strategies.get(pattern.strategy_name)

    def select(
        self,
        site: str,
        analysis: PageAnalysis,
        pattern: Optional[SitePattern] = None,
    ) -> BaseStrategy:
        learned = self.from_pattern(pattern)
        if learned is not None:
            reason = f"learned pattern (confidence {pattern.confidence:.2f})"
            strategy = learned
        else:
            strategy, reason = self.choose(analysis)

        logger.info(f"Selected strategy: {strategy.name} ({reason})")
        log_extraction_event(
            "strategy",
            {"site": site, "strategy": strategy.name, "reason": reason, "analysis": analysis.to_dict()},
        )
        return strategy
