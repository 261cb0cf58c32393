"""
Visual extraction: screenshot the rendered catalog in viewport-sized chunks
and let a vision model read the products off the images.
"""

import asyncio
import re
from typing import Any, Dict, List, Optional

from core.types import (
    Candidate,
    ExtractionResult,
    LanguageModel,
    PAGE_METRICS_SCRIPT,
    RenderSession,
    SCROLL_TO_SCRIPT,
    ScrapeContext,
    STRATEGY_VISION,
)
from extractors.prompts import product_extraction_prompt
from utils.error_handling import LLMBudgetExceededError, LLMError
from utils.helpers import calculate_confidence, clean_text, first_json_array, parse_price
from utils.logger import get_logger, log_extraction_event

logger = get_logger(__name__)

VISION_WEIGHTS = {"name": 0.5, "price": 0.3, "imageDescription": 0.2}

INVALID_NAME_PATTERNS = [
    re.compile(r"^(shop|view|see|load|more|all|home|menu|cart|account)$", re.I),
    re.compile(r"^(women|men|boys|girls|kids|sale|new|trending)$", re.I),
    re.compile(r"^(filter|sort|size|color|category|collection)s?$", re.I),
    re.compile(r"^(add to|quick view|shop now|view all)", re.I),
    re.compile(r"^[$£€₦]?\s*\d+([.,]\d{2})?$"),
]


def vision_confidence(products: List[Candidate]) -> float:
    return calculate_confidence(
        products,
        VISION_WEIGHTS,
        {"price": lambda v: v is not None},
    )


class VisionExtractor:
    """Chunked screenshots -> vision model -> candidate records."""

    def __init__(self, llm: Optional[LanguageModel], config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.llm = llm
        self.max_chunks = config.get("max_chunks", 3)
        self.viewport_step = config.get("viewport_step_ratio", 0.8)
        self.settle_seconds = config.get("settle_seconds", 1.5)
        self.call_delay_seconds = config.get("call_delay_seconds", 1.0)
        self.screenshot_timeout = config.get("screenshot_timeout_seconds", 15.0)
        self.max_tokens = config.get("max_tokens", 4000)
        self.min_name_length = config.get("min_name_length", 5)

    async def extract(
        self,
        session: RenderSession,
        context: ScrapeContext,
        max_chunks: Optional[int] = None,
    ) -> ExtractionResult:
        if self.llm is None:
            logger.info("Vision extraction skipped: no language model configured")
            return ExtractionResult.empty(STRATEGY_VISION, "no language model")

        logger.info("Starting vision-based extraction")
        screenshots = await self.capture_chunks(session, max_chunks or self.max_chunks)
        if not screenshots:
            logger.warning("No screenshots captured")
            return ExtractionResult.empty(STRATEGY_VISION, "no screenshots")

        collected: List[Candidate] = []
        for index, image in enumerate(screenshots):
            logger.info(f"Analyzing screenshot {index + 1}/{len(screenshots)}")
            try:
                collected.extend(await self.analyze_screenshot(image, context))
            except LLMBudgetExceededError as exc:
                logger.warning(f"Vision extraction stopped: {exc}")
                break
            except LLMError as exc:
                logger.warning(f"Screenshot {index + 1} analysis failed: {exc}")

            if index < len(screenshots) - 1 and self.call_delay_seconds:
                await asyncio.sleep(self.call_delay_seconds)

        products = self.deduplicate(collected)
        confidence = vision_confidence(products)
        log_extraction_event(
            "vision",
            {"site": context.site, "screenshots": len(screenshots), "products": len(products)},
        )
        return ExtractionResult(products=products, confidence=confidence, method=STRATEGY_VISION)

    async def capture_chunks(self, session: RenderSession, max_chunks: int) -> List[bytes]:
        """Screenshot the page one viewport (scrolled by 80%) at a time."""
        shots: List[bytes] = []
        try:
            metrics = await session.evaluate(PAGE_METRICS_SCRIPT) or {}
            viewport = int(metrics.get("viewportHeight") or 0) or 800
            total = int(metrics.get("scrollHeight") or 0) or viewport
            step = max(1, int(viewport * self.viewport_step))

            position = 0
            while len(shots) < max_chunks:
                await session.evaluate(SCROLL_TO_SCRIPT, position)
                if self.settle_seconds:
                    await asyncio.sleep(self.settle_seconds)
                shots.append(await asyncio.wait_for(session.screenshot(), self.screenshot_timeout))
                position += step
                if position >= total:
                    break

            await session.evaluate(SCROLL_TO_SCRIPT, 0)
            return shots
        except Exception as exc:  # noqa: BLE001 - fall back to a single viewport
            logger.warning(f"Chunked capture failed, trying viewport: {exc}")

        try:
            return [await asyncio.wait_for(session.screenshot(), self.screenshot_timeout)]
        except Exception as exc:  # noqa: BLE001
            logger.error(f"All screenshot methods failed: {exc}")
            return shots

    async def analyze_screenshot(self, image: bytes, context: ScrapeContext) -> List[Candidate]:
        prompt = product_extraction_prompt(context.category or "catalog")
        reply = await self.llm.analyze_image(image, prompt, max_tokens=self.max_tokens)
        products = self.parse_reply(reply)
        logger.info(f"Parsed {len(products)} products from vision reply")
        return products

    def parse_reply(self, reply: Optional[str]) -> List[Candidate]:
        products = []
        for raw in first_json_array(reply):
            candidate = self.normalize(raw)
            if candidate:
                products.append(candidate)
        return products

    def normalize(self, raw: Dict[str, Any]) -> Optional[Candidate]:
        name = clean_text(raw.get("name") or raw.get("title") or "", 200)
        if len(name) < self.min_name_length:
            return None
        if any(p.search(name) for p in INVALID_NAME_PATTERNS):
            return None

        price_text = raw.get("price")
        return {
            "name": name,
            "price": parse_price(price_text),
            "priceFormatted": str(price_text) if price_text is not None else None,
            "imageDescription": clean_text(raw.get("imageDescription") or raw.get("description") or ""),
            "imageUrl": None,
            "productUrl": None,
        }

    @staticmethod
    def deduplicate(products: List[Candidate]) -> List[Candidate]:
        seen: Dict[str, Candidate] = {}
        for product in products:
            key = clean_text(product.get("name")).lower()
            if key and key not in seen:
                seen[key] = product
        return list(seen.values())
