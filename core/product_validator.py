"""
Record validation for extracted product candidates.

Separates real listings from navigation links, category headers, policy pages
and UI chrome that card heuristics and vision models routinely pick up.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from utils.helpers import parse_price
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ValidationVerdict:
    """Result of validating one candidate."""

    valid: bool
    reason: Optional[str] = None


INVALID_NAME_PATTERNS = [
    # Help/info pages
    r"^products?\s+sizing$",
    r"^products?\s+recalls?$",
    r"^products?\s+information$",
    r"^sizing\s+(and|&)\s+stock$",
    r"^delivery\s+information$",
    r"^returns?\s+(policy|information)$",
    # Navigation
    r"^(home|shop now|menu|cart|bag|wishlist|account|login|sign in|search)$",
    r"^(filter|sort|view all|load more|show more|see all|back|next|close)$",
    # Category-only names
    r"^(women|men|kids|boys|girls|baby|unisex)$",
    r"^(tops?|bottoms?|dresses?|shoes?|bags?|accessories|clothing)$",
    r"^(new arrivals?|best sellers?|on sale|clearance|sale)$",
    # UI actions (prefix)
    r"^(add to|remove from|quick view|view details|see more)",
    r"^(size guide|delivery|returns|contact|help|faq)$",
    r"^(subscribe|newsletter|follow us)$",
    # Prices, numbers and sizes only
    r"^[$£€₦\d\s,.-]+$",
    r"^(xs|s|m|l|xl|xxl|\d+)$",
    r"^\d+\s*products?$",
    # Footer/policy pages
    r"^privacy\s*policy$",
    r"^terms\s*(and|&)\s*conditions$",
    r"^cookie\s*policy$",
]

INVALID_URL_PATTERNS = [
    r"/product-recalls",
    r"/products-sizing",
    r"/sizing-and-stock",
    r"/delivery-information",
    r"/returns-policy",
    r"/how-can-we-help",
    r"/customer-service",
    r"/help/",
    r"/faq",
    r"/about-us",
    r"/contact",
    r"/stores\b",
    r"/careers",
    r"/cart",
    r"/login",
    r"/account",
    r"/wishlist",
]


class ProductValidator:
    """Accepts or rejects candidate records. Pure: same input, same verdict."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.min_name_length = config.get("min_name_length", 5)
        self.max_name_length = config.get("max_name_length", 200)
        self.min_letter_count = config.get("min_letter_count", 3)
        self.min_price = config.get("min_price", 1)
        self.max_price = config.get("max_price", 10000)
        self.rejection_sample_size = config.get("rejection_sample_size", 10)

        self.invalid_name_patterns = [
            re.compile(p, re.IGNORECASE)
            for p in INVALID_NAME_PATTERNS + config.get("extra_invalid_names", [])
        ]
        self.invalid_url_patterns = [
            re.compile(p, re.IGNORECASE)
            for p in INVALID_URL_PATTERNS + config.get("extra_invalid_urls", [])
        ]

    def is_valid(self, candidate: Dict[str, Any]) -> ValidationVerdict:
        name = candidate.get("name") if isinstance(candidate, dict) else None
        if not name or not isinstance(name, str):
            return ValidationVerdict(False, "Missing name")

        name = name.strip()
        if len(name) < self.min_name_length:
            return ValidationVerdict(False, f'Name too short ({len(name)}): "{name}"')
        if len(name) > self.max_name_length:
            return ValidationVerdict(False, "Name too long")

        for pattern in self.invalid_name_patterns:
            if pattern.search(name):
                return ValidationVerdict(False, f'Matches invalid pattern: "{name}"')

        url_verdict = self._check_url(candidate.get("productUrl"))
        if url_verdict is not None:
            return url_verdict

        price = candidate.get("price")
        if isinstance(price, str):
            price = parse_price(price)
        if isinstance(price, (int, float)) and not isinstance(price, bool) and price == price:
            if price < self.min_price or price > self.max_price:
                return ValidationVerdict(False, f"Price out of range: {price}")

        letters = sum(1 for ch in name if ch.isalpha())
        if letters < self.min_letter_count:
            return ValidationVerdict(False, f'Too few letters ({letters}): "{name}"')

        return ValidationVerdict(True)

    def _check_url(self, url: Any) -> Optional[ValidationVerdict]:
        if not url:
            return None
        if not isinstance(url, str):
            return ValidationVerdict(False, f"Malformed URL: {url!r}")

        try:
            scheme = urlsplit(url).scheme.lower()
        except ValueError:
            return ValidationVerdict(False, f"Malformed URL: {url[:80]}")

        if scheme and scheme not in ("http", "https"):
            return ValidationVerdict(False, f"Invalid URL protocol: {scheme}")
        if not scheme and not url.startswith("/"):
            return ValidationVerdict(False, f"Malformed URL: {url[:80]}")

        for pattern in self.invalid_url_patterns:
            if pattern.search(url):
                return ValidationVerdict(False, f"Invalid URL: {url[:80]}")
        return None

    def filter_products(self, candidates: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """Keep valid candidates; log rejections in aggregate."""
        if not candidates:
            return []

        valid: List[Dict[str, Any]] = []
        rejected: List[Dict[str, Any]] = []
        for candidate in candidates:
            verdict = self.is_valid(candidate)
            if verdict.valid:
                valid.append(candidate)
            else:
                rejected.append(
                    {
                        "name": (candidate.get("name") or "") if isinstance(candidate, dict) else "",
                        "url": (candidate.get("productUrl") or "") if isinstance(candidate, dict) else "",
                        "reason": verdict.reason,
                    }
                )

        if rejected:
            logger.debug(f"Filtered out {len(rejected)} non-products:")
            for item in rejected[: self.rejection_sample_size]:
                logger.debug(f'  x "{str(item["name"])[:60]}" -> {item["reason"]}')
            if len(rejected) > self.rejection_sample_size:
                logger.debug(
                    f"  ... and {len(rejected) - self.rejection_sample_size} more filtered"
                )

        if not valid:
            logger.warning(
                f"ALL {len(candidates)} candidates were rejected; the extractor is likely "
                "misfiring. First 3 rejections:"
            )
            for item in rejected[:3]:
                logger.warning(
                    f'  x name="{str(item["name"])[:60]}" url="{str(item["url"])[:80]}" -> {item["reason"]}'
                )

        logger.info(f"Valid products: {len(valid)}/{len(candidates)}")
        return valid
