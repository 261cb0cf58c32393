"""
Structured-data extraction: JSON-LD blocks and schema.org microdata.

Published metadata needs no heuristics, so results found here carry high
confidence regardless of how the page is styled.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup, Tag

from core.types import Candidate, ExtractionResult, STAGE_SCHEMA_ORG, STAGE_SEMANTIC_HTML
from utils.helpers import (
    calculate_confidence,
    clean_text,
    normalize_image_url,
    normalize_url,
    parse_price,
)
from utils.logger import get_logger

logger = get_logger(__name__)

BASE_WEIGHTS = {"name": 0.3, "price": 0.2, "imageUrl": 0.3, "productUrl": 0.2}
PUBLISHED_DATA_FLOOR = 0.9


def _as_soup(html_or_soup: Any) -> BeautifulSoup:
    if isinstance(html_or_soup, BeautifulSoup):
        return html_or_soup
    return BeautifulSoup(html_or_soup or "", "html.parser")


def _has_type(node: Dict[str, Any], type_name: str) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return any(str(t).split("/")[-1] == type_name for t in node_type)
    return isinstance(node_type, str) and node_type.split("/")[-1] == type_name


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def published_confidence(products: List[Candidate]) -> float:
    """High floor for owner-published data, topped up by completeness."""
    if not products:
        return 0.0
    completeness = calculate_confidence(products, BASE_WEIGHTS)
    return PUBLISHED_DATA_FLOOR + (1 - PUBLISHED_DATA_FLOOR) * completeness


class StructuredDataExtractor:
    """Pulls candidates out of JSON-LD and microdata."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.max_products = self.config.get("max_products", 500)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------
    def has_schema_org(self, html: Any) -> bool:
        soup = _as_soup(html)
        return any(self._iter_product_nodes(soup))

    def has_semantic_markup(self, html: Any) -> bool:
        soup = _as_soup(html)
        return soup.select_one('[itemtype*="Product"]') is not None

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def extract(self, html: Any, base_url: Optional[str] = None) -> ExtractionResult:
        """JSON-LD first, microdata when the page publishes none."""
        soup = _as_soup(html)
        products = self.extract_json_ld(soup, base_url)
        if products:
            logger.info(f"Found {len(products)} products via Schema.org")
        else:
            products = self.extract_microdata(soup, base_url)
            if products:
                logger.info(f"Found {len(products)} products via microdata")

        return ExtractionResult(
            products=products,
            confidence=published_confidence(products),
            method="semantic",
        )

    def extract_schema_org_only(self, html: Any, base_url: Optional[str] = None) -> ExtractionResult:
        products = self.extract_json_ld(_as_soup(html), base_url)
        return ExtractionResult(products, published_confidence(products), STAGE_SCHEMA_ORG)

    def extract_microdata_only(self, html: Any, base_url: Optional[str] = None) -> ExtractionResult:
        products = self.extract_microdata(_as_soup(html), base_url)
        return ExtractionResult(products, published_confidence(products), STAGE_SEMANTIC_HTML)

    def extract_json_ld(self, soup: BeautifulSoup, base_url: Optional[str] = None) -> List[Candidate]:
        products: List[Candidate] = []
        for node in self._iter_product_nodes(soup):
            candidate = self._product_from_json_ld(node, base_url)
            if candidate:
                products.append(candidate)
            if len(products) >= self.max_products:
                break
        return products

    def extract_microdata(self, soup: BeautifulSoup, base_url: Optional[str] = None) -> List[Candidate]:
        products: List[Candidate] = []
        for element in soup.select('[itemtype*="Product"]'):
            candidate = self._product_from_microdata(element, base_url)
            if candidate:
                products.append(candidate)
            if len(products) >= self.max_products:
                break
        return products

    # ------------------------------------------------------------------
    # JSON-LD
    # ------------------------------------------------------------------
    def _iter_json_ld_blocks(self, soup: BeautifulSoup) -> Iterable[Any]:
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            raw = script.string or script.get_text() or ""
            if not raw.strip():
                continue
            try:
                yield json.loads(raw)
            except ValueError as exc:
                logger.debug(f"Skipping unparsable JSON-LD block: {exc}")

    def _iter_product_nodes(self, soup: BeautifulSoup) -> Iterable[Dict[str, Any]]:
        for block in self._iter_json_ld_blocks(soup):
            yield from self._walk(block)

    def _walk(self, data: Any) -> Iterable[Dict[str, Any]]:
        if isinstance(data, list):
            for item in data:
                yield from self._walk(item)
            return
        if not isinstance(data, dict):
            return

        if _has_type(data, "Product"):
            yield data
        elif _has_type(data, "ItemList"):
            for element in data.get("itemListElement") or []:
                if isinstance(element, dict):
                    item = element.get("item", element)
                    if isinstance(item, dict) and _has_type(item, "Product"):
                        yield item

        graph = data.get("@graph")
        if isinstance(graph, list):
            for item in graph:
                yield from self._walk(item)

    def _product_from_json_ld(self, node: Dict[str, Any], base_url: Optional[str]) -> Optional[Candidate]:
        name = clean_text(node.get("name"))
        if not name:
            return None

        offers = _first(node.get("offers")) or {}
        price_value = None
        currency = None
        if isinstance(offers, dict):
            price_value = offers.get("price", offers.get("lowPrice"))
            currency = offers.get("priceCurrency")

        image = _first(node.get("image"))
        if isinstance(image, dict):
            image = image.get("url") or image.get("contentUrl")

        url = node.get("url") or (offers.get("url") if isinstance(offers, dict) else None)

        price = parse_price(price_value) if price_value is not None else None
        return {
            "name": name,
            "price": price,
            "priceFormatted": f"{currency} {price_value}" if currency and price_value is not None else (
                str(price_value) if price_value is not None else None
            ),
            "imageUrl": normalize_image_url(image, base_url),
            "productUrl": normalize_url(url, base_url),
            "sku": node.get("sku"),
        }

    # ------------------------------------------------------------------
    # Microdata
    # ------------------------------------------------------------------
    @staticmethod
    def _prop(element: Tag, prop: str) -> Optional[Tag]:
        return element.select_one(f'[itemprop="{prop}"]')

    def _product_from_microdata(self, element: Tag, base_url: Optional[str]) -> Optional[Candidate]:
        name_el = self._prop(element, "name")
        name = clean_text(name_el.get("content") or name_el.get_text()) if name_el else ""
        if not name:
            return None

        price_el = self._prop(element, "price")
        price_text = None
        if price_el is not None:
            price_text = clean_text(price_el.get_text()) or price_el.get("content")

        image_el = self._prop(element, "image")
        image = None
        if image_el is not None:
            image = image_el.get("src") or image_el.get("content") or image_el.get("href")

        url_el = self._prop(element, "url")
        url = None
        if url_el is not None:
            url = url_el.get("href") or url_el.get("content")
        if not url:
            anchor = element.find("a", href=True)
            url = anchor["href"] if anchor else None

        return {
            "name": name,
            "price": parse_price(price_text),
            "priceFormatted": price_text,
            "imageUrl": normalize_image_url(image, base_url),
            "productUrl": normalize_url(url, base_url),
        }
