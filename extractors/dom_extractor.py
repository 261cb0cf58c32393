"""
Structural (DOM) extraction of product cards from rendered markup.

Works on the page's outerHTML with BeautifulSoup, so the same code serves the
live browser session, the remote-rendering fallback and test fixtures.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag

from core.types import Candidate, ExtractionResult, SelectorSet, STRATEGY_SELECTORS
from extractors.site_rules import ExtractionRule, GenericRule, SiteRuleRegistry
from utils.helpers import (
    calculate_confidence,
    canonical_product_url,
    clean_text,
    humanize_slug,
    is_http_url,
    normalize_image_url,
    normalize_url,
    parse_price,
)
from utils.logger import get_logger

logger = get_logger(__name__)


SKIP_URL_PATTERNS = [
    "how-can-we-help",
    "product-recalls",
    "products-sizing",
    "sizing-and-stock",
    "delivery-information",
    "returns-policy",
    "customer-service",
    "/help/",
    "/faq",
    "/about",
    "/contact",
    "/stores",
    "/careers",
    "/cart",
    "/login",
    "/account",
    "/wishlist",
    "/c/",
    "/category",
    "/sale/",
    "/collections/",
    "/page/",
    "/register",
]

SKIP_NAMES = [
    "products sizing",
    "product recalls",
    "sizing and stock",
    "delivery",
    "returns",
    "help",
    "contact",
    "view all",
    "see more",
    "load more",
    "add to wish list",
    "add to wishlist",
    "quick view",
]

PRICE_LINE_PATTERNS = [
    re.compile(r"^[$£€₦]\s*[\d,]+"),
    re.compile(r"^[\d,]+(?:\.\d+)?\s*[$£€₦]"),
]

BADGE_LINE_PATTERNS = [
    re.compile(r"^(PLUS|PETITE|TALL|MATERNITY|EXTENDED SIZES|\d+-\d+\s*(YEARS|YRS))$", re.I),
    re.compile(r"^(new|new in|sale|trending|limited|bestseller|low stock)$", re.I),
    re.compile(r"^(wishlist|add to bag|quick buy)$", re.I),
    re.compile(r"^\d+\s*colou?rs?$", re.I),
    re.compile(r"^(black|white|blue|red|green|pink|grey|gray|navy|cream)$", re.I),
    re.compile(r"^\(\d+.*\)$"),
]

IMAGE_PLACEHOLDER_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"placeholder",
        r"blank\.(gif|png|jpg)",
        r"spacer",
        r"loading",
        r"spinner",
        r"gr[ae]y\.",
        r"pixel\.",
        r"1x1",
        r"transparent",
        r"no-image",
        r"default-image",
        r"missing",
        r"coming-soon",
        r"swatch",
    )
]

LAZY_IMAGE_ATTRIBUTES = ("data-src", "data-lazy-src", "data-original")
SRCSET_ATTRIBUTES = ("srcset", "data-srcset")
BLOCK_TAGS = {
    "address", "article", "aside", "blockquote", "dd", "div", "dl", "dt",
    "figcaption", "figure", "footer", "h1", "h2", "h3", "h4", "h5", "h6",
    "header", "li", "main", "nav", "ol", "p", "section", "table", "td",
    "th", "tr", "ul", "button", "label",
}
INVISIBLE_TAGS = {"script", "style", "noscript", "svg", "template", "iframe"}

DOM_WEIGHTS = {"name": 0.25, "price": 0.2, "productUrl": 0.35, "imageUrl": 0.2}
DOM_CHECKS = {
    "name": lambda v: isinstance(v, str) and len(v) > 5,
    "productUrl": is_http_url,
    "imageUrl": is_http_url,
}


def dom_confidence(products: List[Candidate]) -> float:
    return calculate_confidence(products, DOM_WEIGHTS, DOM_CHECKS)


def dedupe_by_url(products: Iterable[Candidate]) -> List[Candidate]:
    """Keep the first candidate per normalized detail URL (name when URL-less)."""
    seen = set()
    unique: List[Candidate] = []
    for product in products:
        key = canonical_product_url(product.get("productUrl"))
        if key is None:
            key = f"name:{clean_text(product.get('name')).lower()}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(product)
    return unique


def visible_lines(element: Tag) -> List[str]:
    """Approximate innerText: one line per block element or <br>."""
    lines: List[str] = []
    buffer: List[str] = []

    def flush() -> None:
        text = clean_text(" ".join(buffer))
        if text:
            lines.append(text)
        buffer.clear()

    def walk(node: Any) -> None:
        for child in node.children:
            if isinstance(child, NavigableString):
                if type(child) is NavigableString:
                    buffer.append(str(child))
                continue
            if not isinstance(child, Tag) or child.name in INVISIBLE_TAGS:
                continue
            if child.name == "br":
                flush()
            elif child.name in BLOCK_TAGS:
                flush()
                walk(child)
                flush()
            else:
                walk(child)

    walk(element)
    flush()
    return lines


def _widest_srcset_candidate(srcset: str) -> Optional[str]:
    best: Tuple[float, Optional[str]] = (-1.0, None)
    for entry in srcset.split(","):
        parts = entry.strip().split()
        if not parts:
            continue
        width = 0.0
        if len(parts) > 1:
            descriptor = parts[1].lower()
            try:
                if descriptor.endswith("w"):
                    width = float(descriptor[:-1])
                elif descriptor.endswith("x"):
                    width = float(descriptor[:-1]) * 1000
            except ValueError:
                width = 0.0
        if width > best[0]:
            best = (width, parts[0])
    return best[1]


def _is_small_image(img: Tag, min_dimension: int) -> bool:
    for attr in ("width", "height"):
        value = img.get(attr)
        if value is None:
            continue
        match = re.match(r"\s*(\d+)", str(value))
        if match and int(match.group(1)) < min_dimension:
            return True
    return False


class DOMExtractor:
    """Site-aware and generic card extraction."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        registry: Optional[SiteRuleRegistry] = None,
    ):
        config = config or {}
        self.registry = registry or SiteRuleRegistry()
        self.min_name_length = config.get("min_name_length", 8)
        self.max_name_length = config.get("max_name_length", 200)
        self.min_image_url_length = config.get("min_image_url_length", 30)
        self.min_image_dimension = config.get("min_image_dimension", 50)
        self.skip_url_patterns = [p.lower() for p in config.get("skip_url_patterns", SKIP_URL_PATTERNS)]
        self.skip_names = [n.lower() for n in config.get("skip_names", SKIP_NAMES)]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(self, html: Any, base_url: str) -> ExtractionResult:
        """Extract with the rule registered for *base_url*'s host."""
        rule = self.registry.resolve(base_url)
        return self.extract_with_rule(html, base_url, rule)

    def extract_with_rule(self, html: Any, base_url: str, rule: ExtractionRule) -> ExtractionResult:
        soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html or "", "html.parser")

        results: List[Candidate] = []
        seen = set()
        errors = 0
        for element in soup.select(rule.element_selector):
            try:
                candidate = self._extract_card(element, base_url, rule, seen)
            except Exception as exc:  # noqa: BLE001 - one bad card must not sink the page
                errors += 1
                logger.debug(f"Card extraction failed: {exc}")
                continue
            if candidate:
                results.append(candidate)

        if errors:
            logger.warning(f"DOM extraction: {errors} element errors")

        products = dedupe_by_url(results)
        logger.info(f"DOM ({rule.name}) found {len(products)} unique products")
        return ExtractionResult(products=products, confidence=dom_confidence(products), method=f"dom-{rule.kind}")

    def extract_with_patterns(self, html: Any, base_url: str, selector_set: SelectorSet) -> ExtractionResult:
        """Apply an explicit selector set: the container selector with most matches wins."""
        soup = html if isinstance(html, BeautifulSoup) else BeautifulSoup(html or "", "html.parser")

        best_selector, best_containers = None, []
        for selector in (s.strip() for s in selector_set.get("container", "").split(",")):
            if not selector:
                continue
            try:
                containers = soup.select(selector)
            except Exception as exc:  # noqa: BLE001
                logger.debug(f"Container selector '{selector}' failed: {exc}")
                continue
            if len(containers) > len(best_containers):
                best_selector, best_containers = selector, containers

        if not best_containers:
            return ExtractionResult.empty(STRATEGY_SELECTORS)

        logger.debug(f"Selector set container '{best_selector}' matched {len(best_containers)}")
        products: List[Candidate] = []
        for container in best_containers:
            candidate = self._extract_with_selectors(container, base_url, selector_set)
            if candidate:
                products.append(candidate)

        products = dedupe_by_url(products)
        return ExtractionResult(products=products, confidence=dom_confidence(products), method=STRATEGY_SELECTORS)

    # ------------------------------------------------------------------
    # Card extraction
    # ------------------------------------------------------------------
    def _extract_card(
        self, element: Tag, base_url: str, rule: ExtractionRule, seen: set
    ) -> Optional[Candidate]:
        link = self._find_link(element, rule)
        if link is None:
            return None

        href = normalize_url(link.get("href"), base_url)
        if not href:
            return None
        product_url = href.split("#")[0].split("?")[0]

        key = canonical_product_url(product_url)
        if key in seen:
            return None

        lowered = product_url.lower()
        if any(pattern in lowered for pattern in self.skip_url_patterns):
            return None
        if not rule.is_product_url(product_url):
            return None

        container = self._find_container(element, rule)
        lines = visible_lines(container)
        name, price_text = self._name_and_price(lines)

        if rule.name_from_slug_first:
            name = self._slug_name(product_url, rule) or name
        if rule.name_selector:
            name_el = container.select_one(rule.name_selector)
            card_name = clean_text(name_el.get_text(" ")) if name_el else ""
            if len(card_name) >= 3:
                name = card_name
        if not name or len(name) < self.min_name_length:
            name = self._slug_name(product_url, rule) or name
        if not name or len(name) < 5:
            return None

        if not price_text:
            price_el = container.select_one('[class*="price"], [itemprop="price"]')
            if price_el is not None:
                price_lines = visible_lines(price_el) or [clean_text(price_el.get_text(" "))]
                price_text = price_lines[0] if price_lines else None

        product_id = rule.product_id(product_url)
        image_url = self._find_image(container, base_url, rule.preferred_image_host)
        if not image_url:
            image_url = rule.fallback_image(product_id)

        seen.add(key)
        candidate: Candidate = {
            "name": name,
            "price": parse_price(price_text),
            "priceFormatted": price_text or None,
            "imageUrl": image_url,
            "productUrl": product_url,
        }
        if product_id:
            candidate["productId"] = product_id
        return candidate

    def _find_link(self, element: Tag, rule: ExtractionRule) -> Optional[Tag]:
        if rule.link_selector:
            return element.select_one(rule.link_selector)
        if element.name == "a" and element.get("href"):
            return element
        return element.find("a", href=True)

    def _find_container(self, element: Tag, rule: ExtractionRule) -> Tag:
        """Links climb to the nearest card-like ancestor; containers stay put."""
        if element.name != "a" or self._looks_like_card(element, rule):
            return element

        container = element
        for _ in range(rule.climb_limit):
            parent = container.parent
            if parent is None or not isinstance(parent, Tag) or parent.name in ("body", "html", "[document]"):
                break
            container = parent
            if self._looks_like_card(container, rule):
                break
        return container

    @staticmethod
    def _looks_like_card(element: Tag, rule: ExtractionRule) -> bool:
        classes = " ".join(element.get("class") or []).lower()
        return any(hint in classes for hint in rule.card_class_hints)

    def _name_and_price(self, lines: List[str]) -> Tuple[Optional[str], Optional[str]]:
        name, price = None, None
        for line in lines:
            if any(p.match(line) for p in PRICE_LINE_PATTERNS):
                if price is None:
                    price = line
                continue
            if any(p.match(line) for p in BADGE_LINE_PATTERNS):
                continue
            lowered = line.lower()
            if any(skip in lowered for skip in self.skip_names):
                continue
            if name is None and self.min_name_length <= len(line) <= self.max_name_length:
                name = line
        return name, price

    @staticmethod
    def _slug_name(url: str, rule: ExtractionRule) -> Optional[str]:
        if rule.slug_pattern:
            match = re.search(rule.slug_pattern, url, re.IGNORECASE)
            if match:
                words = [w for w in match.group(1).split("-") if w]
                if words:
                    return " ".join(w.capitalize() for w in words)
        return humanize_slug(url)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def _usable_image(self, src: Optional[str], base_url: str) -> Optional[str]:
        if not src:
            return None
        src = src.strip()
        if src.lower().startswith("data:"):
            return normalize_image_url(src, base_url)
        if len(src) < self.min_image_url_length:
            return None
        if any(p.search(src) for p in IMAGE_PLACEHOLDER_PATTERNS):
            return None
        return normalize_image_url(src, base_url)

    def image_from_element(self, img: Tag, base_url: str) -> Optional[str]:
        """srcset (widest) first, then lazy-load attributes, then plain src."""
        if _is_small_image(img, self.min_image_dimension):
            return None

        for attr in SRCSET_ATTRIBUTES:
            srcset = img.get(attr)
            if srcset:
                url = self._usable_image(_widest_srcset_candidate(srcset), base_url)
                if url:
                    return url

        for attr in LAZY_IMAGE_ATTRIBUTES:
            url = self._usable_image(img.get(attr), base_url)
            if url:
                return url

        return self._usable_image(img.get("src"), base_url)

    def _find_image(self, container: Tag, base_url: str, preferred_host: Optional[str] = None) -> Optional[str]:
        images = container.find_all(["img", "source"])
        fallback = None
        for img in images:
            url = self.image_from_element(img, base_url)
            if not url:
                continue
            if preferred_host is None or preferred_host in url:
                return url
            fallback = fallback or url
        return fallback

    # ------------------------------------------------------------------
    # Explicit selector sets
    # ------------------------------------------------------------------
    def _extract_with_selectors(self, container: Tag, base_url: str, selector_set: SelectorSet) -> Optional[Candidate]:
        def pick(key: str) -> Optional[Tag]:
            selector = selector_set.get(key)
            if not selector:
                return None
            try:
                return container.select_one(selector)
            except Exception:  # noqa: BLE001
                return None

        name_el = pick("name")
        name = clean_text(name_el.get_text(" ")) if name_el else ""
        if not name:
            return None

        price_el = pick("price")
        price_text = clean_text(price_el.get_text(" ")) if price_el else None

        image_url = None
        image_el = pick("image")
        if image_el is not None:
            image_url = self.image_from_element(image_el, base_url)
        if not image_url:
            image_url = self._find_image(container, base_url)

        link_el = pick("link")
        if link_el is None and container.name == "a":
            link_el = container
        product_url = normalize_url(link_el.get("href"), base_url) if link_el is not None else None
        if product_url:
            product_url = product_url.split("#")[0]

        if not image_url and not product_url:
            return None

        return {
            "name": name,
            "price": parse_price(price_text),
            "priceFormatted": price_text or None,
            "imageUrl": image_url,
            "productUrl": product_url,
        }


__all__ = ["DOMExtractor", "GenericRule", "dedupe_by_url", "dom_confidence", "visible_lines"]
