"""
Per-domain extraction rules.

Each retailer with markup quirks gets a SiteAwareRule; every other host falls
back to the GenericRule. The registry resolves a rule once per page from the
page hostname, so the extractor itself never branches on site names.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

from utils.logger import get_logger

logger = get_logger(__name__)

GENERIC_ELEMENT_SELECTOR = (
    'a[href*="/p/"], a[href*="/product/"], a[href*="/pd/"], '
    ".product-tile, .product-card, [data-product-id]"
)
GENERIC_PRODUCT_URL = r"/p/|/product/|/pd/|/[A-Z]{2,4}\d{4,}\.html"
CARD_CLASS_HINTS = ("product", "card", "tile")


@dataclass(frozen=True)
class GenericRule:
    """Common product-card conventions shared by most storefronts."""

    name: str = "generic"
    element_selector: str = GENERIC_ELEMENT_SELECTOR
    link_selector: Optional[str] = None
    product_url_pattern: Optional[str] = GENERIC_PRODUCT_URL
    card_class_hints: Tuple[str, ...] = CARD_CLASS_HINTS
    climb_limit: int = 6
    id_pattern: Optional[str] = None
    image_template: Optional[str] = None
    slug_pattern: Optional[str] = r"/p/([a-z0-9-]+)-\d+"
    name_selector: Optional[str] = None
    name_from_slug_first: bool = False
    preferred_image_host: Optional[str] = None
    uppercase_id: bool = False

    @property
    def kind(self) -> str:
        return "generic"

    def product_id(self, url: str) -> Optional[str]:
        if not self.id_pattern:
            return None
        match = re.search(self.id_pattern, url, re.IGNORECASE)
        if not match:
            return None
        return match.group(1).upper() if self.uppercase_id else match.group(1)

    def fallback_image(self, product_id: Optional[str]) -> Optional[str]:
        if not self.image_template or not product_id:
            return None
        return self.image_template.format(id=product_id)

    def is_product_url(self, url: str) -> bool:
        if not self.product_url_pattern:
            return True
        return re.search(self.product_url_pattern, url, re.IGNORECASE) is not None


@dataclass(frozen=True)
class SiteAwareRule(GenericRule):
    """Hard-won markup knowledge for one retailer."""

    domains: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def kind(self) -> str:
        return "site"

    def matches(self, hostname: str) -> bool:
        hostname = hostname.lower()
        return any(hostname == d or hostname.endswith(f".{d}") for d in self.domains)


ExtractionRule = Union[SiteAwareRule, GenericRule]


DEFAULT_SITE_RULES: List[SiteAwareRule] = [
    SiteAwareRule(
        name="riverisland",
        domains=("riverisland.com",),
        element_selector='a[href*="/p/"]',
        product_url_pattern=r"/p/",
        card_class_hints=("card",),
        id_pattern=r"/p/[a-z0-9-]+-(\d{4,})",
        image_template=(
            "https://images.riverisland.com/image/upload/"
            "t_plp_portraitSmall/f_auto/q_auto/{id}_main"
        ),
    ),
    SiteAwareRule(
        name="boohooman",
        domains=("boohooman.com",),
        element_selector=".product-tile",
        link_selector='a[href*=".html"]',
        product_url_pattern=None,
        id_pattern=r"/([A-Z]{2,4}\d{4,})\.html",
        image_template="https://media.boohooman.com/i/boohooman/{id}_xl?fmt=auto",
        slug_pattern=r"/([a-z0-9-]+)/[A-Z]{2,4}\d+\.html",
        uppercase_id=True,
    ),
    SiteAwareRule(
        name="next",
        domains=("next.co.uk", "next.us", "nextdirect.com"),
        element_selector=(
            '[class*="MuiCard-root"], [data-testid*="product-card"], '
            '[class*="ProductCard"], article[class*="product"]'
        ),
        link_selector='a[href*="/style/"]',
        product_url_pattern=r"/style/",
        id_pattern=r"/([a-z]\d{5,})",
        image_template=(
            "https://xcdn.next.co.uk/Common/Items/Default/Default/ItemImages/"
            "3_4Ratio/SearchINT/Lge/{id}.jpg"
        ),
        preferred_image_host="xcdn.next.co.uk",
        uppercase_id=True,
    ),
    SiteAwareRule(
        name="abercrombie",
        domains=("abercrombie.com",),
        element_selector='a[href*="/p/"]',
        product_url_pattern=r"/p/",
        id_pattern=r"/p/[a-z0-9-]+?-(\d{6,})(?:\?|$)",
        slug_pattern=r"/p/([a-z0-9-]+?)(?:-\d{6,})?(?:\?|$)",
        name_selector=(
            '[class*="productName"], [class*="product-name"], '
            '[data-auto-id="product-name"]'
        ),
        name_from_slug_first=True,
    ),
]


class SiteRuleRegistry:
    """Maps a page hostname to its extraction rule."""

    def __init__(
        self,
        rules: Optional[List[SiteAwareRule]] = None,
        generic: Optional[GenericRule] = None,
    ):
        self.rules: List[SiteAwareRule] = list(rules if rules is not None else DEFAULT_SITE_RULES)
        self.generic = generic or GenericRule()
        self._cache: Dict[str, ExtractionRule] = {}

    def resolve(self, url: Optional[str]) -> ExtractionRule:
        try:
            hostname = (urlsplit(url or "").hostname or "").lower()
        except ValueError:
            hostname = ""

        if hostname in self._cache:
            return self._cache[hostname]

        rule: ExtractionRule = self.generic
        for candidate in self.rules:
            if hostname and candidate.matches(hostname):
                rule = candidate
                break

        self._cache[hostname] = rule
        logger.debug(f"Resolved extraction rule '{rule.name}' for host '{hostname or '?'}'")
        return rule
