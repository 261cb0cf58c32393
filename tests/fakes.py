"""In-memory collaborators and HTML fixtures for the extraction engine tests."""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from core.types import OUTER_HTML_SCRIPT, PAGE_METRICS_SCRIPT, SCROLL_TO_SCRIPT
from utils.error_handling import LLMError, NavigationError

PRODUCT_NAMES = [
    "Vintage Band Graphic Tee",
    "Oversized Skull Print T-Shirt",
    "Retro Sunset Logo Tee",
    "Washed Black Tour Shirt",
    "Cropped Floral Graphic Top",
    "Mountain Trail Print Tee",
    "Neon Racing Stripe T-Shirt",
    "Classic College Crest Tee",
    "Distressed Eagle Graphic Tee",
    "Pastel Butterfly Print Top",
]


def slugify(name: str) -> str:
    return "-".join(name.lower().replace("'", "").split())


def product_grid_html(count: int = 10, price: str = "$29.99") -> str:
    """Catalog page with `div.product-card` cards linking to /p/<slug>-<id>."""
    cards = []
    for index, name in enumerate(PRODUCT_NAMES[:count]):
        slug = slugify(name)
        cards.append(
            f"""
            <div class="product-card">
              <a href="/p/{slug}-{1001 + index}">
                <img src="https://cdn.shop.example.com/images/products/{slug}-{1001 + index}.jpg" alt="{name}">
                <h3>{name}</h3>
              </a>
              <span class="price">{price}</span>
            </div>"""
        )
    return f"""<html><head><title>Graphic Tees | Example Shop</title></head>
    <body>
      <nav><a href="/help/faq">Help</a><a href="/account">Account</a></nav>
      <main><div class="grid">{''.join(cards)}</div></main>
      <footer><a href="/about-us">About us</a></footer>
    </body></html>"""


def healing_cards_html(count: int = 4) -> str:
    """Cards only the alternative selector sets recognise (no /p/ links, no card classes)."""
    cards = []
    for name in PRODUCT_NAMES[:count]:
        slug = slugify(name)
        cards.append(
            f"""
            <div data-component="product">
              <a class="product-link" href="/shop/item/{slug}">
                <img class="product-image" src="https://cdn.shop.example.com/media/catalog/{slug}.jpg">
              </a>
              <h3 class="product-title">{name}</h3>
              <span class="product-price">$19.99</span>
            </div>"""
        )
    return f"""<html><head><title>New In</title></head>
    <body><section id="listing">{''.join(cards)}</section></body></html>"""


def json_ld_html(count: int = 3) -> str:
    items = []
    for index, name in enumerate(PRODUCT_NAMES[:count]):
        slug = slugify(name)
        items.append(
            f"""{{"@type": "ListItem", "position": {index + 1}, "item": {{
                "@type": "Product",
                "name": "{name}",
                "url": "https://shop.example.com/product/{slug}",
                "image": ["https://cdn.shop.example.com/images/{slug}.jpg"],
                "offers": {{"@type": "Offer", "price": "24.00", "priceCurrency": "USD"}}
            }}}}"""
        )
    return f"""<html><head><title>Tees</title>
    <script type="application/ld+json">
    {{"@context": "https://schema.org", "@type": "ItemList", "itemListElement": [{','.join(items)}]}}
    </script></head><body><p>Listing</p></body></html>"""


def microdata_html(count: int = 3) -> str:
    cards = []
    for name in PRODUCT_NAMES[:count]:
        slug = slugify(name)
        cards.append(
            f"""
            <div itemscope itemtype="https://schema.org/Product">
              <a itemprop="url" href="/product/{slug}"><span itemprop="name">{name}</span></a>
              <img itemprop="image" src="https://cdn.shop.example.com/images/{slug}.jpg">
              <span itemprop="price" content="18.50">$18.50</span>
            </div>"""
        )
    return f"<html><body>{''.join(cards)}</body></html>"


class FakeSession:
    """In-memory render session over fixture markup."""

    def __init__(
        self,
        html: str,
        url: str = "https://shop.example.com/graphic-tees",
        title: Optional[str] = None,
        nav_failures: int = 0,
        nav_error_type: str = "timeout",
        screenshot_bytes: Optional[bytes] = b"\xff\xd8jpeg",
        scroll_height: int = 2000,
        viewport_height: int = 800,
    ):
        self.html = html
        self.url = url
        self._title = title
        self.nav_failures = nav_failures
        self.nav_error_type = nav_error_type
        self.screenshot_bytes = screenshot_bytes
        self.scroll_height = scroll_height
        self.viewport_height = viewport_height
        self.visits: List[str] = []
        self.scroll_positions: List[int] = []
        self.screenshots_taken = 0

    async def goto_and_settle(self, url: str) -> None:
        self.visits.append(url)
        if self.nav_failures > 0:
            self.nav_failures -= 1
            raise NavigationError(f"Navigation timed out: {url}", {"url": url, "error_type": self.nav_error_type})

    async def screenshot(self) -> bytes:
        if self.screenshot_bytes is None:
            raise RuntimeError("screenshot unavailable")
        self.screenshots_taken += 1
        return self.screenshot_bytes

    async def evaluate(self, script: str, *args: Any) -> Any:
        if script == OUTER_HTML_SCRIPT:
            return self.html
        if script == PAGE_METRICS_SCRIPT:
            return {
                "scrollHeight": self.scroll_height,
                "viewportHeight": self.viewport_height,
                "viewportWidth": 1366,
            }
        if script == SCROLL_TO_SCRIPT:
            self.scroll_positions.append(args[0])
            return None
        return None

    async def title(self) -> str:
        if self._title is not None:
            return self._title
        return ""

    def current_url(self) -> str:
        return self.url


class FakeLLM:
    """Scripted language model: pops replies in order, raising those that are exceptions."""

    def __init__(self, replies: Optional[List[Any]] = None, image_replies: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.image_replies = list(image_replies or [])
        self.prompts: List[str] = []
        self.images: List[bytes] = []

    async def complete(self, prompt, *, max_tokens=2000, temperature=0.2, system_prompt=None):
        self.prompts.append(prompt)
        return self._next(self.replies)

    async def analyze_image(self, image, prompt, *, max_tokens=4000):
        self.images.append(image)
        self.prompts.append(prompt)
        return self._next(self.image_replies)

    @staticmethod
    def _next(queue: List[Any]) -> str:
        if not queue:
            raise LLMError("no scripted reply left")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeBrowser:
    """Serves pre-built sessions in the order pages are requested."""

    def __init__(self, *sessions: FakeSession):
        self.queue = list(sessions)
        self.hints: List[Optional[Dict[str, Any]]] = []
        self.stopped = False

    @asynccontextmanager
    async def page(self, hints: Optional[Dict[str, Any]] = None):
        self.hints.append(hints)
        yield self.queue.pop(0)

    async def stop(self) -> None:
        self.stopped = True


class FakeFirecrawl:
    def __init__(self, html: Optional[str], available: bool = True):
        self.html = html
        self._available = available
        self.requested: List[str] = []

    @property
    def available(self) -> bool:
        return self._available

    @property
    def requests_made(self) -> int:
        return len(self.requested)

    def scrape_html(self, url: str) -> Optional[str]:
        self.requested.append(url)
        return self.html
