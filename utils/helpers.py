import re
import json
import hashlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit, unquote

# Configure logging
logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = "$£€₦¥₽"
CURRENCY_CODES = ("USD", "GBP", "EUR", "NGN", "CAD", "AUD")

_NUMBER = r"\d+(?:[.,]\d+)*"
_CURRENCY_PREFIXED = re.compile(
    rf"(?:[{CURRENCY_SYMBOLS}]|\b(?:{'|'.join(CURRENCY_CODES)}))\s*({_NUMBER})",
    re.IGNORECASE,
)
_CURRENCY_SUFFIXED = re.compile(
    rf"({_NUMBER})\s*(?:[{CURRENCY_SYMBOLS}]|(?:{'|'.join(CURRENCY_CODES)})\b)",
    re.IGNORECASE,
)
_PLAIN_NUMBER = re.compile(_NUMBER)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_TOKEN = re.compile(r"[a-z0-9]+")
_UNSUPPORTED_SCHEMES = ("javascript:", "mailto:", "tel:", "about:", "blob:")

MAX_TEXT_LENGTH = 500
MIN_INLINE_IMAGE_LENGTH = 500


def _normalize_number_token(token: str) -> Optional[float]:
    """Resolve grouping/decimal separators in a bare numeric token."""
    if "." in token and "," in token:
        if token.rfind(",") > token.rfind("."):
            # European grouping: 1.234,56
            token = token.replace(".", "").replace(",", ".")
        else:
            token = token.replace(",", "")
    elif "," in token:
        head, _, tail = token.rpartition(",")
        if token.count(",") == 1 and len(tail) == 2:
            token = f"{head}.{tail}"
        else:
            token = token.replace(",", "")
    elif token.count(".") > 1:
        token = token.replace(".", "")

    try:
        return round(float(token), 2)
    except ValueError:
        return None


def parse_price(price_text: Any) -> Optional[float]:
    """Parse a display price into a float rounded to 2 decimals.

    Currency-adjacent numbers win over bare ones so that "Save 20% - now £15.00"
    yields 15.0. Ranges ("$20-$40") resolve to their first bound.
    """
    if price_text is None or isinstance(price_text, bool):
        return None
    if isinstance(price_text, (int, float)):
        return round(float(price_text), 2)
    if not isinstance(price_text, str) or not price_text.strip():
        return None

    text = price_text.strip()
    match = (
        _CURRENCY_PREFIXED.search(text)
        or _CURRENCY_SUFFIXED.search(text)
        or _PLAIN_NUMBER.search(text)
    )
    if not match:
        return None

    token = match.group(1) if match.groups() else match.group(0)
    return _normalize_number_token(token)


def format_price(price: Optional[float], currency: str = "$") -> Optional[str]:
    """Format a numeric price for display."""
    if price is None:
        return None
    return f"{currency}{price:.2f}"


def clean_text(text: Any, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Trim, collapse whitespace, drop control characters and bound the length."""
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned[:max_length]


def normalize_url(url: Any, base_url: Optional[str] = None) -> Optional[str]:
    """Return an absolute https URL for *url*, or None when it cannot be resolved."""
    if not isinstance(url, str):
        return None

    candidate = url.strip()
    if not candidate or candidate.startswith("#"):
        return None
    if candidate.lower().startswith(_UNSUPPORTED_SCHEMES + ("data:",)):
        return None

    try:
        if candidate.startswith("//"):
            candidate = f"https:{candidate}"
        elif not urlsplit(candidate).scheme:
            if not base_url:
                return None
            candidate = urljoin(base_url, candidate)

        parts = urlsplit(candidate)
    except ValueError:
        logger.debug("Malformed URL skipped: %s", url)
        return None

    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None

    return urlunsplit(("https", parts.netloc, parts.path or "/", parts.query, parts.fragment))


def normalize_image_url(url: Any, base_url: Optional[str] = None) -> Optional[str]:
    """Like normalize_url, but also keeps inline images with real content."""
    if isinstance(url, str) and url.strip().lower().startswith("data:image"):
        inline = url.strip()
        return inline if len(inline) >= MIN_INLINE_IMAGE_LENGTH else None
    return normalize_url(url, base_url)


def canonical_product_url(url: Optional[str]) -> Optional[str]:
    """Origin plus path, lower-cased, without query, fragment or trailing slash."""
    if not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.netloc:
        return url.strip().lower().rstrip("/") or None
    return f"{parts.scheme}://{parts.netloc}{parts.path}".lower().rstrip("/")


def site_key(site: str) -> str:
    """Stable 12-character key for a site name."""
    return hashlib.md5(site.lower().encode("utf-8")).hexdigest()[:12]


def humanize_slug(url: Optional[str]) -> Optional[str]:
    """Recover a readable product name from the last meaningful URL path segment."""
    if not url:
        return None
    try:
        path = urlsplit(url).path
    except ValueError:
        return None

    segments = [unquote(s) for s in path.split("/") if s]
    for segment in reversed(segments):
        segment = re.sub(r"\.(html?|aspx|php)$", "", segment, flags=re.IGNORECASE)
        words = [
            word
            for word in re.split(r"[-_]+", segment)
            if word and not re.fullmatch(r"[a-z]{0,4}\d{3,}[a-z]?", word, re.IGNORECASE)
        ]
        if len(words) >= 2 and sum(len(w) for w in words) >= 5:
            return " ".join(word.capitalize() for word in words)
    return None


def _tokens(text: str) -> set:
    return set(_TOKEN.findall(text.lower()))


def fuzzy_match(first: Optional[str], second: Optional[str]) -> float:
    """Token-overlap similarity: shared tokens over the larger token count."""
    if not first or not second:
        return 0.0
    if clean_text(first).lower() == clean_text(second).lower():
        return 1.0

    tokens_a = _tokens(first)
    tokens_b = _tokens(second)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / max(len(tokens_a), len(tokens_b))


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def calculate_confidence(
    products: Iterable[Mapping[str, Any]],
    weights: Mapping[str, float],
    checks: Optional[Mapping[str, Callable[[Any], bool]]] = None,
) -> float:
    """Weighted completeness score of a batch, always within [0, 1].

    Each field in *weights* contributes its weight when present on a product
    (or when its entry in *checks* accepts the value). The weights are
    normalised by their sum so the score stays bounded whatever they add up to.
    """
    items: List[Mapping[str, Any]] = list(products)
    total_weight = sum(w for w in weights.values() if w > 0)
    if not items or total_weight <= 0:
        return 0.0

    checks = checks or {}
    score = 0.0
    for product in items:
        for field_name, weight in weights.items():
            if weight <= 0:
                continue
            value = product.get(field_name)
            check = checks.get(field_name, _is_present)
            if check(value):
                score += weight

    return max(0.0, min(1.0, score / (total_weight * len(items))))


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.lower().startswith(("http://", "https://"))


def first_json_array(text: Optional[str]) -> List[Dict[str, Any]]:
    """Return the first JSON array of objects embedded in a model reply."""
    if not text:
        return []

    start = text.find("[")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "[":
                depth += 1
            elif char == "]":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start : index + 1])
                    except ValueError:
                        break
                    if isinstance(parsed, list):
                        return [item for item in parsed if isinstance(item, dict)]
                    break
        start = text.find("[", start + 1)

    logger.debug("No JSON array found in reply (%d chars)", len(text))
    return []
