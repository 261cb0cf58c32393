"""Language-model prompts used by the visual extractor and the healing cascade."""

SYSTEM_PROMPT = (
    "You are an expert web scraping assistant. Always respond with valid JSON "
    "when asked for structured data."
)

VISION_SYSTEM_PROMPT = (
    "You are an expert at analyzing e-commerce screenshots. Always respond with "
    "valid JSON arrays containing product data. Do not include any text before "
    "or after the JSON array."
)


def product_extraction_prompt(category: str = "catalog") -> str:
    return f"""You are a product data extractor for an e-commerce site.

Analyze this screenshot showing {category} products.

## CRITICAL: What IS a product
- Has a specific descriptive name like "Vintage Rock Band Graphic Tee" or "Oversized LA Print T-Shirt"
- Shows an actual item for sale with a visible image
- Usually has a price displayed

## CRITICAL: What is NOT a product (SKIP THESE)
- Navigation menu items (Home, Shop, Account, Cart)
- Category headers ("Women", "Tops", "Graphic Tees", "New Arrivals")
- Buttons or CTAs ("Shop Now", "View All", "Add to Bag", "Quick View")
- Promotional banners ("Free Shipping", "50% Off", "Sale")
- Page titles or section headers
- Footer links (About Us, Contact, Privacy Policy)
- Size/color selectors, filter or sort options

## Extract these fields for REAL PRODUCTS ONLY:
1. name: the specific product name, 5+ characters, describing one item rather than a category
2. price: the price with currency symbol (e.g. "$29.99"); the current price if several are shown; null if not visible
3. imageDescription: brief description of the product appearance (color, print, style)

## Quality check before including an item
Ask yourself: "Would a customer add THIS SPECIFIC ITEM to their cart?"
- YES: "Metallica World Tour '89 Graphic Tee"
- NO: "Shop Graphic Tees", "Women's Tops", "View All"

Return ONLY a valid JSON array:
[
  {{"name": "Metallica World Tour '89 Oversized Tee", "price": "$34.99", "imageDescription": "Black oversized t-shirt with vintage tour graphic"}}
]

If no valid products are visible, return: []
Return ONLY the JSON array. No explanation, no markdown."""


def healing_prompt(html: str, category: str = "catalog", max_chars: int = 30000) -> str:
    return f"""The automated extraction failed for this {category} product listing page.

Analyze this HTML and manually extract the products:

HTML (truncated):
{html[:max_chars]}

Find all products and extract:
- name: Product name
- price: Price string
- imageUrl: Full image URL (look for img src, data-src, or srcset)
- productUrl: Link to product page

Return a JSON array:
[
  {{"name": "Product Name", "price": "$29.99", "imageUrl": "https://...", "productUrl": "https://..."}}
]

If you cannot find products, return: []

Return ONLY the JSON array."""
