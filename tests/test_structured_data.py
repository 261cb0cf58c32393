"""JSON-LD and microdata extraction."""

import json

from extractors.structured_data import StructuredDataExtractor

from fakes import PRODUCT_NAMES, json_ld_html, microdata_html

BASE_URL = "https://shop.example.com/graphic-tees"


def _page_with_json_ld(payload) -> str:
    return (
        '<html><head><script type="application/ld+json">'
        f"{json.dumps(payload)}"
        "</script></head><body></body></html>"
    )


def test_item_list_products_are_extracted_with_high_confidence():
    result = StructuredDataExtractor().extract(json_ld_html(3), BASE_URL)

    assert [p["name"] for p in result.products] == PRODUCT_NAMES[:3]
    first = result.products[0]
    assert first["price"] == 24.0
    assert first["priceFormatted"] == "USD 24.00"
    assert first["imageUrl"] == "https://cdn.shop.example.com/images/vintage-band-graphic-tee.jpg"
    assert first["productUrl"] == "https://shop.example.com/product/vintage-band-graphic-tee"
    assert result.confidence >= 0.9
    assert result.method == "semantic"


def test_graph_and_type_lists_are_followed():
    payload = {
        "@context": "https://schema.org",
        "@graph": [
            {"@type": "WebPage", "name": "Tees"},
            {
                "@type": ["Product", "Thing"],
                "name": "Washed Black Tour Shirt",
                "image": {"@type": "ImageObject", "url": "/img/washed-black-tour-shirt.jpg"},
                "offers": [{"@type": "Offer", "lowPrice": 18}],
                "url": "/product/washed-black-tour-shirt",
            },
        ],
    }
    result = StructuredDataExtractor().extract(_page_with_json_ld(payload), BASE_URL)

    assert len(result.products) == 1
    product = result.products[0]
    assert product["price"] == 18.0
    assert product["imageUrl"] == "https://shop.example.com/img/washed-black-tour-shirt.jpg"
    assert product["productUrl"] == "https://shop.example.com/product/washed-black-tour-shirt"


def test_top_level_array_and_broken_blocks():
    html = (
        '<script type="application/ld+json">{not json</script>'
        '<script type="application/ld+json">'
        + json.dumps([{"@type": "Product", "name": "Retro Sunset Logo Tee"}, {"@type": "Product"}])
        + "</script>"
    )
    result = StructuredDataExtractor().extract(html, BASE_URL)
    assert [p["name"] for p in result.products] == ["Retro Sunset Logo Tee"]


def test_microdata_used_when_no_json_ld():
    extractor = StructuredDataExtractor()
    html = microdata_html(2)

    assert not extractor.has_schema_org(html)
    assert extractor.has_semantic_markup(html)

    result = extractor.extract(html, BASE_URL)
    assert [p["name"] for p in result.products] == PRODUCT_NAMES[:2]
    assert result.products[0]["price"] == 18.5
    assert result.products[0]["productUrl"] == "https://shop.example.com/product/vintage-band-graphic-tee"
    assert result.confidence >= 0.9


def test_stage_specific_extraction_keeps_sources_apart():
    extractor = StructuredDataExtractor()
    assert extractor.extract_schema_org_only(microdata_html(2), BASE_URL).products == []
    assert extractor.extract_microdata_only(json_ld_html(2), BASE_URL).products == []
    assert extractor.extract_microdata_only(microdata_html(2), BASE_URL).method == "semantic-html"


def test_nothing_published_means_zero_confidence():
    result = StructuredDataExtractor().extract("<html><body><p>Hello</p></body></html>", BASE_URL)
    assert result.products == []
    assert result.confidence == 0.0
