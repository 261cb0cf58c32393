"""Value parsers and scoring helpers."""

import pytest

from utils.helpers import (
    calculate_confidence,
    canonical_product_url,
    clean_text,
    first_json_array,
    format_price,
    fuzzy_match,
    humanize_slug,
    normalize_image_url,
    normalize_url,
    parse_price,
    site_key,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$29.99", 29.99),
        ("£1,234.56", 1234.56),
        ("1.234,56 €", 1234.56),
        ("Save 20% - now £15.00", 15.0),
        ("$20-$40", 20.0),
        ("USD 45", 45.0),
        (12, 12.0),
        ("€12,50", 12.5),
        ("1,5 GBP", 15.0),
        ("£1,2345", 12345.0),
    ],
)
def test_parse_price_reads_display_prices(text, expected):
    assert parse_price(text) == expected


@pytest.mark.parametrize("currency", ["$", "£", "€", "₦"])
@pytest.mark.parametrize("value", [0.5, 9.99, 29.9, 1234.5, 9999.999])
def test_parse_price_reads_back_formatted_prices(value, currency):
    assert parse_price(format_price(value, currency)) == round(value, 2)


@pytest.mark.parametrize("text", [None, "", "   ", "Free", True])
def test_parse_price_returns_none_without_a_number(text):
    assert parse_price(text) is None


def test_format_price():
    assert format_price(29.9) == "$29.90"
    assert format_price(10, "£") == "£10.00"
    assert format_price(None) is None


def test_clean_text_collapses_whitespace_and_strips_control_chars():
    assert clean_text("  Hello \n\t world\x07 ") == "Hello world"
    assert clean_text(None) == ""
    assert clean_text("abcdef", 3) == "abc"


def test_normalize_url_resolves_and_forces_https():
    base = "https://shop.example.com/graphic-tees"
    assert normalize_url("/p/tee-1", base) == "https://shop.example.com/p/tee-1"
    assert normalize_url("//cdn.example.com/a.jpg") == "https://cdn.example.com/a.jpg"
    assert normalize_url("http://shop.example.com/a") == "https://shop.example.com/a"


@pytest.mark.parametrize("url", ["javascript:void(0)", "#top", "mailto:a@b.c", "", None, "/relative"])
def test_normalize_url_rejects_unusable_values(url):
    assert normalize_url(url) is None


def test_normalize_image_url_keeps_only_substantial_inline_images():
    assert normalize_image_url("data:image/gif;base64,R0lGOD") is None
    inline = "data:image/png;base64," + "A" * 600
    assert normalize_image_url(inline) == inline


def test_canonical_product_url_drops_query_fragment_and_trailing_slash():
    assert (
        canonical_product_url("https://Shop.Example.com/P/Tee/?color=red#reviews")
        == "https://shop.example.com/p/tee"
    )
    assert canonical_product_url(None) is None


def test_humanize_slug_skips_numeric_ids():
    assert humanize_slug("https://shop.example.com/p/vintage-band-tee-123456") == "Vintage Band Tee"
    assert humanize_slug("https://shop.example.com/123456") is None


def test_fuzzy_match_token_overlap():
    assert fuzzy_match("Vintage Band Tee", "vintage band tee") == 1.0
    assert fuzzy_match("Vintage Band Graphic Tee", "Band Tee") == 0.5
    assert fuzzy_match("Vintage Band Tee", "Floral Dress") == 0.0
    assert fuzzy_match(None, "Band Tee") == 0.0


def test_calculate_confidence_is_weighted_and_bounded():
    weights = {"name": 0.5, "price": 0.5}
    assert calculate_confidence([], weights) == 0.0
    assert calculate_confidence([{"name": "Tee", "price": 10}], weights) == 1.0
    assert calculate_confidence([{"name": "Tee"}], weights) == 0.5
    assert calculate_confidence([{"name": "Tee"}], {"name": 3.0, "price": 1.0}) == 0.75


def test_first_json_array_finds_array_in_chatty_reply():
    reply = 'Sure! Here are the products:\n```json\n[{"name": "Tee [Limited]"}, 3]\n```'
    assert first_json_array(reply) == [{"name": "Tee [Limited]"}]
    assert first_json_array("no products here") == []
    assert first_json_array(None) == []


def test_site_key_is_stable_and_case_insensitive():
    assert site_key("River Island") == site_key("river island")
    assert len(site_key("Next")) == 12
