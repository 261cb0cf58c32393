"""Visual extraction over chunked screenshots."""

import json

import pytest

from extractors.vision_extractor import VisionExtractor, vision_confidence
from utils.error_handling import LLMBudgetExceededError, LLMError

from fakes import FakeLLM, FakeSession

FAST = {"settle_seconds": 0, "call_delay_seconds": 0}


def _reply(*names, price="$24.99"):
    return "Here you go:\n" + json.dumps(
        [{"name": name, "price": price, "imageDescription": f"{name} on a white background"} for name in names]
    )


@pytest.mark.asyncio
async def test_screenshots_are_taken_per_viewport_chunk(context):
    llm = FakeLLM(
        image_replies=[
            _reply("Vintage Band Graphic Tee", "Retro Sunset Logo Tee"),
            _reply("Retro Sunset Logo Tee", "Washed Black Tour Shirt"),
            _reply("Mountain Trail Print Tee"),
        ]
    )
    session = FakeSession("<html></html>", scroll_height=2000, viewport_height=800)

    result = await VisionExtractor(llm, FAST).extract(session, context)

    assert session.scroll_positions == [0, 640, 1280, 0]
    assert len(llm.images) == 3
    assert [p["name"] for p in result.products] == [
        "Vintage Band Graphic Tee",
        "Retro Sunset Logo Tee",
        "Washed Black Tour Shirt",
        "Mountain Trail Print Tee",
    ]
    assert result.products[0]["price"] == 24.99
    assert result.products[0]["productUrl"] is None
    assert result.method == "vision"
    assert result.confidence == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_short_pages_take_a_single_chunk(context):
    llm = FakeLLM(image_replies=[_reply("Vintage Band Graphic Tee")])
    session = FakeSession("<html></html>", scroll_height=600, viewport_height=800)

    result = await VisionExtractor(llm, FAST).extract(session, context, max_chunks=3)

    assert session.screenshots_taken == 1
    assert len(result.products) == 1


@pytest.mark.asyncio
async def test_without_language_model_nothing_is_captured(context):
    session = FakeSession("<html></html>")
    result = await VisionExtractor(None, FAST).extract(session, context)

    assert result.products == []
    assert result.error == "no language model"
    assert session.screenshots_taken == 0


@pytest.mark.asyncio
async def test_failed_chunk_does_not_sink_the_others(context):
    llm = FakeLLM(image_replies=[LLMError("timeout"), _reply("Retro Sunset Logo Tee"), "not json at all"])
    result = await VisionExtractor(llm, FAST).extract(FakeSession("<html></html>"), context)

    assert [p["name"] for p in result.products] == ["Retro Sunset Logo Tee"]


@pytest.mark.asyncio
async def test_budget_exhaustion_stops_further_calls(context):
    llm = FakeLLM(
        image_replies=[_reply("Retro Sunset Logo Tee"), LLMBudgetExceededError("spent"), _reply("Never Asked For")]
    )
    result = await VisionExtractor(llm, FAST).extract(FakeSession("<html></html>"), context)

    assert len(llm.images) == 2
    assert [p["name"] for p in result.products] == ["Retro Sunset Logo Tee"]


@pytest.mark.asyncio
async def test_no_screenshots_yields_empty_result(context):
    session = FakeSession("<html></html>", screenshot_bytes=None)
    result = await VisionExtractor(FakeLLM(), FAST).extract(session, context)

    assert result.products == []
    assert result.error == "no screenshots"


def test_reply_parsing_drops_ui_chrome():
    extractor = VisionExtractor(FakeLLM(), FAST)
    reply = json.dumps(
        [
            {"name": "Shop Now"},
            {"name": "Women"},
            {"name": "$29.99"},
            {"name": "Tee"},
            {"name": "Quick View: Band Tee"},
            {"title": "Neon Racing Stripe T-Shirt", "price": None},
        ]
    )
    products = extractor.parse_reply(reply)
    assert [p["name"] for p in products] == ["Neon Racing Stripe T-Shirt"]
    assert products[0]["price"] is None


def test_vision_confidence_weights():
    assert vision_confidence([]) == 0.0
    assert vision_confidence([{"name": "Retro Sunset Logo Tee", "price": None}]) == pytest.approx(0.5)
