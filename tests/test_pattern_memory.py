"""Learned per-site patterns: confidence, relearning and persistence."""

import json

import pytest

from core.pattern_memory import ExtractionHistory, PatternMemory
from core.types import ScrapeContext
from utils.helpers import site_key

PRODUCTS = [{"name": f"Graphic Tee {i}"} for i in range(10)]


@pytest.fixture
def memory(tmp_path):
    return PatternMemory({"path": str(tmp_path / "patterns.json"), "save_every": 0})


def test_first_success_blends_with_initial_confidence(memory, context):
    pattern = memory.record_success(context, "hybrid", PRODUCTS)

    assert pattern.confidence == pytest.approx(0.65)
    assert pattern.success_count == 1
    assert pattern.avg_product_count == 10
    assert memory.get_pattern("Example Shop") is pattern
    assert site_key("Example Shop") in memory.patterns


def test_confidence_rises_and_averages_roll(memory, context):
    memory.record_success(context, "hybrid", PRODUCTS)
    pattern = memory.record_success(context, "selectors", PRODUCTS[:4], {"container": ".tile"})

    assert pattern.confidence == pytest.approx(0.3 + 0.7 * 0.65)
    assert pattern.avg_product_count == pytest.approx(7.0)
    assert pattern.strategy_name == "selectors"
    assert pattern.selector_set == {"container": ".tile"}


def test_failure_on_unknown_site_creates_nothing(memory, context):
    assert memory.record_failure(context, "boom") is None
    assert memory.patterns == {}
    assert memory.history.get_for_site("Example Shop")[0]["success"] is False


def test_repeated_failures_flag_relearning(memory, context):
    memory.record_success(context, "semantic", PRODUCTS)

    for _ in range(3):
        pattern = memory.record_failure(context, "no products")
    assert pattern.failure_count == 3
    assert not pattern.needs_relearning

    pattern = memory.record_failure(context, "no products")
    assert pattern.confidence == pytest.approx(0.65 * 0.7 ** 4)
    assert pattern.needs_relearning
    assert pattern.last_error == "no products"

    pattern = memory.record_success(context, "semantic", PRODUCTS)
    assert not pattern.needs_relearning
    assert pattern.failure_count == 4


def test_failures_never_push_confidence_below_zero(memory, context):
    memory.record_success(context, "hybrid", PRODUCTS)
    for _ in range(50):
        pattern = memory.record_failure(context, RuntimeError("gone"))
    assert 0.0 <= pattern.confidence < 0.01


def test_round_trip(tmp_path, context):
    path = tmp_path / "nested" / "patterns.json"
    memory = PatternMemory({"path": str(path)})
    memory.record_success(context, "selectors", PRODUCTS, {"container": ".tile", "name": "h3"})

    assert memory.save().ok
    assert json.loads(path.read_text())[site_key("Example Shop")]["strategy_name"] == "selectors"

    restored = PatternMemory({"path": str(path)})
    assert restored.load().ok
    pattern = restored.get_pattern("Example Shop")
    assert pattern.selector_set == {"container": ".tile", "name": "h3"}
    assert pattern.confidence == pytest.approx(0.65)
    assert len(restored.history.entries) == 1


def test_saves_every_few_successes(tmp_path, context):
    path = tmp_path / "patterns.json"
    memory = PatternMemory({"path": str(path), "save_every": 2})

    memory.record_success(context, "hybrid", PRODUCTS)
    assert not path.exists()
    memory.record_success(context, "hybrid", PRODUCTS)
    assert path.exists()


def test_missing_file_loads_empty(memory):
    result = memory.load()
    assert result.ok
    assert memory.patterns == {}


def test_corrupt_file_is_reported_not_raised(tmp_path):
    path = tmp_path / "patterns.json"
    path.write_text("{not json")
    memory = PatternMemory({"path": str(path)})

    result = memory.load()

    assert not result.ok
    assert result.error
    assert memory.patterns == {}


def test_unwritable_location_is_reported_not_raised(tmp_path, context):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be")
    memory = PatternMemory({"path": str(blocker / "patterns.json"), "save_every": 0})
    memory.record_success(context, "hybrid", PRODUCTS)

    result = memory.save()

    assert not result.ok
    assert result.path == str(blocker / "patterns.json")


def test_list_and_clear(memory, context):
    memory.record_success(context, "hybrid", PRODUCTS)
    memory.record_success(ScrapeContext(site="Another Shop", url="https://another.example.com/"), "semantic", PRODUCTS)

    assert [p.site for p in memory.list_patterns()] == ["Another Shop", "Example Shop"]
    assert memory.clear("Example Shop") == 1
    assert memory.clear("Example Shop") == 0
    assert memory.clear() == 1


def test_history_is_bounded(tmp_path):
    history = ExtractionHistory(tmp_path / "history.json", max_entries=3)
    for i in range(5):
        history.add({"site": "Example Shop", "products": i})

    assert [e["products"] for e in history.entries] == [2, 3, 4]
    assert history.get_recent(2)[-1]["products"] == 4
    assert history.save().ok

    reloaded = ExtractionHistory(tmp_path / "history.json", max_entries=2)
    reloaded.load()
    assert [e["products"] for e in reloaded.entries] == [3, 4]
