"""End-to-end control flow over in-memory sessions."""

import asyncio

import pytest

from core.orchestrator import ExtractionOrchestrator
from core.self_healer import ALTERNATIVE_SELECTOR_SETS, HealingResult
from core.site_registry import SiteConfig
from core.types import SitePattern
from utils.helpers import site_key

from fakes import FakeBrowser, FakeFirecrawl, FakeSession, healing_cards_html, product_grid_html

EMPTY_PAGE = "<html><head><title>Tees</title></head><body><p>Nothing to see here</p></body></html>"
BLOCK_PAGE = "<html><body><h1>Access Denied</h1><p>Reference #18.2f</p></body></html>"


class SlowSession(FakeSession):
    async def goto_and_settle(self, url):
        self.visits.append(url)
        await asyncio.sleep(5)


class CrashingSession(FakeSession):
    """Client-side redirect tears down the page between navigation and extraction."""

    async def evaluate(self, script, *args):
        raise RuntimeError("Execution context was destroyed, most likely because of a navigation")


class RecordingProgress:
    def __init__(self):
        self.updates = 0
        self.postfixes = []

    def update(self, n):
        self.updates += n

    def set_postfix_str(self, text):
        self.postfixes.append(text)


def _orchestrator(config, *sessions, firecrawl=None):
    return ExtractionOrchestrator(config, browser=FakeBrowser(*sessions), firecrawl=firecrawl)


@pytest.mark.asyncio
async def test_product_grid_end_to_end(fast_config, context):
    orchestrator = _orchestrator(fast_config, FakeSession(product_grid_html(10)))

    result = await orchestrator.scrape_site(context)

    assert result.success
    assert result.method == "dom-direct"
    assert result.strategy == "hybrid"
    assert result.renderer == "browser"
    assert len(result.records) == 10
    first = result.records[0]
    assert first.source == "Example Shop"
    assert first.category == "Men"
    assert first.extraction_method == "dom-direct"
    assert first.scraped_at is not None
    assert first.product_url == "https://shop.example.com/p/vintage-band-graphic-tee-1001"

    pattern = orchestrator.memory.get_pattern("Example Shop")
    assert pattern.strategy_name == "hybrid"
    assert pattern.confidence == pytest.approx(0.65)

    stats = orchestrator.get_statistics()
    assert stats["sites_attempted"] == 1
    assert stats["sites_succeeded"] == 1
    assert stats["products_accepted"] == 10
    assert stats["errors"] == {}


@pytest.mark.asyncio
async def test_thin_result_is_healed_and_learned(fast_config, context):
    orchestrator = _orchestrator(fast_config, FakeSession(healing_cards_html(4)))

    result = await orchestrator.scrape_site(context)

    assert result.success
    assert result.method == "healed:alternative-selectors"
    assert result.healed_stage == "alternative-selectors"
    assert len(result.records) == 4

    pattern = orchestrator.memory.get_pattern("Example Shop")
    assert pattern.strategy_name == "selectors"
    assert pattern.selector_set == ALTERNATIVE_SELECTOR_SETS[0]
    assert orchestrator.stats["healed"] == 1


@pytest.mark.asyncio
async def test_trusted_selector_pattern_is_replayed(fast_config, context):
    orchestrator = _orchestrator(fast_config, FakeSession(healing_cards_html(4)))
    orchestrator.memory.patterns[site_key("Example Shop")] = SitePattern(
        site="Example Shop",
        strategy_name="selectors",
        selector_set=dict(ALTERNATIVE_SELECTOR_SETS[0]),
        confidence=0.9,
    )

    result = await orchestrator.scrape_site(context)

    assert result.strategy == "selectors"
    assert result.healed_stage is None
    assert len(result.records) == 4
    assert orchestrator.memory.get_pattern("Example Shop").confidence == pytest.approx(0.93)


@pytest.mark.asyncio
async def test_navigation_is_retried(fast_config, context):
    session = FakeSession(product_grid_html(10), nav_failures=2)
    orchestrator = _orchestrator(fast_config, session)

    result = await orchestrator.scrape_site(context)

    assert result.success
    assert len(session.visits) == 3
    assert len(result.records) == 10


@pytest.mark.asyncio
async def test_navigation_failure_after_retries(fast_config, context):
    session = FakeSession(product_grid_html(10), nav_failures=10)
    orchestrator = _orchestrator(fast_config, session)

    result = await orchestrator.scrape_site(context)

    assert not result.success
    assert result.error_category == "navigation"
    assert result.records == []
    assert len(session.visits) == 3
    assert orchestrator.error_reporter.generate_report()["error_types"] == {"navigation": 1}


@pytest.mark.asyncio
async def test_blocked_errors_get_fewer_attempts(fast_config, context):
    session = FakeSession(product_grid_html(10), nav_failures=10, nav_error_type="blocked")
    result = await _orchestrator(fast_config, session).scrape_site(context)

    assert result.error_category == "navigation"
    assert len(session.visits) == 2


@pytest.mark.asyncio
async def test_site_timeout(fast_config, context):
    fast_config["agent"]["site_timeout_seconds"] = 0.05
    orchestrator = _orchestrator(fast_config, SlowSession(product_grid_html(10)))

    result = await orchestrator.scrape_site(context)

    assert not result.success
    assert result.error_category == "timeout"
    assert result.duration < 5


@pytest.mark.asyncio
async def test_empty_page_exhausts_the_cascade(fast_config, context):
    orchestrator = _orchestrator(fast_config, FakeSession(EMPTY_PAGE))

    result = await orchestrator.scrape_site(context)

    assert not result.success
    assert result.error_category == "cascade_exhausted"
    assert result.records == []
    assert orchestrator.memory.get_pattern("Example Shop") is None


@pytest.mark.asyncio
async def test_failure_lowers_a_known_pattern(fast_config, context):
    orchestrator = _orchestrator(fast_config, FakeSession(EMPTY_PAGE))
    orchestrator.memory.patterns[site_key("Example Shop")] = SitePattern(site="Example Shop", confidence=0.6)

    await orchestrator.scrape_site(context)

    pattern = orchestrator.memory.get_pattern("Example Shop")
    assert pattern.failure_count == 1
    assert pattern.confidence == pytest.approx(0.42)


def _recording_heal(orchestrator, monkeypatch):
    calls = []

    async def fake_heal(session, ctx, html=None):
        calls.append((ctx.category, ctx.heal_attempts))
        return HealingResult(success=False)

    monkeypatch.setattr(orchestrator.healer, "heal", fake_heal)
    return calls


@pytest.mark.asyncio
async def test_every_page_gets_its_own_healing_run(fast_config, monkeypatch):
    site = SiteConfig.model_validate(
        {
            "name": "Example Shop",
            "categories": [
                {"name": name, "url": f"https://shop.example.com/{name.lower()}/tees"}
                for name in ("Men", "Women", "Boys", "Girls")
            ],
        }
    )
    orchestrator = _orchestrator(fast_config, *(FakeSession(EMPTY_PAGE) for _ in range(4)))
    calls = _recording_heal(orchestrator, monkeypatch)

    results = await orchestrator.run([site])

    assert [category for category, _ in calls] == ["Men", "Women", "Boys", "Girls"]
    assert all(r.error_category == "cascade_exhausted" for r in results)


@pytest.mark.asyncio
async def test_healing_budget_spans_both_renderers(fast_config, context, monkeypatch):
    fast_config["agent"]["max_retries"] = 1
    orchestrator = _orchestrator(fast_config, FakeSession(EMPTY_PAGE), firecrawl=FakeFirecrawl(EMPTY_PAGE))
    calls = _recording_heal(orchestrator, monkeypatch)

    await orchestrator.scrape_site(context, remote_fallback=True)

    assert calls == [("Men", 1)]
    assert context.heal_attempts == 0


@pytest.mark.asyncio
async def test_page_script_crash_is_a_failed_result(fast_config, context):
    orchestrator = _orchestrator(fast_config, CrashingSession(product_grid_html(10)))

    result = await orchestrator.scrape_site(context)

    assert not result.success
    assert result.error_category == "scraper"
    assert "Execution context was destroyed" in result.error
    assert orchestrator.error_reporter.generate_report()["error_types"] == {"scraper": 1}


@pytest.mark.asyncio
async def test_a_crashing_site_does_not_stop_the_run(fast_config):
    sites = [
        SiteConfig.model_validate(
            {"name": name, "categories": [{"name": "Men", "url": f"https://{name.lower()}.example.com/men"}]}
        )
        for name in ("Broken", "Healthy")
    ]
    orchestrator = _orchestrator(fast_config, CrashingSession(product_grid_html(10)), FakeSession(product_grid_html(10)))

    results = await orchestrator.run(sites)

    assert [r.site for r in results] == ["Broken", "Healthy"]
    assert not results[0].success
    assert results[1].success
    assert len(results[1].records) == 10


@pytest.mark.asyncio
async def test_blocked_page_falls_back_to_remote_renderer(fast_config, context):
    firecrawl = FakeFirecrawl(product_grid_html(10))
    orchestrator = _orchestrator(fast_config, FakeSession(BLOCK_PAGE, title="Access Denied"), firecrawl=firecrawl)

    result = await orchestrator.scrape_site(context, remote_fallback=True)

    assert result.success
    assert result.renderer == "remote"
    assert len(result.records) == 10
    assert firecrawl.requested == [context.url]


@pytest.mark.asyncio
async def test_thin_browser_result_tries_remote_renderer(fast_config, context):
    firecrawl = FakeFirecrawl(product_grid_html(10))
    orchestrator = _orchestrator(fast_config, FakeSession(EMPTY_PAGE), firecrawl=firecrawl)

    result = await orchestrator.scrape_site(context, remote_fallback=True)

    assert result.renderer == "remote"
    assert len(result.records) == 10


@pytest.mark.asyncio
async def test_remote_fallback_needs_an_available_renderer(fast_config, context):
    firecrawl = FakeFirecrawl(product_grid_html(10), available=False)
    orchestrator = _orchestrator(fast_config, FakeSession(BLOCK_PAGE, title="Access Denied"), firecrawl=firecrawl)

    result = await orchestrator.scrape_site(context, remote_fallback=True)

    assert result.renderer == "browser"
    assert result.error_category == "cascade_exhausted"
    assert firecrawl.requested == []


@pytest.mark.asyncio
async def test_remote_only_sites_skip_the_browser(fast_config, context):
    orchestrator = ExtractionOrchestrator(fast_config, firecrawl=FakeFirecrawl(product_grid_html(5)))

    result = await orchestrator.scrape_site(context, use_remote=True)

    assert result.renderer == "remote"
    assert len(result.records) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("firecrawl", [None, FakeFirecrawl(None)])
async def test_remote_only_site_without_markup_fails(fast_config, context, firecrawl):
    orchestrator = ExtractionOrchestrator(fast_config, firecrawl=firecrawl)

    result = await orchestrator.scrape_site(context, use_remote=True)

    assert result.error_category == "navigation"


@pytest.mark.asyncio
async def test_run_walks_every_category(fast_config):
    site = SiteConfig.model_validate(
        {
            "name": "Example Shop",
            "categories": [
                {"name": "Men", "url": "https://shop.example.com/men/tees"},
                {"name": "Women", "url": "https://shop.example.com/women/tees", "category": "Women Tops"},
            ],
            "hints": {"wait_time_ms": 4000},
        }
    )
    browser = FakeBrowser(FakeSession(product_grid_html(10)), FakeSession(product_grid_html(6)))
    orchestrator = ExtractionOrchestrator(fast_config, browser=browser)
    progress = RecordingProgress()

    results = await orchestrator.run([site], progress)

    assert [r.category for r in results] == ["Men", "Women Tops"]
    assert [len(r.records) for r in results] == [10, 6]
    assert browser.hints == [{"wait_time_ms": 4000}, {"wait_time_ms": 4000}]
    assert progress.updates == 2
    assert progress.postfixes[-1] == "Example Shop: 6"


@pytest.mark.asyncio
async def test_shutdown_request_stops_new_sites(fast_config):
    site = SiteConfig.model_validate(
        {"name": "Example Shop", "categories": [{"name": "Men", "url": "https://shop.example.com/men"}]}
    )
    orchestrator = _orchestrator(fast_config, FakeSession(product_grid_html(10)))
    orchestrator.request_shutdown()

    assert await orchestrator.run([site]) == []
    assert orchestrator.shutdown_requested


@pytest.mark.asyncio
async def test_shutdown_flushes_memory_and_stops_browser(fast_config, context, tmp_path):
    browser = FakeBrowser(FakeSession(product_grid_html(10)))
    orchestrator = ExtractionOrchestrator(fast_config, browser=browser)
    await orchestrator.scrape_site(context)

    await orchestrator.shutdown()
    await orchestrator.shutdown()

    assert browser.stopped
    assert (tmp_path / "patterns" / "learned_patterns.json").exists()


def test_build_records_skips_unbuildable_candidates(fast_config, context):
    orchestrator = ExtractionOrchestrator(fast_config)
    products = [
        {"name": "Retro Sunset Logo Tee", "productUrl": "https://shop.example.com/p/retro-1003", "price": 12.0},
        {"name": "Retro Sunset Logo Tee again", "productUrl": "https://shop.example.com/p/retro-1003/"},
        {"name": "", "productUrl": "https://shop.example.com/p/blank"},
        {"productUrl": "https://shop.example.com/p/nameless"},
        {"name": "Odd Link Tee", "productUrl": "ftp://shop.example.com/p/odd"},
    ]

    records = orchestrator.build_records(context, products, "dom-direct")

    assert [r.name for r in records] == ["Retro Sunset Logo Tee"]
    assert records[0].price == 12.0
    assert records[0].extraction_method == "dom-direct"
