"""
Per-site control flow.

One catalog page at a time: navigate (with backoff), analyze, pick a
strategy, extract, validate, heal when the result is thin, then stamp
provenance on what survived and teach Pattern Memory what worked.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from core.browser_manager import BrowserManager
from core.exponential_backoff import ExponentialBackoff
from core.pattern_memory import PatternMemory
from core.product_validator import ProductValidator
from core.self_healer import SelfHealer
from core.site_registry import SiteConfig
from core.strategies import BaseStrategy, enrich_with_dom
from core.strategy_selector import StrategySelector
from core.types import (
    Candidate,
    ExtractionResult,
    LanguageModel,
    PageAnalysis,
    ProductRecord,
    RenderSession,
    ScrapeContext,
    SelectorSet,
    STAGE_ALTERNATIVE_SELECTORS,
    STAGE_SCHEMA_ORG,
    STAGE_SEMANTIC_HTML,
    STRATEGY_HYBRID,
    STRATEGY_SELECTORS,
    STRATEGY_SEMANTIC,
    page_html,
)
from extractors.dom_extractor import DOMExtractor
from extractors.site_rules import SiteRuleRegistry
from extractors.structured_data import StructuredDataExtractor
from extractors.vision_extractor import VisionExtractor
from network.firecrawl_client import FirecrawlClient, StaticHtmlSession
from network.llm_client import LLMClient
from utils.error_handling import (
    CascadeExhaustedError,
    ErrorReporter,
    NavigationError,
    ScraperError,
    ScrapeTimeoutError,
)
from utils.helpers import is_http_url
from utils.logger import get_logger, log_extraction_event

logger = get_logger(__name__)

# Healing stages map onto the strategy that replays them next time
STAGE_STRATEGIES = {
    STAGE_ALTERNATIVE_SELECTORS: STRATEGY_SELECTORS,
    STAGE_SEMANTIC_HTML: STRATEGY_SEMANTIC,
    STAGE_SCHEMA_ORG: STRATEGY_SEMANTIC,
}


@dataclass
class ValidatedProducts:
    """What survived validation (and possibly healing) for one page."""

    products: List[Candidate]
    method: str
    healed_stage: Optional[str] = None
    selector_set: Optional[SelectorSet] = None
    cascade_exhausted: bool = False


@dataclass
class SiteScrapeResult:
    site: str
    category: Optional[str]
    url: str
    records: List[ProductRecord] = field(default_factory=list)
    method: str = ""
    strategy: Optional[str] = None
    healed_stage: Optional[str] = None
    renderer: str = "browser"
    error: Optional[str] = None
    error_category: Optional[str] = None
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def summary(self) -> Dict[str, Any]:
        return {
            "site": self.site,
            "category": self.category,
            "products": len(self.records),
            "method": self.method,
            "strategy": self.strategy,
            "healed_stage": self.healed_stage,
            "renderer": self.renderer,
            "error": self.error,
            "duration": round(self.duration, 2),
        }


class ExtractionOrchestrator:
    """
    Drives the extraction engine over registered sites.

    Collaborators (browser, language model, remote renderer, pattern memory)
    are injected so tests can hand in in-memory fakes; `from_config` builds
    the real ones.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        browser: Optional[Any] = None,
        llm: Optional[LanguageModel] = None,
        memory: Optional[PatternMemory] = None,
        firecrawl: Optional[FirecrawlClient] = None,
        error_reporter: Optional[ErrorReporter] = None,
    ):
        self.config = config or {}
        self._init_settings()
        self._init_extractors(llm)

        self.browser = browser
        self.memory = memory if memory is not None else PatternMemory(self.config.get("pattern_memory", {}))
        self.firecrawl = firecrawl
        self.error_reporter = error_reporter or ErrorReporter()
        self.backoff = ExponentialBackoff(self.config.get("retry", {}))

        self._shutdown_requested = False
        self._closed = False
        self.stats: Dict[str, int] = defaultdict(int)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ExtractionOrchestrator":
        """Wire the production collaborators from the settings sections."""
        return cls(
            config,
            browser=BrowserManager(config.get("browser", {})),
            llm=LLMClient.from_config(config.get("llm", {})),
            firecrawl=FirecrawlClient(config.get("firecrawl", {})),
        )

    def _init_settings(self) -> None:
        agent = self.config.get("agent", {})
        self.confidence_threshold = agent.get("confidence_threshold", 0.7)
        self.url_coverage_ratio = agent.get("url_coverage_ratio", 0.5)
        self.max_retries = agent.get("max_retries", 3)
        self.site_timeout = agent.get("site_timeout_seconds", 120)
        self.enrich_threshold = agent.get("enrich_fuzzy_threshold", 0.4)
        self.min_products_before_remote = agent.get("min_products_before_remote", 1)
        self.delay_between_sites = agent.get("delay_between_sites_seconds", 0)

    def _init_extractors(self, llm: Optional[LanguageModel]) -> None:
        self.llm = llm
        self.validator = ProductValidator(self.config.get("validator", {}))
        self.structured = StructuredDataExtractor(self.config.get("structured_data", {}))
        self.dom = DOMExtractor(self.config.get("dom", {}), SiteRuleRegistry())
        self.vision = VisionExtractor(llm, self.config.get("vision", {}))
        self.selector = StrategySelector(
            self.dom,
            self.structured,
            self.vision,
            self.validator,
            self.config.get("strategy", {}),
            self.config.get("hybrid", {}),
        )
        self.healer = SelfHealer(
            self.dom, self.structured, self.validator, llm, self.config.get("healing", {})
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        result = self.memory.load()
        if not result.ok:
            logger.warning(f"Starting with empty pattern memory: {result.error}")
        logger.info(
            f"Orchestrator ready (llm={'yes' if self.llm else 'no'}, "
            f"remote renderer={'yes' if self._remote_available() else 'no'})"
        )

    def request_shutdown(self) -> None:
        """Stop starting new site scrapes; the one in flight finishes or times out."""
        if not self._shutdown_requested:
            logger.warning("Shutdown requested; no new sites will be started")
        self._shutdown_requested = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    async def shutdown(self) -> None:
        """Flush pattern memory, then release the browser."""
        if self._closed:
            return
        self._closed = True
        self._shutdown_requested = True

        result = self.memory.save()
        if not result.ok:
            logger.error(f"Pattern memory flush failed: {result.error}")

        if self.browser is not None:
            try:
                await self.browser.stop()
            except Exception as exc:  # noqa: BLE001 - shutdown must finish
                logger.error(f"Browser shutdown failed: {exc}")

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    async def run(self, sites: Iterable[SiteConfig], progress: Optional[Any] = None) -> List[SiteScrapeResult]:
        results: List[SiteScrapeResult] = []
        for index, site in enumerate(sites):
            if self._shutdown_requested:
                logger.info(f"Skipping {site.name}: shutdown in progress")
                break
            if index and self.delay_between_sites:
                await asyncio.sleep(self.delay_between_sites)

            for context in site.contexts():
                if self._shutdown_requested:
                    break
                result = await self.scrape_site(
                    context,
                    use_remote=site.use_remote_renderer,
                    remote_fallback=site.remote_fallback,
                )
                results.append(result)
                if progress is not None:
                    progress.update(1)
                    progress.set_postfix_str(f"{site.name}: {len(result.records)}")
        return results

    async def scrape_site(
        self,
        context: ScrapeContext,
        *,
        use_remote: bool = False,
        remote_fallback: bool = False,
    ) -> SiteScrapeResult:
        """Scrape one catalog page under the per-site timeout; never raises."""
        start = time.monotonic()
        logger.info(f"Scraping {context.site} / {context.category}: {context.url}")
        self.stats["sites_attempted"] += 1
        # Every scrape gets its own healing budget
        context = replace(context, heal_attempts=0)

        try:
            result = await asyncio.wait_for(
                self._scrape(context, use_remote, remote_fallback), timeout=self.site_timeout
            )
        except asyncio.TimeoutError:
            error = ScrapeTimeoutError(
                f"Scrape of {context.site} exceeded {self.site_timeout}s",
                {"site": context.site, "url": context.url},
            )
            result = self._failed(context, error)
        except ScraperError as exc:
            result = self._failed(context, exc)
        except Exception as exc:  # noqa: BLE001 - one broken page must not end the run
            logger.exception(f"Unexpected error while scraping {context.site}")
            error = ScraperError(
                f"Unexpected {type(exc).__name__}: {exc}",
                {"site": context.site, "url": context.url},
            )
            result = self._failed(context, error)

        result.duration = time.monotonic() - start
        self.stats["products_accepted"] += len(result.records)
        if result.success:
            self.stats["sites_succeeded"] += 1
        logger.info(
            f"{context.site} / {context.category}: {len(result.records)} products "
            f"via {result.method or 'nothing'} in {result.duration:.1f}s"
        )
        return result

    def _failed(self, context: ScrapeContext, error: ScraperError) -> SiteScrapeResult:
        logger.error(f"{context.site} failed: {error}")
        self.error_reporter.report_error(error, {"site": context.site, "category": context.category})
        self.memory.record_failure(context, error)
        return SiteScrapeResult(
            site=context.site,
            category=context.category,
            url=context.url,
            error=str(error),
            error_category=error.category,
        )

    async def _scrape(self, context: ScrapeContext, use_remote: bool, remote_fallback: bool) -> SiteScrapeResult:
        if use_remote:
            return await self.scrape_remote(context, "configured")

        if self.browser is None:
            raise NavigationError("No render collaborator configured", {"site": context.site})

        async with self.browser.page(context.hints) as session:
            await self.navigate(session, context)
            html = await page_html(session)
            analysis = self.selector.analyze_page(html, await session.title())

            if analysis.blocked and remote_fallback and self._remote_available():
                logger.warning(f"{context.site} is blocked in the browser; trying remote renderer")
                return await self.scrape_remote(context, "blocked")

            result = await self.scrape_page(session, context, html, analysis)

        if (
            remote_fallback
            and len(result.records) < self.min_products_before_remote
            and self._remote_available()
        ):
            logger.warning(f"{context.site}: {len(result.records)} products in the browser; trying remote renderer")
            remote = await self.scrape_remote(context, "too few products")
            if len(remote.records) > len(result.records):
                return remote
        return result

    def _remote_available(self) -> bool:
        return self.firecrawl is not None and self.firecrawl.available

    async def navigate(self, session: RenderSession, context: ScrapeContext) -> None:
        """goto_and_settle with exponential backoff; NavigationError once attempts run out."""
        attempt = 0
        while True:
            try:
                await session.goto_and_settle(context.url)
                self.backoff.track_success(context.site)
                return
            except NavigationError as exc:
                error_type = exc.context.get("error_type") or str(exc)
                self.backoff.track_failure(context.site, error_type)
                attempt += 1
                if not self.backoff.should_retry(attempt, error_type):
                    exc.context.setdefault("attempts", attempt)
                    raise
                logger.warning(f"Navigation attempt {attempt} for {context.site} failed: {exc}")
                await self.backoff.wait_with_backoff(context.site, attempt - 1, error_type)

    async def scrape_remote(self, context: ScrapeContext, reason: str) -> SiteScrapeResult:
        if not self._remote_available():
            raise NavigationError("Remote renderer not available", {"site": context.site, "reason": reason})

        logger.info(f"Fetching {context.url} through the remote renderer ({reason})")
        html = await asyncio.to_thread(self.firecrawl.scrape_html, context.url)
        if not html:
            raise NavigationError(
                f"Remote renderer returned no markup for {context.url}",
                {"site": context.site, "reason": reason},
            )

        session = StaticHtmlSession(context.url, html)
        analysis = self.selector.analyze_page(html, await session.title())
        result = await self.scrape_page(session, context, html, analysis)
        result.renderer = "remote"
        return result

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    async def scrape_page(
        self,
        session: RenderSession,
        context: ScrapeContext,
        html: str,
        analysis: PageAnalysis,
    ) -> SiteScrapeResult:
        pattern = self.memory.get_pattern(context.site)
        strategy = self.selector.select(context.site, analysis, pattern)

        try:
            extraction = await strategy.extract(session, context, html)
        except Exception as exc:  # noqa: BLE001 - a failing strategy is an empty result
            logger.warning(f"Strategy {strategy.name} failed: {exc}")
            extraction = ExtractionResult.empty(strategy.name, str(exc))

        logger.info(
            f"{strategy.name} returned {extraction.count} candidates "
            f"(confidence {extraction.confidence:.2f}, url coverage {extraction.url_coverage:.0%})"
        )

        validated = await self.validate_and_heal(session, context, extraction, html)
        records = self.build_records(context, validated.products, validated.method)

        result = SiteScrapeResult(
            site=context.site,
            category=context.category,
            url=context.url,
            records=records,
            method=validated.method,
            strategy=strategy.name,
            healed_stage=validated.healed_stage,
        )

        if records:
            self._remember_success(context, strategy, validated)
        else:
            error = CascadeExhaustedError(
                f"No products accepted for {context.site}",
                {"site": context.site, "url": context.url, "strategy": strategy.name},
            )
            self.memory.record_failure(context, error)
            if validated.cascade_exhausted:
                self.error_reporter.report_error(error, {"category": context.category})
                result.error = str(error)
                result.error_category = error.category
        return result

    async def validate_and_heal(
        self,
        session: RenderSession,
        context: ScrapeContext,
        extraction: ExtractionResult,
        html: str,
    ) -> ValidatedProducts:
        """
        Accept the strategy's output as-is, enrich it, or heal.

        1. Enough candidates carry detail URLs: keep those.
        2. Confident but link-poor: fill links/images from the DOM.
        3. Otherwise run the self-healing cascade (bounded per page).
        4. Cascade came up empty: one plain DOM pass.
        5. Still nothing: whatever of the strategy's output validates.
        """
        products = extraction.products
        base_url = session.current_url() or context.url

        with_urls = [p for p in products if is_http_url(p.get("productUrl"))]
        if with_urls and len(with_urls) >= len(products) * self.url_coverage_ratio:
            accepted = self.validator.filter_products(with_urls)
            if accepted:
                return ValidatedProducts(accepted, extraction.method)

        if products and extraction.confidence >= self.confidence_threshold:
            dom_products = self.dom.extract(html, base_url).products
            enriched = enrich_with_dom(products, dom_products, self.enrich_threshold)
            accepted = self.validator.filter_products(enriched)
            if accepted:
                return ValidatedProducts(accepted, f"{extraction.method}+dom")

        site = context.site
        if context.heal_attempts < self.max_retries:
            context.heal_attempts += 1
            logger.info(f"Healing {site} (attempt {context.heal_attempts}/{self.max_retries})")
            healing = await self.healer.heal(session, context, html)
            if healing.success:
                self.stats["healed"] += 1
                return ValidatedProducts(
                    healing.products,
                    f"healed:{healing.stage}",
                    healed_stage=healing.stage,
                    selector_set=healing.selector_set,
                )
        else:
            logger.warning(f"Healing budget for {site} / {context.category} spent ({self.max_retries} attempts)")

        direct = self.validator.filter_products(self.dom.extract(html, base_url).products)
        if direct:
            logger.info(f"Direct DOM pass recovered {len(direct)} products")
            return ValidatedProducts(direct, "dom-direct")

        return ValidatedProducts(
            self.validator.filter_products(products), extraction.method, cascade_exhausted=True
        )

    def build_records(
        self, context: ScrapeContext, products: List[Candidate], method: str
    ) -> List[ProductRecord]:
        """Freeze accepted candidates and stamp provenance; one record per id."""
        records: Dict[str, ProductRecord] = {}
        for product in products:
            try:
                record = ProductRecord.from_candidate(product).with_provenance(
                    context.site, context.category, method=method
                )
            except (ValidationError, KeyError) as exc:
                logger.debug(f"Dropping unbuildable record {product.get('name')!r}: {exc}")
                continue
            records.setdefault(record.record_id, record)
        return list(records.values())

    def _remember_success(
        self, context: ScrapeContext, strategy: BaseStrategy, validated: ValidatedProducts
    ) -> None:
        if validated.healed_stage:
            strategy_name = STAGE_STRATEGIES.get(validated.healed_stage, STRATEGY_HYBRID)
            selector_set = validated.selector_set
        else:
            strategy_name = strategy.name
            selector_set = strategy.selector_set

        self.memory.record_success(context, strategy_name, validated.products, selector_set)
        log_extraction_event(
            "site",
            {
                "site": context.site,
                "category": context.category,
                "products": len(validated.products),
                "method": validated.method,
                "learned": strategy_name,
            },
        )

    def get_statistics(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["errors"] = self.error_reporter.generate_report()["error_types"]
        if isinstance(self.llm, LLMClient):
            stats["llm_calls"] = self.llm.calls_made
        if self.firecrawl is not None:
            stats["remote_requests"] = self.firecrawl.requests_made
        return stats
