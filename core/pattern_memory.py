"""
Per-site pattern memory.

Remembers which strategy (and selector set) last worked for a site together
with a rolling confidence score. Loaded once at start, saved every few
successes and at shutdown. Persistence is best effort: failures are logged
and reported through PersistResult, never raised.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.types import Candidate, ScrapeContext, SelectorSet, SitePattern
from utils.helpers import site_key
from utils.logger import get_logger, log_extraction_event
from utils.serialization import write_json_atomic

logger = get_logger(__name__)


@dataclass(frozen=True)
class PersistResult:
    ok: bool
    path: Optional[str] = None
    error: Optional[str] = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


def persist_json(path: Path, payload: Any) -> PersistResult:
    try:
        write_json_atomic(path, payload)
    except (OSError, TypeError, ValueError) as exc:
        return PersistResult(False, str(path), str(exc))
    return PersistResult(True, str(path))


class ExtractionHistory:
    """Bounded log of extraction attempts, kept for diagnostics."""

    def __init__(self, path: Path, max_entries: int = 1000):
        self.path = Path(path)
        self.max_entries = max_entries
        self.entries: List[Dict[str, Any]] = []

    def load(self) -> PersistResult:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            self.entries = []
            return PersistResult(True, str(self.path))
        except (OSError, ValueError) as exc:
            logger.warning(f"Could not load extraction history: {exc}")
            self.entries = []
            return PersistResult(False, str(self.path), str(exc))

        self.entries = [e for e in data if isinstance(e, dict)][-self.max_entries:] if isinstance(data, list) else []
        return PersistResult(True, str(self.path))

    def save(self) -> PersistResult:
        return persist_json(self.path, self.entries[-self.max_entries:])

    def add(self, entry: Dict[str, Any]) -> None:
        self.entries.append({**entry, "timestamp": _now()})
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries:]

    def get_for_site(self, site: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries if e.get("site") == site]

    def get_recent(self, count: int = 10) -> List[Dict[str, Any]]:
        return self.entries[-count:]


class PatternMemory:
    """Owned store of SitePatterns keyed by site."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.path = Path(config.get("path", "data/patterns/learned_patterns.json"))
        self.ema_alpha = config.get("ema_alpha", 0.3)
        self.initial_confidence = config.get("initial_confidence", 0.5)
        self.relearn_failure_count = config.get("relearn_failure_count", 3)
        self.relearn_confidence = config.get("relearn_confidence", 0.3)
        self.save_every = config.get("save_every", 5)

        self.patterns: Dict[str, SitePattern] = {}
        self.history = ExtractionHistory(
            Path(config.get("history_path", self.path.parent / "history.json")),
            config.get("max_history_entries", 1000),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> PersistResult:
        self.history.load()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            self.patterns = {}
            return PersistResult(True, str(self.path))
        except (OSError, ValueError) as exc:
            logger.warning(f"Could not load patterns: {exc}")
            self.patterns = {}
            return PersistResult(False, str(self.path), str(exc))

        patterns: Dict[str, SitePattern] = {}
        for key, value in (data.items() if isinstance(data, dict) else []):
            try:
                patterns[key] = SitePattern.from_dict(value)
            except (TypeError, AttributeError) as exc:
                logger.warning(f"Skipping unreadable pattern {key}: {exc}")
        self.patterns = patterns
        logger.info(f"Loaded {len(self.patterns)} patterns")
        return PersistResult(True, str(self.path))

    def save(self) -> PersistResult:
        result = persist_json(self.path, {k: p.to_dict() for k, p in self.patterns.items()})
        if result.ok:
            logger.info("Patterns saved")
        else:
            logger.error(f"Could not save patterns: {result.error}")

        history_result = self.history.save()
        if not history_result.ok:
            logger.warning(f"Could not save extraction history: {history_result.error}")
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_pattern(self, site: str) -> Optional[SitePattern]:
        return self.patterns.get(site_key(site))

    def list_patterns(self) -> List[SitePattern]:
        return sorted(self.patterns.values(), key=lambda p: p.site.lower())

    def clear(self, site: Optional[str] = None) -> int:
        """Forget one site (or everything); returns how many patterns went."""
        if site is None:
            removed = len(self.patterns)
            self.patterns.clear()
            return removed
        return 1 if self.patterns.pop(site_key(site), None) is not None else 0

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------
    def _ema(self, current: float, success: bool) -> float:
        return self.ema_alpha * (1.0 if success else 0.0) + (1 - self.ema_alpha) * current

    def record_success(
        self,
        context: ScrapeContext,
        strategy_name: str,
        products: List[Candidate],
        selector_set: Optional[SelectorSet] = None,
    ) -> SitePattern:
        key = site_key(context.site)
        existing = self.patterns.get(key)
        previous_count = existing.success_count if existing else 0
        previous_avg = existing.avg_product_count if existing else 0.0
        previous_confidence = existing.confidence if existing else self.initial_confidence

        pattern = SitePattern(
            site=context.site,
            category=context.category,
            strategy_name=strategy_name,
            selector_set=dict(selector_set) if selector_set else None,
            confidence=self._ema(previous_confidence, True),
            success_count=previous_count + 1,
            failure_count=existing.failure_count if existing else 0,
            avg_product_count=(previous_avg * previous_count + len(products)) / (previous_count + 1),
            last_success=_now(),
            last_failure=existing.last_failure if existing else None,
            last_error=existing.last_error if existing else None,
            needs_relearning=False,
        )
        if existing is not None:
            pattern.created_at = existing.created_at
        self.patterns[key] = pattern

        self.history.add(
            {"site": context.site, "category": context.category, "strategy": strategy_name,
             "success": True, "products": len(products)}
        )
        log_extraction_event(
            "pattern",
            {"site": context.site, "strategy": strategy_name, "confidence": round(pattern.confidence, 3),
             "success_count": pattern.success_count},
        )

        if self.save_every and pattern.success_count % self.save_every == 0:
            self.save()
        return pattern

    def record_failure(self, context: ScrapeContext, error: Any) -> Optional[SitePattern]:
        """Penalize a known site; unknown sites are not created on failure."""
        message = str(error) if error is not None else "unknown error"
        self.history.add(
            {"site": context.site, "category": context.category, "success": False, "error": message}
        )

        pattern = self.patterns.get(site_key(context.site))
        if pattern is None:
            return None

        pattern.failure_count += 1
        pattern.last_failure = _now()
        pattern.last_error = message
        pattern.confidence = self._ema(pattern.confidence, False)
        if pattern.failure_count > self.relearn_failure_count and pattern.confidence < self.relearn_confidence:
            pattern.needs_relearning = True
            logger.warning(f"Pattern for {context.site} flagged for relearning")

        log_extraction_event(
            "pattern",
            {"site": context.site, "failure_count": pattern.failure_count,
             "confidence": round(pattern.confidence, 3), "needs_relearning": pattern.needs_relearning},
            level="WARNING",
        )
        return pattern
