import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Optional, Any

from .logger import get_logger

logger = get_logger(__name__)


# Custom Exception Classes
class ScraperError(Exception):
    """Base exception for all catalog scraping errors"""

    category = "scraper"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class NavigationError(ScraperError):
    """Render or navigation failure that survived every retry"""

    category = "navigation"


class ScrapeTimeoutError(ScraperError):
    """A whole site scrape exceeded its time budget"""

    category = "timeout"


class ExtractionError(ScraperError):
    """Errors during data extraction"""

    category = "extraction"


class CascadeExhaustedError(ExtractionError):
    """Every self-healing stage ran without producing an accepted record"""

    category = "cascade_exhausted"


class LLMError(ScraperError):
    """Language-model call failed, timed out or replied with garbage"""

    category = "llm"


class LLMBudgetExceededError(LLMError):
    """The per-run language-model call budget is spent"""

    category = "llm_budget"


class PersistenceError(ScraperError):
    """Pattern or record storage could not be read or written"""

    category = "persistence"


class ConfigurationError(ScraperError):
    """Configuration-related errors"""

    category = "configuration"


class ErrorReporter:
    """Error aggregation for the end-of-run summary"""

    def __init__(self):
        self.errors = defaultdict(list)
        self.error_stats = defaultdict(int)
        self._lock = threading.Lock()

    def report_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Report an error for aggregation"""
        category = getattr(error, "category", type(error).__name__)

        error_record = {
            "timestamp": datetime.now(),
            "error_type": type(error).__name__,
            "message": str(error),
            "context": {**getattr(error, "context", {}), **(context or {})},
        }

        with self._lock:
            self.errors[category].append(error_record)
            self.error_stats[category] += 1

        logger.debug(f"Recorded {category} error: {error}")

    def generate_report(self) -> Dict[str, Any]:
        """Generate error report"""
        with self._lock:
            report = {
                "generated_at": datetime.now().isoformat(),
                "total_errors": sum(self.error_stats.values()),
                "error_types": dict(self.error_stats),
                "recent_errors": {},
            }

            # Last 10 per category
            for category, error_list in self.errors.items():
                report["recent_errors"][category] = [
                    {**entry, "timestamp": entry["timestamp"].isoformat()}
                    for entry in error_list[-10:]
                ]

            return report

    def clear(self) -> None:
        with self._lock:
            self.errors.clear()
            self.error_stats.clear()
