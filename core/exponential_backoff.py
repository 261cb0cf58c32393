"""
Exponential backoff with jitter for navigation retries.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from utils.logger import get_logger

logger = get_logger(__name__)


class ErrorType(Enum):
    """Navigation failure kinds with their own retry policy."""

    TIMEOUT = "timeout"
    BLOCKED = "blocked"
    NETWORK = "network"
    DETACHED = "detached"
    UNKNOWN = "unknown"


@dataclass
class RetryState:
    identifier: str
    attempt_count: int = 0
    success_count: int = 0
    consecutive_failures: int = 0
    last_failure: Optional[datetime] = None
    last_success: Optional[datetime] = None
    failure_types: List[str] = field(default_factory=list)
    total_delay: float = 0.0


class ExponentialBackoff:
    """Delay = base * multiplier**attempt, capped, plus 10-50% jitter."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.enabled = config.get("enabled", True)
        self.base_delay = config.get("base_delay_seconds", 2.0)
        self.max_delay = config.get("max_delay_seconds", 30.0)
        self.multiplier = config.get("multiplier", 2.0)
        self.jitter = config.get("jitter", True)
        self.max_attempts = config.get("max_attempts", 3)

        self.error_strategies = {
            "timeout": {"max_attempts": self.max_attempts, "multiplier": 1.5},
            "blocked": {"max_attempts": 2, "multiplier": 3.0},
            "network": {"max_attempts": self.max_attempts},
            "detached": {"max_attempts": self.max_attempts, "base_delay": 1.0},
        }
        for error_type, overrides in config.get("error_specific_strategies", {}).items():
            self.error_strategies.setdefault(error_type, {}).update(overrides)

        self.retry_states: Dict[str, RetryState] = {}

    def calculate_delay(self, attempt: int, error_type: Optional[str] = None) -> float:
        """Delay in seconds before retry number *attempt* (0-based)."""
        if not self.enabled:
            return 0.0

        strategy = self._get_error_strategy(error_type)
        base_delay = strategy.get("base_delay", self.base_delay)
        multiplier = strategy.get("multiplier", self.multiplier)
        delay = min(base_delay * (multiplier**attempt), strategy.get("max_delay", self.max_delay))

        if self.jitter and delay > 0:
            delay *= 1 + 0.1 + random.random() * 0.4

        logger.debug(f"Calculated delay for attempt {attempt}: {delay:.2f}s")
        return delay

    def should_retry(self, attempt: int, error_type: Optional[str] = None) -> bool:
        """*attempt* counts attempts already made."""
        if not self.enabled:
            return False
        strategy = self._get_error_strategy(error_type)
        return attempt < strategy.get("max_attempts", self.max_attempts)

    def track_failure(self, identifier: str, error_type: str) -> None:
        state = self._get_retry_state(identifier)
        now = datetime.now()
        state.attempt_count += 1
        state.consecutive_failures += 1
        state.last_failure = now
        state.failure_types = (state.failure_types + [f"{now.isoformat()}:{error_type}"])[-20:]

    def track_success(self, identifier: str) -> None:
        state = self._get_retry_state(identifier)
        state.success_count += 1
        state.consecutive_failures = 0
        state.last_success = datetime.now()

    async def wait_with_backoff(self, identifier: str, attempt: int, error_type: Optional[str] = None) -> float:
        delay = self.calculate_delay(attempt, error_type)
        if delay > 0:
            self._get_retry_state(identifier).total_delay += delay
            logger.debug(f"Waiting {delay:.2f}s before retry for {identifier}")
            await asyncio.sleep(delay)
        return delay

    def get_retry_statistics(self, identifier: str) -> Dict[str, Any]:
        state = self.retry_states.get(identifier)
        if state is None:
            return {}
        return {
            "identifier": identifier,
            "attempt_count": state.attempt_count,
            "success_count": state.success_count,
            "consecutive_failures": state.consecutive_failures,
            "total_delay": state.total_delay,
            "recent_failure_types": state.failure_types[-10:],
        }

    def _get_retry_state(self, identifier: str) -> RetryState:
        if identifier not in self.retry_states:
            self.retry_states[identifier] = RetryState(identifier=identifier)
        return self.retry_states[identifier]

    def _get_error_strategy(self, error_type: Optional[str]) -> Dict[str, Any]:
        if not error_type:
            return {}
        return self.error_strategies.get(self.parse_error_type(error_type).value, {})

    @staticmethod
    def parse_error_type(error_type: str) -> ErrorType:
        normalized = error_type.lower().replace("_", " ")
        if "timeout" in normalized or "timed out" in normalized:
            return ErrorType.TIMEOUT
        if "blocked" in normalized or "access denied" in normalized or "captcha" in normalized:
            return ErrorType.BLOCKED
        if "detached" in normalized or "target closed" in normalized or "has been closed" in normalized:
            return ErrorType.DETACHED
        if "net::" in normalized or "network" in normalized or "connection" in normalized:
            return ErrorType.NETWORK
        return ErrorType.UNKNOWN
