"""Shared pytest fixtures."""

from typing import Any, Dict

import pytest

from core.types import ScrapeContext


@pytest.fixture
def context() -> ScrapeContext:
    return ScrapeContext(site="Example Shop", url="https://shop.example.com/graphic-tees", category="Men")


@pytest.fixture
def fast_config(tmp_path) -> Dict[str, Any]:
    """Engine settings with every sleep turned off and files under tmp_path."""
    return {
        "agent": {"site_timeout_seconds": 10},
        "vision": {"settle_seconds": 0, "call_delay_seconds": 0},
        "retry": {"base_delay_seconds": 0, "jitter": False, "max_attempts": 3},
        "pattern_memory": {"path": str(tmp_path / "patterns" / "learned_patterns.json")},
    }
