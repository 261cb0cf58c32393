"""Navigation retry delays."""

import pytest

from core.exponential_backoff import ErrorType, ExponentialBackoff


@pytest.fixture
def backoff():
    return ExponentialBackoff({"jitter": False})


def test_delay_grows_and_caps(backoff):
    assert backoff.calculate_delay(0) == 2.0
    assert backoff.calculate_delay(1) == 4.0
    assert backoff.calculate_delay(2) == 8.0
    assert backoff.calculate_delay(10) == 30.0


def test_error_specific_multipliers(backoff):
    assert backoff.calculate_delay(2, "Navigation timed out") == pytest.approx(2.0 * 1.5 ** 2)
    assert backoff.calculate_delay(1, "blocked") == 6.0
    assert backoff.calculate_delay(1, "Target page has been closed") == 2.0


def test_jitter_adds_ten_to_fifty_percent():
    backoff = ExponentialBackoff({"base_delay_seconds": 10})
    for _ in range(20):
        assert 11.0 <= backoff.calculate_delay(0) <= 15.0


def test_retry_budget_depends_on_error_type(backoff):
    assert backoff.should_retry(2, "timeout")
    assert not backoff.should_retry(3, "timeout")
    assert not backoff.should_retry(2, "blocked")
    assert not ExponentialBackoff({"enabled": False}).should_retry(0)


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Timeout 30000ms exceeded", ErrorType.TIMEOUT),
        ("Access Denied", ErrorType.BLOCKED),
        ("net::ERR_CONNECTION_RESET", ErrorType.NETWORK),
        ("Frame was detached", ErrorType.DETACHED),
        ("something odd", ErrorType.UNKNOWN),
    ],
)
def test_parse_error_type(message, expected):
    assert ExponentialBackoff.parse_error_type(message) is expected


@pytest.mark.asyncio
async def test_wait_tracks_total_delay():
    backoff = ExponentialBackoff({"base_delay_seconds": 0.01, "jitter": False})
    backoff.track_failure("Example Shop", "timeout")

    delay = await backoff.wait_with_backoff("Example Shop", 0)
    backoff.track_success("Example Shop")

    stats = backoff.get_retry_statistics("Example Shop")
    assert delay == pytest.approx(0.01)
    assert stats["total_delay"] == pytest.approx(0.01)
    assert stats["consecutive_failures"] == 0
    assert stats["attempt_count"] == 1
