from datetime import UTC, datetime, timedelta

import pytest

from drivedrop.countdown import RESPONSE_WINDOW_SECONDS, ResponseWindow, format_remaining

T0 = datetime(2025, 7, 2, 8, 0, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "elapsed, remaining",
    [(0, 300), (0.4, 300), (1, 299), (10, 290), (299.9, 1), (300, 0), (310, 0), (86400, 0)],
)
def test_remaining_seconds(elapsed: float, remaining: int) -> None:
    window = ResponseWindow(T0)
    assert window.remaining_seconds(T0 + timedelta(seconds=elapsed)) == remaining


def test_deadline_and_expiry() -> None:
    window = ResponseWindow(T0)
    assert window.deadline == T0 + timedelta(seconds=RESPONSE_WINDOW_SECONDS)
    assert not window.has_expired(T0 + timedelta(seconds=299))
    assert window.has_expired(T0 + timedelta(seconds=300))


def test_recomputed_after_suspension() -> None:
    """Nothing is decremented in memory, so a late check sees the true value."""
    window = ResponseWindow(T0)
    assert window.remaining_seconds(T0 + timedelta(seconds=5)) == 295
    assert window.remaining_seconds(T0 + timedelta(seconds=200)) == 100
    assert window.remaining_seconds(T0 + timedelta(seconds=5)) == 295


def test_naive_timestamps_are_utc() -> None:
    window = ResponseWindow(datetime(2025, 7, 2, 8, 0, 0))
    assert window.remaining_seconds(T0 + timedelta(seconds=60)) == 240


@pytest.mark.parametrize("seconds, text", [(300, "5:00"), (65, "1:05"), (9, "0:09"), (0, "0:00")])
def test_format_remaining(seconds: int, text: str) -> None:
    assert format_remaining(seconds) == text
