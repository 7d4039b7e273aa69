import math
from datetime import UTC, datetime, timedelta

# Fixed client response window after the driver submits minor differences
RESPONSE_WINDOW_SECONDS = 300


class ResponseWindow:
    """
    Deadline for the client's answer to a verification.

    Nothing is counted down in memory: every query recomputes from the
    completion timestamp, so a suspended app picks up the right value on
    resume.
    """

    def __init__(self, completed_at: datetime) -> None:
        if completed_at.tzinfo is None:
            completed_at = completed_at.replace(tzinfo=UTC)
        self.completed_at = completed_at
        self.deadline = completed_at + timedelta(seconds=RESPONSE_WINDOW_SECONDS)

    def remaining_seconds(self, now: datetime) -> int:
        elapsed = math.floor((now - self.completed_at).total_seconds())
        return max(0, RESPONSE_WINDOW_SECONDS - elapsed)

    def has_expired(self, now: datetime) -> bool:
        return self.remaining_seconds(now) == 0


def format_remaining(seconds: int) -> str:
    minutes, secs = divmod(max(0, seconds), 60)
    return f"{minutes}:{secs:02d}"
