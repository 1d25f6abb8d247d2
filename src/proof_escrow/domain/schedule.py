"""Verification schedule ladder.

When a creator submits a post, the deal gets one ``initial`` check right
away, ``periodic`` checks spaced by an interval derived from the proof
spec's duration, and one ``final`` check exactly at the deadline.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from proof_escrow.domain.enums import CheckType

# 5-minute test deals are checked roughly every 100 seconds
SHORT_TEST_DURATION_HOURS = 0.1
SHORT_TEST_INTERVAL_HOURS = 0.0278


@dataclass(frozen=True)
class PlannedCheck:
    scheduled_at: datetime
    check_type: CheckType


def check_interval_hours(duration_hours: float) -> float:
    """Hours between periodic checks for a given observation duration."""
    if duration_hours <= SHORT_TEST_DURATION_HOURS:
        return SHORT_TEST_INTERVAL_HOURS
    if duration_hours <= 24:
        return 4
    if duration_hours <= 72:
        return 12
    return 24


def build_schedule_ladder(
    posted_at: datetime,
    deadline: datetime,
    duration_hours: float,
) -> list[PlannedCheck]:
    """Plan every check for a deal, ordered by time.

    Periodic rows are strictly before the deadline; the final row is at it.
    """
    checks = [PlannedCheck(posted_at, CheckType.INITIAL)]

    step = timedelta(hours=check_interval_hours(duration_hours))
    next_check = posted_at + step
    while next_check < deadline:
        checks.append(PlannedCheck(next_check, CheckType.PERIODIC))
        next_check += step

    checks.append(PlannedCheck(deadline, CheckType.FINAL))
    return checks


def completion_time(posted_at: datetime, duration_hours: float) -> datetime:
    """Instant at which a successful verification becomes final."""
    return posted_at + timedelta(hours=duration_hours)


# Observation windows an advertiser may choose; 0.0833h is the 5-minute test deal
ALLOWED_DURATION_HOURS = (0.0833, 24.0, 72.0, 168.0, 720.0)


def is_allowed_duration(duration_hours: float) -> bool:
    return any(abs(duration_hours - allowed) < 1e-6 for allowed in ALLOWED_DURATION_HOURS)
