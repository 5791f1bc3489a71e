from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

from backend.status import FeedOutcome, FeedStatus


START_TIME = time.time()

FEED_NAMES: Sequence[str] = ("bus", "subway")


@dataclass(frozen=True)
class FeedHealth:
    state: str
    seconds_since_success: Optional[int]
    last_count: int
    failure_kind: Optional[str]
    failure_reason: Optional[str]
    successes: int
    failures: int


def assess_feed(
    outcome: FeedOutcome,
    now: int,
    stale_after_sec: int,
    dead_after_sec: int,
) -> FeedHealth:
    """Classify one feed as ok, stale, failing or unknown.

    A success clears the recorded failure, so any failure still present is
    the most recent outcome and makes the feed ``failing`` immediately.
    A feed that has neither succeeded nor failed yet is ``unknown``.
    """
    success_at = outcome["last_success_at"]
    since_success = None if success_at is None else max(0, now - success_at)

    if outcome["last_failure_at"] is not None:
        state = "failing"
    elif since_success is None:
        state = "unknown"
    elif since_success >= dead_after_sec:
        state = "failing"
    elif since_success >= stale_after_sec:
        state = "stale"
    else:
        state = "ok"

    return FeedHealth(
        state=state,
        seconds_since_success=since_success,
        last_count=outcome["last_count"],
        failure_kind=outcome["last_failure_kind"],
        failure_reason=outcome["last_failure_reason"],
        successes=outcome["successes"],
        failures=outcome["failures"],
    )


def overall_state(feeds: Sequence[FeedHealth]) -> str:
    # "down" only when no tile has anything to show.
    states = [feed.state for feed in feeds]
    if all(state == "ok" for state in states):
        return "ok"
    if all(state in ("failing", "unknown") for state in states):
        return "down"
    return "degraded"


def get_health_status(
    status: FeedStatus,
    stale_after_sec: int,
    dead_after_sec: int,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = int(time.time()) if now is None else now
    feeds = {
        name: assess_feed(status.get(name), now, stale_after_sec, dead_after_sec)
        for name in FEED_NAMES
    }
    return {
        "status": overall_state(list(feeds.values())),
        "uptime_seconds": int(now - START_TIME),
        "feeds": {name: asdict(health) for name, health in feeds.items()},
    }
