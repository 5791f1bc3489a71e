from __future__ import annotations

import threading
import time
from typing import Dict, Optional, TypedDict


class FeedOutcome(TypedDict):
    last_success_at: Optional[int]
    last_count: int
    last_failure_at: Optional[int]
    last_failure_reason: Optional[str]
    last_failure_kind: Optional[str]
    successes: int
    failures: int


def _empty_outcome() -> FeedOutcome:
    return {
        "last_success_at": None,
        "last_count": 0,
        "last_failure_at": None,
        "last_failure_reason": None,
        "last_failure_kind": None,
        "successes": 0,
        "failures": 0,
    }


class FeedStatus:
    """Latest outcome per feed as seen by the HTTP shell. Arrivals are never stored."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: Dict[str, FeedOutcome] = {}

    def record_success(self, feed: str, count: int) -> None:
        now = int(time.time())
        with self._lock:
            outcome = self._outcomes.setdefault(feed, _empty_outcome())
            outcome["last_success_at"] = now
            outcome["last_count"] = count
            outcome["last_failure_at"] = None
            outcome["last_failure_reason"] = None
            outcome["last_failure_kind"] = None
            outcome["successes"] += 1

    def record_failure(self, feed: str, reason: str, kind: Optional[str] = None) -> None:
        now = int(time.time())
        with self._lock:
            outcome = self._outcomes.setdefault(feed, _empty_outcome())
            outcome["last_failure_at"] = now
            outcome["last_failure_reason"] = reason
            outcome["last_failure_kind"] = kind
            outcome["failures"] += 1

    def get(self, feed: str) -> FeedOutcome:
        with self._lock:
            return FeedOutcome(**self._outcomes.get(feed, _empty_outcome()))
