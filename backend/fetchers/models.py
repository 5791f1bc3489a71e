from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

MAX_ARRIVALS = 4


@dataclass(frozen=True)
class Arrival:
    route: str
    minutes_until: int
    destination: Optional[str] = None
    stop_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "route": self.route,
            "destination": self.destination,
            "minutes_until": self.minutes_until,
        }
        if self.stop_id is not None:
            data["stop_id"] = self.stop_id
        return data


class FailureKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    UNAUTHORIZED = "unauthorized"
    UPSTREAM = "upstream"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class BusResult:
    arrivals: List[Arrival] = field(default_factory=list)
    error: Optional[str] = None
    details: Optional[str] = None
    kind: Optional[FailureKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        if self.kind is FailureKind.NOT_CONFIGURED:
            return 503
        return 502

    @classmethod
    def success(cls, arrivals: List[Arrival]) -> "BusResult":
        return cls(arrivals=list(arrivals))

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        error: str,
        details: Optional[str] = None,
    ) -> "BusResult":
        return cls(error=error, details=details, kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"arrivals": [arrival.to_dict() for arrival in self.arrivals]}
        data: Dict[str, Any] = {"error": self.error}
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class SubwayResult:
    arrivals: List[Arrival]
    stop_id: str
    # Set when the fetch degraded to an empty list; never serialized.
    degraded_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arrivals": [arrival.to_dict() for arrival in self.arrivals],
            "stop_id": self.stop_id,
        }


def minutes_until(target_timestamp: float, now_timestamp: float) -> int:
    """Whole minutes from now until target, rounded half-up and never negative."""
    minutes = math.floor((target_timestamp - now_timestamp) / 60 + 0.5)
    return max(0, int(minutes))


def select_soonest(arrivals: List[Arrival], limit: int = MAX_ARRIVALS) -> List[Arrival]:
    ordered = sorted(arrivals, key=lambda arrival: arrival.minutes_until)
    return ordered[:limit]
