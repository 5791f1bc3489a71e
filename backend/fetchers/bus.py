from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

import requests

from backend.config import Settings, load_settings
from backend.fetchers.models import (
    MAX_ARRIVALS,
    Arrival,
    BusResult,
    FailureKind,
    minutes_until,
    select_soonest,
)


BUS_URL = "https://bustime.mta.info/api/siri/stop-monitoring.json"
OPERATOR_REF = "MTA"
MONITORING_REF = "307688"  # B52 east/Ridgewood at Gates & Evergreen
LINE_REF = "MTA NYCT_B52"
DEFAULT_ROUTE = "B52"
DETAILS_MAX_CHARS = 200

logger = logging.getLogger(__name__)


class BusFeedError(RuntimeError):
    def __init__(self, kind: FailureKind, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details


def _first_text(value: Any) -> Optional[str]:
    # SIRI v2 wraps names in single-element lists.
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str) and value:
        return value
    return None


def _parse_timestamp(value: Any) -> Optional[float]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _get_visits(payload: Any) -> List[Any]:
    if not isinstance(payload, dict):
        return []
    siri = payload.get("Siri")
    if not isinstance(siri, dict):
        return []
    delivery = siri.get("ServiceDelivery")
    if not isinstance(delivery, dict):
        return []
    monitoring = delivery.get("StopMonitoringDelivery")
    if not isinstance(monitoring, list) or not monitoring:
        return []
    first = monitoring[0]
    if not isinstance(first, dict):
        return []
    visits = first.get("MonitoredStopVisit")
    return visits if isinstance(visits, list) else []


def _parse_visit(visit: Any, now_timestamp: float) -> Optional[Arrival]:
    if not isinstance(visit, dict):
        return None
    journey = visit.get("MonitoredVehicleJourney")
    if not isinstance(journey, dict):
        return None
    call = journey.get("MonitoredCall")
    if not isinstance(call, dict):
        return None
    expected = _parse_timestamp(call.get("ExpectedArrivalTime"))
    if expected is None:
        return None
    return Arrival(
        route=_first_text(journey.get("PublishedLineName")) or DEFAULT_ROUTE,
        destination=_first_text(journey.get("DestinationName")),
        minutes_until=minutes_until(expected, now_timestamp),
    )


def parse_bus_response(payload: Any, now_timestamp: float) -> List[Arrival]:
    """Turn a SIRI stop-monitoring payload into at most four sorted arrivals.

    Visits missing an expected arrival time, or carrying one that does not
    parse, are skipped individually. A payload of the wrong shape yields an
    empty list.
    """
    arrivals: List[Arrival] = []
    try:
        visits = _get_visits(payload)
    except Exception as exc:  # Explicit catch to keep parser resilient
        logger.warning("Unexpected bus payload shape: %s", exc)
        return []

    for visit in visits:
        try:
            arrival = _parse_visit(visit, now_timestamp)
        except (AttributeError, TypeError, ValueError, OverflowError) as exc:
            logger.debug("Skipping malformed bus visit: %s", exc)
            continue
        if arrival is not None:
            arrivals.append(arrival)

    return select_soonest(arrivals, MAX_ARRIVALS)


def _classify_status(status_code: int, details: str) -> BusFeedError:
    if status_code == 403:
        return BusFeedError(
            FailureKind.UNAUTHORIZED,
            "Bus API key missing or invalid. Check MTA_BUS_TIME_KEY",
            details,
        )
    if status_code == 401:
        return BusFeedError(FailureKind.UNAUTHORIZED, "Bus API key invalid or expired", details)
    return BusFeedError(FailureKind.UPSTREAM, f"Bus API error: {status_code}", details)


def _fetch_payload(api_key: str, timeout_seconds: int) -> Any:
    params = {
        "key": api_key,
        "OperatorRef": OPERATOR_REF,
        "MonitoringRef": MONITORING_REF,
        "LineRef": LINE_REF,
        "MaximumStopVisits": str(MAX_ARRIVALS),
    }
    headers = {"Accept": "application/json", "Cache-Control": "no-cache"}
    try:
        response = requests.get(
            BUS_URL,
            params=params,
            headers=headers,
            timeout=timeout_seconds,
        )
    except requests.RequestException as exc:
        raise BusFeedError(FailureKind.TRANSPORT, "Bus fetch failed", str(exc)) from exc

    if not response.ok:
        error = _classify_status(response.status_code, (response.text or "")[:DETAILS_MAX_CHARS])
        if error.kind is FailureKind.UNAUTHORIZED:
            logger.error("Bus feed request unauthorized (HTTP %s).", response.status_code)
        raise error

    try:
        return response.json()
    except ValueError:
        logger.warning("Bus feed response was not valid JSON; returning no arrivals.")
        return None


def fetch_bus_arrivals(
    settings: Settings,
    now_timestamp: Optional[float] = None,
) -> BusResult:
    if not settings.bus_api_key:
        logger.error("MTA_BUS_TIME_KEY is not set; skipping bus fetch.")
        return BusResult.failure(FailureKind.NOT_CONFIGURED, "MTA_BUS_TIME_KEY not configured")

    try:
        payload = _fetch_payload(settings.bus_api_key, settings.request_timeout_seconds)
    except BusFeedError as exc:
        logger.error("Bus fetch failed: %s", exc.message)
        return BusResult.failure(exc.kind, exc.message, exc.details)
    except Exception as exc:  # Explicit catch to keep fetcher resilient
        logger.error("Unexpected error while fetching bus feed: %s", exc)
        return BusResult.failure(FailureKind.TRANSPORT, "Bus fetch failed", str(exc))

    now = time.time() if now_timestamp is None else now_timestamp
    arrivals = parse_bus_response(payload, now)
    logger.info("Bus: Fetched %s arrivals", len(arrivals))
    return BusResult.success(arrivals)


def _render_output(result: BusResult) -> str:
    lines: List[str] = [f"B52 at stop {MONITORING_REF}"]
    if not result.ok:
        lines.append(f"  error: {result.error}")
        if result.details:
            lines.append(f"  details: {result.details}")
        return "\n".join(lines)
    if not result.arrivals:
        lines.append("  (no upcoming buses)")
    lines.extend(_format_rows(result.arrivals))
    return "\n".join(lines)


def _format_rows(arrivals: Sequence[Arrival]) -> List[str]:
    rows = []
    for arrival in arrivals:
        suffix = f" to {arrival.destination}" if arrival.destination else ""
        rows.append(f"  {arrival.route}{suffix} → {arrival.minutes_until} min")
    return rows


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    try:
        settings = load_settings()
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return
    print(_render_output(fetch_bus_arrivals(settings)))


if __name__ == "__main__":
    main()
