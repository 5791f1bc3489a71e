from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from backend.config import Settings, load_settings
from backend.fetchers.models import (
    MAX_ARRIVALS,
    Arrival,
    SubwayResult,
    minutes_until,
    select_soonest,
)


GTFS_FEED_URL = "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-jz"
DEFAULT_PLATFORM = "J30N"
DEFAULT_ROUTE = "J"
PAST_GRACE_SECONDS = 2 * 60
LOOKAHEAD_SECONDS = 90 * 60

# Gates Av: the feed's J30S is the Manhattan-bound platform riders call J30N,
# and J30N is the Jamaica-bound one. Keys are display labels, values feed ids.
PLATFORM_FEED_STOPS: Dict[str, str] = {
    "J30N": "J30S",
    "J30S": "J30N",
}

DESTINATION_FIELDS = ("trip_short_name", "trip_headsign", "headsign")

logger = logging.getLogger(__name__)


class SubwayFeedError(RuntimeError):
    pass


def resolve_platform(requested: Optional[str], default_platform: Optional[str] = None) -> str:
    """Pick the display platform: explicit request, then configured default, then J30N.

    Anything that is not a known platform label (``"auto"``, typos, ``None``)
    counts as unset.
    """
    for candidate in (requested, default_platform):
        if candidate in PLATFORM_FEED_STOPS:
            return candidate
    return DEFAULT_PLATFORM


def feed_stop_for(platform: str) -> str:
    return PLATFORM_FEED_STOPS[platform]


def to_epoch_seconds(value: Any) -> Optional[int]:
    """Normalize a feed timestamp to integer epoch seconds.

    Accepts plain ints and any wide-integer wrapper that supports ``int()``.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _message_text(message: Any, field_name: str) -> Optional[str]:
    descriptor = getattr(message, "DESCRIPTOR", None)
    if descriptor is None or field_name not in descriptor.fields_by_name:
        return None
    value = getattr(message, field_name, None)
    return value if isinstance(value, str) and value else None


def _trip_destination(trip_update: Any) -> Optional[str]:
    sources = [trip_update.trip]
    if "trip_properties" in trip_update.DESCRIPTOR.fields_by_name and trip_update.HasField(
        "trip_properties"
    ):
        sources.append(trip_update.trip_properties)
    for field_name in DESTINATION_FIELDS:
        for source in sources:
            text = _message_text(source, field_name)
            if text:
                return text
    return None


def _event_time(stop_time_update: Any, event_name: str) -> Optional[int]:
    if not stop_time_update.HasField(event_name):
        return None
    event = getattr(stop_time_update, event_name)
    if not event.HasField("time"):
        return None
    return to_epoch_seconds(event.time)


def _stop_time(stop_time_update: Any) -> Optional[int]:
    arrival_ts = _event_time(stop_time_update, "arrival")
    if arrival_ts is not None:
        return arrival_ts
    return _event_time(stop_time_update, "departure")


def _in_window(arrival_ts: float, now_timestamp: float) -> bool:
    if arrival_ts < now_timestamp - PAST_GRACE_SECONDS:
        return False
    return arrival_ts <= now_timestamp + LOOKAHEAD_SECONDS


def parse_trip_updates(
    feed: gtfs_realtime_pb2.FeedMessage,
    feed_stop_id: str,
    now_timestamp: float,
) -> List[Arrival]:
    arrivals: List[Arrival] = []
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        trip_update = entity.trip_update
        if not trip_update.stop_time_update:
            continue

        route = trip_update.trip.route_id or DEFAULT_ROUTE
        destination = _trip_destination(trip_update)

        for update in trip_update.stop_time_update:
            if update.stop_id != feed_stop_id:
                continue
            arrival_ts = _stop_time(update)
            if arrival_ts is None:
                continue
            if not _in_window(arrival_ts, now_timestamp):
                continue
            arrivals.append(
                Arrival(
                    route=route,
                    destination=destination,
                    minutes_until=minutes_until(arrival_ts, now_timestamp),
                    stop_id=feed_stop_id,
                )
            )

    return select_soonest(arrivals, MAX_ARRIVALS)


def decode_feed(payload: bytes) -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(payload)
    except DecodeError as exc:
        raise SubwayFeedError(f"Could not decode GTFS-realtime payload: {exc}") from exc
    return feed


def _fetch_feed_bytes(api_key: Optional[str], timeout_seconds: int) -> bytes:
    headers = {"Accept": "application/x-protobuf", "Cache-Control": "no-cache"}
    if api_key:
        headers["x-api-key"] = api_key
    try:
        response = requests.get(GTFS_FEED_URL, headers=headers, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise SubwayFeedError(f"Network error while fetching subway feed: {exc}") from exc
    if response.status_code in {401, 403}:
        logger.error("Subway feed request unauthorized (HTTP %s).", response.status_code)
    if not response.ok:
        raise SubwayFeedError(f"Subway feed returned HTTP {response.status_code}")
    return response.content


def fetch_subway_arrivals(
    settings: Settings,
    requested_platform: Optional[str] = None,
    now_timestamp: Optional[float] = None,
) -> SubwayResult:
    platform = resolve_platform(requested_platform, settings.subway_default_stop)
    feed_stop = feed_stop_for(platform)

    try:
        feed = decode_feed(_fetch_feed_bytes(settings.subway_api_key, settings.request_timeout_seconds))
        now = time.time() if now_timestamp is None else now_timestamp
        arrivals = parse_trip_updates(feed, feed_stop, now)
    except SubwayFeedError as exc:
        logger.warning("%s Returning no arrivals.", exc)
        return SubwayResult(arrivals=[], stop_id=platform, degraded_reason=str(exc))
    except Exception as exc:  # Explicit catch to keep fetcher resilient
        logger.error("Unexpected error while reading subway feed: %s", exc)
        return SubwayResult(arrivals=[], stop_id=platform, degraded_reason=str(exc))

    logger.info("Subway: Fetched %s arrivals for %s (feed stop %s)", len(arrivals), platform, feed_stop)
    return SubwayResult(arrivals=arrivals, stop_id=platform)


def _render_output(result: SubwayResult) -> str:
    output_lines: List[str] = [f"GATES AV (J/Z) · Platform {result.stop_id}"]
    if not result.arrivals:
        output_lines.append("  (no upcoming trains)")
    output_lines.extend(_format_rows(result.arrivals))
    return "\n".join(output_lines)


def _format_rows(arrivals: Sequence[Arrival]) -> List[str]:
    rows = []
    for arrival in arrivals:
        suffix = f" ({arrival.destination})" if arrival.destination else ""
        rows.append(f"  {arrival.route} train{suffix} → {arrival.minutes_until} min")
    return rows


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    try:
        settings = load_settings()
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return
    print(_render_output(fetch_subway_arrivals(settings)))


if __name__ == "__main__":
    main()
