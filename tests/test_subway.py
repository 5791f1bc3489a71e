"""Tests for the GTFS-realtime subway adapter."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from google.transit import gtfs_realtime_pb2

from backend.config import Settings
from backend.fetchers.models import SubwayResult
from backend.fetchers.subway import (
    GTFS_FEED_URL,
    _render_output,
    decode_feed,
    feed_stop_for,
    fetch_subway_arrivals,
    parse_trip_updates,
    resolve_platform,
    to_epoch_seconds,
)

NOW = 1_700_000_000


def _build_feed(trips):
    """Build a FeedMessage from ``[(route_id, [(stop_id, arrival_offset, departure_offset), ...]), ...]``."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    feed.header.timestamp = NOW
    for index, (route_id, updates) in enumerate(trips):
        entity = feed.entity.add()
        entity.id = str(index)
        trip_update = entity.trip_update
        trip_update.trip.trip_id = f"trip-{index}"
        if route_id is not None:
            trip_update.trip.route_id = route_id
        for stop_id, arrival_offset, departure_offset in updates:
            stop_time_update = trip_update.stop_time_update.add()
            stop_time_update.stop_id = stop_id
            if arrival_offset is not None:
                stop_time_update.arrival.time = NOW + arrival_offset
            if departure_offset is not None:
                stop_time_update.departure.time = NOW + departure_offset
    return feed


def _response(status_code=200, content=b""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.content = content
    return response


class WideInt:
    def __init__(self, value):
        self._value = value

    def __int__(self):
        return self._value


class TestPlatformResolution:
    def test_labels_are_swapped_against_feed_stops(self):
        assert feed_stop_for("J30N") == "J30S"
        assert feed_stop_for("J30S") == "J30N"

    @pytest.mark.parametrize(
        "requested, default, expected",
        [
            ("J30S", None, "J30S"),
            ("J30N", "J30S", "J30N"),
            (None, "J30S", "J30S"),
            ("auto", "J30S", "J30S"),
            ("J30Z", "J30S", "J30S"),
            ("J30Z", None, "J30N"),
            (None, "bogus", "J30N"),
            ("j30s", None, "J30N"),
        ],
    )
    def test_resolution_order(self, requested, default, expected):
        assert resolve_platform(requested, default) == expected


class TestToEpochSeconds:
    def test_accepts_native_and_wide_integers(self):
        assert to_epoch_seconds(NOW) == NOW
        assert to_epoch_seconds(WideInt(NOW)) == NOW

    @pytest.mark.parametrize("value", [None, True, object(), "soon"])
    def test_rejects_unconvertible_values(self, value):
        assert to_epoch_seconds(value) is None


class TestParseTripUpdates:
    def test_filters_to_wire_stop_and_window(self):
        feed = _build_feed(
            [
                ("J", [("J29S", 60, None), ("J30S", 300, None), ("J31S", 400, None)]),
                ("Z", [("J30N", 120, None), ("J30S", 600, None)]),
                ("J", [("J30S", -121, None), ("J30S", 5401, None)]),
                ("J", [("J30S", -120, None), ("J30S", 5400, None)]),
            ]
        )

        arrivals = parse_trip_updates(feed, "J30S", NOW)

        assert [(arrival.route, arrival.minutes_until) for arrival in arrivals] == [
            ("J", 0),
            ("J", 5),
            ("Z", 10),
            ("J", 90),
        ]
        assert all(arrival.stop_id == "J30S" for arrival in arrivals)

    def test_keeps_four_soonest_of_in_window_matches(self):
        in_window = [("J30S", offset, None) for offset in (1500, 240, 900, 60, 1200, 600)]
        outside = [("J30S", -600, None), ("J30S", 7200, None)]
        feed = _build_feed([("J", in_window + outside)])

        arrivals = parse_trip_updates(feed, "J30S", NOW)

        assert [arrival.minutes_until for arrival in arrivals] == [1, 4, 10, 15]

    def test_missing_times_skip_only_that_update(self):
        feed = _build_feed([("J", [("J30S", None, None), ("J30S", None, 420), ("J30S", 180, None)])])

        arrivals = parse_trip_updates(feed, "J30S", NOW)

        assert [arrival.minutes_until for arrival in arrivals] == [3, 7]

    def test_route_defaults_to_j_and_destination_absent(self):
        feed = _build_feed([(None, [("J30S", 60, None)])])

        (arrival,) = parse_trip_updates(feed, "J30S", NOW)

        assert arrival.route == "J"
        assert arrival.destination is None
        assert arrival.to_dict() == {
            "route": "J",
            "destination": None,
            "minutes_until": 1,
            "stop_id": "J30S",
        }

    @pytest.mark.parametrize(
        "short_name, headsign, expected",
        [
            ("Broad St", "Jamaica", "Broad St"),
            ("", "Jamaica", "Jamaica"),
            ("", "", None),
        ],
    )
    def test_destination_prefers_short_name_then_headsign(self, short_name, headsign, expected):
        feed = _build_feed([("Z", [("J30S", 120, None), ("J30S", 900, None)])])
        properties = feed.entity[0].trip_update.trip_properties
        if short_name:
            properties.trip_short_name = short_name
        if headsign:
            properties.trip_headsign = headsign

        arrivals = parse_trip_updates(feed, "J30S", NOW)

        assert [arrival.destination for arrival in arrivals] == [expected, expected]
        assert [(arrival.route, arrival.minutes_until) for arrival in arrivals] == [("Z", 2), ("Z", 15)]

    def test_entities_without_trip_updates_are_ignored(self):
        feed = _build_feed([("J", [("J30S", 60, None)])])
        vehicle_entity = feed.entity.add()
        vehicle_entity.id = "vehicle"
        vehicle_entity.vehicle.trip.trip_id = "trip-0"

        assert len(parse_trip_updates(feed, "J30S", NOW)) == 1

    def test_identical_input_gives_identical_output(self):
        feed = _build_feed([("J", [("J30S", offset, None) for offset in (300, 60, 900)])])

        assert parse_trip_updates(feed, "J30S", NOW) == parse_trip_updates(feed, "J30S", NOW)


class TestFetchSubwayArrivals:
    @patch("backend.fetchers.subway.requests.get")
    def test_north_label_queries_south_feed_stop(self, mock_get):
        feed = _build_feed([("J", [("J30S", 300, None), ("J30N", 60, None)])])
        mock_get.return_value = _response(content=feed.SerializeToString())

        result = fetch_subway_arrivals(Settings(), requested_platform="J30N", now_timestamp=NOW)

        assert result.stop_id == "J30N"
        assert [arrival.stop_id for arrival in result.arrivals] == ["J30S"]
        assert result.arrivals[0].minutes_until == 5
        assert result.degraded_reason is None

    @patch("backend.fetchers.subway.requests.get")
    def test_sends_api_key_only_when_configured(self, mock_get):
        mock_get.return_value = _response(content=_build_feed([]).SerializeToString())

        fetch_subway_arrivals(Settings(subway_api_key="secret", request_timeout_seconds=7), now_timestamp=NOW)
        fetch_subway_arrivals(Settings(), now_timestamp=NOW)

        keyed, anonymous = mock_get.call_args_list
        assert keyed.args == (GTFS_FEED_URL,)
        assert keyed.kwargs["headers"] == {
            "Accept": "application/x-protobuf",
            "Cache-Control": "no-cache",
            "x-api-key": "secret",
        }
        assert keyed.kwargs["timeout"] == 7
        assert "x-api-key" not in anonymous.kwargs["headers"]

    @patch("backend.fetchers.subway.requests.get")
    def test_unrecognized_override_uses_configured_default(self, mock_get):
        feed = _build_feed([("J", [("J30N", 120, None)])])
        mock_get.return_value = _response(content=feed.SerializeToString())

        result = fetch_subway_arrivals(
            Settings(subway_default_stop="J30S"),
            requested_platform="J30Z",
            now_timestamp=NOW,
        )

        assert result.stop_id == "J30S"
        assert [arrival.stop_id for arrival in result.arrivals] == ["J30N"]

    @patch("backend.fetchers.subway.requests.get")
    def test_http_error_degrades_to_empty_list(self, mock_get):
        mock_get.return_value = _response(status_code=503)

        result = fetch_subway_arrivals(Settings(), requested_platform="J30S", now_timestamp=NOW)

        assert result.arrivals == []
        assert result.stop_id == "J30S"
        assert "503" in result.degraded_reason
        assert result.to_dict() == {"arrivals": [], "stop_id": "J30S"}

    @patch("backend.fetchers.subway.requests.get")
    def test_transport_error_degrades_to_empty_list(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout("timed out")

        result = fetch_subway_arrivals(Settings(), now_timestamp=NOW)

        assert result.arrivals == []
        assert result.stop_id == "J30N"
        assert result.degraded_reason

    @patch("backend.fetchers.subway.requests.get")
    def test_undecodable_payload_degrades_to_empty_list(self, mock_get):
        mock_get.return_value = _response(content=b"\xff\xff\xff\xff not a protobuf")

        result = fetch_subway_arrivals(Settings(), now_timestamp=NOW)

        assert result.arrivals == []
        assert result.degraded_reason


def test_decode_feed_round_trips_serialized_message():
    feed = _build_feed([("J", [("J30S", 60, None)])])

    decoded = decode_feed(feed.SerializeToString())

    assert decoded.entity[0].trip_update.stop_time_update[0].stop_id == "J30S"


def test_render_output_marks_empty_platform():
    output = _render_output(SubwayResult(arrivals=[], stop_id="J30S"))

    assert "Platform J30S" in output
    assert "(no upcoming trains)" in output
