from __future__ import annotations

import logging
import os
from typing import Any, Dict

import yaml
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS

from backend.config import CONFIG_PATH, Settings, build_settings, load_settings
from backend.fetchers.bus import fetch_bus_arrivals
from backend.fetchers.subway import PLATFORM_FEED_STOPS, fetch_subway_arrivals, resolve_platform
from backend.health import get_health_status
from backend.status import FeedStatus


load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

feed_status = FeedStatus()


def _current_settings() -> Settings:
    # Re-read on every request so config.yaml/env edits apply without a restart.
    try:
        return load_settings(CONFIG_PATH)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Failed to load config, using defaults: %s", exc)
        return build_settings({})


def _build_frontend_config(settings: Settings) -> Dict[str, Any]:
    return {
        "display": {
            "refresh_interval_ms": settings.refresh_interval_ms,
            "staleness_warning_sec": settings.staleness_warning_sec,
            "staleness_critical_sec": settings.staleness_critical_sec,
        },
        "subway": {
            "default_stop_id": resolve_platform(None, settings.subway_default_stop),
            "platforms": sorted(PLATFORM_FEED_STOPS),
        },
        "bus": {
            "configured": bool(settings.bus_api_key),
        },
    }


@app.route("/api/bus")
def api_bus() -> Any:
    result = fetch_bus_arrivals(_current_settings())
    if result.ok:
        feed_status.record_success("bus", len(result.arrivals))
    else:
        kind = result.kind.value if result.kind is not None else None
        feed_status.record_failure("bus", result.error or "unknown error", kind)
    return jsonify(result.to_dict()), result.http_status


@app.route("/api/subway")
def api_subway() -> Any:
    # stopId is the older camelCase spelling still sent by existing pages.
    requested = request.args.get("stop_id") or request.args.get("stopId") or None
    result = fetch_subway_arrivals(_current_settings(), requested_platform=requested)
    if result.degraded_reason:
        feed_status.record_failure("subway", result.degraded_reason, "degraded")
    else:
        feed_status.record_success("subway", len(result.arrivals))
    return jsonify(result.to_dict())


@app.route("/api/config")
def api_config() -> Any:
    settings = _current_settings()
    return jsonify({"success": True, "data": _build_frontend_config(settings)})


@app.route("/health")
def health_alias() -> Any:
    return api_health()


@app.route("/api/health")
def api_health() -> Any:
    settings = _current_settings()
    status = get_health_status(
        feed_status,
        settings.staleness_warning_sec,
        settings.staleness_critical_sec,
    )
    return jsonify(status)


def main() -> None:
    settings = _current_settings()
    if not settings.bus_api_key:
        logger.warning("MTA_BUS_TIME_KEY is not set; /api/bus will report not configured.")
    if not settings.subway_api_key:
        logger.info("MTA_SUBWAY_GTFS_RT_KEY is not set; fetching subway feed without authentication.")

    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "5000"))
    logger.info("Flask server starting on http://%s:%s", host, port)
    app.run(host=host, port=port)


if __name__ == "__main__":
    main()
