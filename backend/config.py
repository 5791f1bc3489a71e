from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


ROOT_DIR = Path(__file__).resolve().parents[1]
CONFIG_PATH = ROOT_DIR / "config.yaml"

DEFAULT_REFRESH_INTERVAL_MS = 20000
MIN_REFRESH_INTERVAL_MS = 5000
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    bus_api_key: Optional[str] = None
    subway_api_key: Optional[str] = None
    subway_default_stop: Optional[str] = None
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    staleness_warning_sec: int = 60
    staleness_critical_sec: int = 120


def load_config(config_path: Path = CONFIG_PATH) -> Dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with config_path.open() as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping.")
    return data


def _safe_int(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_settings(
    config: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Merge config.yaml values with environment overrides.

    API keys only ever come from the environment. The subway platform default
    prefers ``SUBWAY_STOP_ID`` and falls back to ``subway.default_stop_id``.
    """
    env = os.environ if environ is None else environ
    display = _section(config, "display")
    feeds = _section(config, "feeds")
    subway = _section(config, "subway")

    warning = max(0, _safe_int(display.get("staleness_warning_sec", 60), 60))
    critical = max(0, _safe_int(display.get("staleness_critical_sec", 120), 120))
    if critical < warning:
        critical = warning

    refresh = _safe_int(
        display.get("refresh_interval_ms", DEFAULT_REFRESH_INTERVAL_MS),
        DEFAULT_REFRESH_INTERVAL_MS,
    )
    timeout = _safe_int(
        feeds.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS),
        DEFAULT_REQUEST_TIMEOUT_SECONDS,
    )

    return Settings(
        bus_api_key=_non_empty(env.get("MTA_BUS_TIME_KEY")),
        subway_api_key=_non_empty(env.get("MTA_SUBWAY_GTFS_RT_KEY")),
        subway_default_stop=_non_empty(env.get("SUBWAY_STOP_ID"))
        or _non_empty(subway.get("default_stop_id")),
        request_timeout_seconds=max(1, timeout),
        refresh_interval_ms=max(MIN_REFRESH_INTERVAL_MS, refresh),
        staleness_warning_sec=warning,
        staleness_critical_sec=critical,
    )


def load_settings(
    config_path: Path = CONFIG_PATH,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    logger.debug("Loading config from %s", config_path)
    return build_settings(load_config(config_path), environ)
