# webwatch/config_schema.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from . import schedule
from .scraping.models import Job

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./local/webwatch.db"


class ConfigError(ValueError):
    """Raised when the config is invalid."""


_INT_FIELDS = {
    # name: (default, minimum)
    "executor_workers": (10, 1),
    "max_instances": (3, 1),
    "misfire_grace_time": (60, 0),
}


@dataclass
class Settings:
    """Typed view of the service configuration."""

    timezone: str = "UTC"
    database_path: str = DEFAULT_DB_PATH
    executor_workers: int = 10
    max_instances: int = 3
    misfire_grace_time: int = 60
    jobs: list[Job] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> Settings:
        validate(cfg)
        return cls(
            timezone=cfg["timezone"],
            database_path=cfg["database_path"],
            executor_workers=int(cfg["executor_workers"]),
            max_instances=int(cfg["max_instances"]),
            misfire_grace_time=int(cfg["misfire_grace_time"]),
            jobs=[Job.from_dict(j) for j in cfg["jobs"]],
        )


def load_config(path: str | None = None) -> dict[str, Any]:
    """
    Load the service configuration.

    Resolution order:
      1) Explicit `path` argument (if provided)
      2) os.environ['CONFIG_PATH'] (if set)
      3) Internal default (no seed jobs)

    Returns a dict with every top-level key filled in (see _apply_top_level_defaults).
    """
    resolved_path = path or os.environ.get("CONFIG_PATH")
    if not resolved_path:
        logger.info("CONFIG_PATH not provided; using default config.")
        cfg: dict[str, Any] = {}
    else:
        cfg = _read_any(resolved_path)

    _apply_top_level_defaults(cfg)
    return cfg


def validate(cfg: dict[str, Any]) -> None:
    """
    Validate the configuration. Raise ConfigError on any problem.
    No prints, no sys.exit().
    """
    if not isinstance(cfg, dict):
        raise ConfigError("Config must be a dict.")

    tz = cfg.get("timezone")
    if tz is not None:
        if not isinstance(tz, str):
            raise ConfigError("'timezone' must be a string if provided.")
        _require_zone(tz)

    db_path = cfg.get("database_path")
    if db_path is not None and (not isinstance(db_path, str) or not db_path.strip()):
        raise ConfigError("'database_path' must be a non-empty string if provided.")

    for name, (_default, minimum) in _INT_FIELDS.items():
        if name in cfg:
            _require_int(cfg[name], name, minimum)

    jobs = cfg.get("jobs", [])
    if not isinstance(jobs, list):
        raise ConfigError("'jobs' must be a list.")

    seen_names: set[str] = set()
    for idx, raw in enumerate(jobs):
        if not isinstance(raw, dict):
            raise ConfigError(f"Job at index {idx} must be an object/dict.")
        try:
            job = Job.from_dict(raw)
        except ValueError as e:
            raise ConfigError(f"Job {idx}: {e}") from e
        if job.name in seen_names:
            raise ConfigError(f"Duplicate job name '{job.name}'.")
        seen_names.add(job.name)
        try:
            schedule.parse(job.schedule)
        except schedule.InvalidScheduleError as e:
            raise ConfigError(f"Job '{job.name}': {e}") from e


# ---- Helpers ----------------------------------------------------------------


def _read_any(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e

    try:
        if path.lower().endswith((".yaml", ".yml")):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text) if text.strip() else {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Config file {path} could not be parsed: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain an object at top level.")
    logger.debug("Loaded config from %s", path)
    return data


def _apply_top_level_defaults(cfg: dict[str, Any]) -> None:
    if "jobs" not in cfg or cfg["jobs"] is None:
        cfg["jobs"] = []

    tz = cfg.get("timezone")
    if not isinstance(tz, str) or not tz.strip():
        cfg["timezone"] = os.environ.get("TZ") or "UTC"

    db_path = cfg.get("database_path")
    if not isinstance(db_path, str) or not db_path.strip():
        cfg["database_path"] = os.environ.get("WEBWATCH_DB_PATH") or DEFAULT_DB_PATH

    for name, (default, _minimum) in _INT_FIELDS.items():
        cfg.setdefault(name, default)


def _require_int(value: Any, name: str, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{name}' must be an integer.")
    if value < minimum:
        raise ConfigError(f"'{name}' must be >= {minimum}.")


def _require_zone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown timezone {name!r}.") from e
