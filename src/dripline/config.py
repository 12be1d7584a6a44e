from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class HealthConfig:
    stale_after_hours: float
    failure_streak: int
    warning_drop_percent: float
    critical_drop_percent: float


@dataclass(frozen=True)
class ProgressConfig:
    poll_seconds: float
    recent_window_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int


@dataclass(frozen=True)
class WorkerConfig:
    schedule_debounce_seconds: int


@dataclass(frozen=True)
class Config:
    health: HealthConfig
    progress: ProgressConfig
    jobs: JobsConfig
    worker: WorkerConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "health": {
        "stale_after_hours": 48.0,
        "failure_streak": 3,
        "warning_drop_percent": 50.0,
        "critical_drop_percent": 75.0,
    },
    "progress": {
        "poll_seconds": 5.0,
        "recent_window_seconds": 300,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
    },
    "worker": {
        "schedule_debounce_seconds": 300,
    },
}

CONFIG_KEY = "config.runtime"
DEFAULT_DATA_DIR = "/data"


def get_state_db_path() -> str:
    data_dir = os.environ.get("DL_DATA_DIR", DEFAULT_DATA_DIR)
    return os.path.join(data_dir, "state.sqlite3")


def load_config_file(path: str) -> dict[str, Any]:
    """Read a YAML config file and overlay it on ``DEFAULT_CONFIG``."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _deep_merge(_deep_copy(DEFAULT_CONFIG), raw)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError(f"Invalid config file {path}: " + "; ".join(errors))
    return merged


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        seed = _deep_copy(DEFAULT_CONFIG)
        config_path = os.environ.get("DL_CONFIG_PATH")
        if config_path:
            seed = load_config_file(config_path)
        set_setting(conn, CONFIG_KEY, seed)
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        health = cfg["health"]
        if health["warning_drop_percent"] > health["critical_drop_percent"]:
            errors.append(
                "config.runtime.health.warning_drop_percent must not exceed critical_drop_percent"
            )
        if cfg["progress"]["poll_seconds"] <= 0:
            errors.append("config.runtime.progress.poll_seconds must be positive")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    health_cfg = cfg.get("health") or {}
    progress_cfg = cfg.get("progress") or {}
    jobs_cfg = cfg.get("jobs") or {}
    worker_cfg = cfg.get("worker") or {}

    return Config(
        health=HealthConfig(
            stale_after_hours=float(health_cfg.get("stale_after_hours")),
            failure_streak=int(health_cfg.get("failure_streak")),
            warning_drop_percent=float(health_cfg.get("warning_drop_percent")),
            critical_drop_percent=float(health_cfg.get("critical_drop_percent")),
        ),
        progress=ProgressConfig(
            poll_seconds=float(progress_cfg.get("poll_seconds")),
            recent_window_seconds=int(progress_cfg.get("recent_window_seconds")),
        ),
        jobs=JobsConfig(lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds"))),
        worker=WorkerConfig(
            schedule_debounce_seconds=int(worker_cfg.get("schedule_debounce_seconds"))
        ),
    )


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
