from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from datetime import timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigurationError
from .storage import get_setting, set_setting


class ConfigError(ConfigurationError, ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class LockConfig:
    lease_ttl_seconds: int
    min_interval_seconds: int
    atomic_acquire: bool


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float
    verify_tls: bool
    user_agent: str


@dataclass(frozen=True)
class ImmediateConfig:
    timeout_seconds: float


@dataclass(frozen=True)
class SitesConfig:
    cache_ttl_seconds: int
    max_sites: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    max_attempts: int
    backoff_seconds: list[int]


@dataclass(frozen=True)
class WorkerConfig:
    concurrency: int
    batch_size: int
    sleep_seconds: int


@dataclass(frozen=True)
class LoggingConfig:
    detailed: bool


@dataclass(frozen=True)
class Config:
    app: AppConfig
    rate_limit: RateLimitConfig
    lock: LockConfig
    http: HttpConfig
    immediate: ImmediateConfig
    sites: SitesConfig
    jobs: JobsConfig
    worker: WorkerConfig
    logging: LoggingConfig
    static_endpoint_token: str | None = None


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "sitecron",
        "timezone": "UTC",
    },
    "rate_limit": {
        "max_requests": 5,
        "window_seconds": 300,
    },
    "lock": {
        "lease_ttl_seconds": 300,
        "min_interval_seconds": 60,
        "atomic_acquire": True,
    },
    "http": {
        "timeout_seconds": 15.0,
        "verify_tls": False,
        "user_agent": "",
    },
    "immediate": {
        "timeout_seconds": 5.0,
    },
    "sites": {
        "cache_ttl_seconds": 3600,
        "max_sites": 200,
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "max_attempts": 3,
        "backoff_seconds": [30, 120, 600],
    },
    "worker": {
        "concurrency": 1,
        "batch_size": 5,
        "sleep_seconds": 10,
    },
    "logging": {
        "detailed": False,
    },
}

CONFIG_KEY = "config.runtime"
STATIC_TOKEN_KEY = "endpoint_token"

ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "SC_RATE_LIMIT_MAX_REQUESTS": ("rate_limit", "max_requests", int),
    "SC_RATE_LIMIT_WINDOW_SECONDS": ("rate_limit", "window_seconds", int),
    "SC_LOCK_TTL_SECONDS": ("lock", "lease_ttl_seconds", int),
    "SC_LOCK_MIN_INTERVAL_SECONDS": ("lock", "min_interval_seconds", int),
    "SC_REQUEST_TIMEOUT_SECONDS": ("http", "timeout_seconds", float),
    "SC_SITES_CACHE_TTL_SECONDS": ("sites", "cache_ttl_seconds", int),
    "SC_SITES_MAX": ("sites", "max_sites", int),
    "SC_WORKER_CONCURRENCY": ("worker", "concurrency", int),
    "SC_WORKER_BATCH_SIZE": ("worker", "batch_size", int),
    "SC_DETAILED_LOGGING": ("logging", "detailed", bool),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return _deep_merge(DEFAULT_CONFIG, cfg)


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


def load_static_config(path: str | None = None) -> dict[str, Any]:
    path = path or os.environ.get("SC_CONFIG_PATH", "").strip()
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def load_runtime_config(conn, static: dict[str, Any] | None = None) -> Config:
    cfg = get_runtime_config(conn)
    if static is None:
        static = load_static_config()
    overrides = {key: value for key, value in static.items() if key != STATIC_TOKEN_KEY}
    errors: list[str] = []
    _validate_dict(overrides, DEFAULT_CONFIG, "config.static", errors, partial=True)
    if errors:
        raise ConfigError("Invalid static config: " + "; ".join(errors))
    cfg = _deep_merge(cfg, overrides)
    _apply_env_overrides(cfg)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    config = _build_config(cfg)
    token = static.get(STATIC_TOKEN_KEY)
    if token is not None and not isinstance(token, str):
        raise ConfigError("endpoint_token must be a string")
    return replace(config, static_endpoint_token=token or None)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    for section, key in (
        ("rate_limit", "max_requests"),
        ("rate_limit", "window_seconds"),
        ("lock", "lease_ttl_seconds"),
        ("sites", "max_sites"),
        ("jobs", "max_attempts"),
        ("worker", "concurrency"),
        ("worker", "batch_size"),
    ):
        value = (cfg.get(section) or {}).get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value < 1:
            errors.append(f"config.runtime.{section}.{key} must be >= 1")
    tz_name = (cfg.get("app") or {}).get("timezone")
    if isinstance(tz_name, str):
        try:
            load_timezone(tz_name)
        except ConfigError as exc:
            errors.append(f"config.runtime.app.timezone: {exc}")
    return errors


def load_timezone(tz_name: str):
    if tz_name.upper() in {"UTC", "Z"}:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown timezone: {tz_name}") from exc


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    for env_name, (section, key, kind) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name, "").strip()
        if not raw:
            continue
        cfg.setdefault(section, {})[key] = _coerce_env(env_name, raw, kind)


def _coerce_env(env_name: str, raw: str, kind: type) -> Any:
    if kind is bool:
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigError(f"{env_name} must be a boolean")
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigError(f"{env_name} must be {kind.__name__}") from exc


def _validate_dict(
    value: dict[str, Any],
    schema: dict[str, Any],
    path: str,
    errors: list[str],
    partial: bool = False,
) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    if not partial:
        for key in schema.keys():
            if key not in value:
                errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors, partial)


def _validate_value(
    value: Any, default: Any, path: str, errors: list[str], partial: bool = False
) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors, partial)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)) or isinstance(item, bool):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    rate_cfg = cfg.get("rate_limit") or {}
    lock_cfg = cfg.get("lock") or {}
    http_cfg = cfg.get("http") or {}
    immediate_cfg = cfg.get("immediate") or {}
    sites_cfg = cfg.get("sites") or {}
    jobs_cfg = cfg.get("jobs") or {}
    worker_cfg = cfg.get("worker") or {}
    logging_cfg = cfg.get("logging") or {}

    return Config(
        app=AppConfig(
            name=str(app_cfg.get("name")),
            timezone=str(app_cfg.get("timezone")),
        ),
        rate_limit=RateLimitConfig(
            max_requests=int(rate_cfg.get("max_requests")),
            window_seconds=int(rate_cfg.get("window_seconds")),
        ),
        lock=LockConfig(
            lease_ttl_seconds=int(lock_cfg.get("lease_ttl_seconds")),
            min_interval_seconds=int(lock_cfg.get("min_interval_seconds")),
            atomic_acquire=bool(lock_cfg.get("atomic_acquire")),
        ),
        http=HttpConfig(
            timeout_seconds=float(http_cfg.get("timeout_seconds")),
            verify_tls=bool(http_cfg.get("verify_tls")),
            user_agent=str(http_cfg.get("user_agent") or ""),
        ),
        immediate=ImmediateConfig(
            timeout_seconds=float(immediate_cfg.get("timeout_seconds")),
        ),
        sites=SitesConfig(
            cache_ttl_seconds=int(sites_cfg.get("cache_ttl_seconds")),
            max_sites=int(sites_cfg.get("max_sites")),
        ),
        jobs=JobsConfig(
            lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
            max_attempts=int(jobs_cfg.get("max_attempts")),
            backoff_seconds=[int(item) for item in jobs_cfg.get("backoff_seconds") or []],
        ),
        worker=WorkerConfig(
            concurrency=int(worker_cfg.get("concurrency")),
            batch_size=int(worker_cfg.get("batch_size")),
            sleep_seconds=int(worker_cfg.get("sleep_seconds")),
        ),
        logging=LoggingConfig(detailed=bool(logging_cfg.get("detailed"))),
    )


def get_version() -> str:
    try:
        from importlib.metadata import version

        return version("sitecron")
    except Exception:  # noqa: BLE001
        return "unknown"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_copy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = json.loads(json.dumps(value))
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
