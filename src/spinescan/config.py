from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_USER_AGENT = "spinescan/0.1"


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path
    device_id: Path


@dataclass(slots=True)
class ApiConfig:
    base_url: str
    device_id: str | None = None
    user_agent: str = DEFAULT_USER_AGENT
    connect_timeout_seconds: float = 10.0
    upload_timeout_seconds: float = 30.0
    results_timeout_seconds: float = 30.0
    cleanup_timeout_seconds: float = 10.0


@dataclass(slots=True)
class PipelineConfig:
    max_concurrent_jobs: int = 5
    stream_max_attempts: int = 3
    stream_backoff_seconds: float = 1.0
    stream_timeout_seconds: float = 300.0
    terminal_expiry_seconds: float = 5.0
    canceled_expiry_seconds: float = 3.0


@dataclass(slots=True)
class RateLimitConfig:
    default_cooldown_seconds: float = 60.0
    tick_seconds: float = 1.0


@dataclass(slots=True)
class AppConfig:
    api: ApiConfig
    paths: PathsConfig
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _positive_float(mapping: dict, key: str, section: str, default: float) -> float:
    value = float(mapping.get(key, default))
    if value <= 0:
        raise ValueError(f"`{section}.{key}` must be > 0")
    return value


def _non_negative_float(mapping: dict, key: str, section: str, default: float) -> float:
    value = float(mapping.get(key, default))
    if value < 0:
        raise ValueError(f"`{section}.{key}` must be >= 0")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    api_raw = _require(raw, "api", "root")
    if not isinstance(api_raw, dict):
        raise ValueError("`api` must be a mapping")
    paths_raw = _section(raw, "paths")
    pipeline_raw = _section(raw, "pipeline")
    rate_limit_raw = _section(raw, "rate_limit")

    def to_path(key: str, default: str) -> Path:
        output = Path(str(paths_raw.get(key, default))).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        db=to_path("db", "spinescan.db"),
        log=to_path("log", "spinescan.log"),
        device_id=to_path("device_id", "device_id"),
    )

    base_url = str(_require(api_raw, "base_url", "api")).rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ValueError("`api.base_url` must be an http(s) URL")
    device_id = api_raw.get("device_id")
    api = ApiConfig(
        base_url=base_url,
        device_id=str(device_id) if device_id else None,
        user_agent=str(api_raw.get("user_agent", DEFAULT_USER_AGENT)),
        connect_timeout_seconds=_positive_float(api_raw, "connect_timeout_seconds", "api", 10.0),
        upload_timeout_seconds=_positive_float(api_raw, "upload_timeout_seconds", "api", 30.0),
        results_timeout_seconds=_positive_float(api_raw, "results_timeout_seconds", "api", 30.0),
        cleanup_timeout_seconds=_positive_float(api_raw, "cleanup_timeout_seconds", "api", 10.0),
    )

    pipeline = PipelineConfig(
        max_concurrent_jobs=int(pipeline_raw.get("max_concurrent_jobs", 5)),
        stream_max_attempts=int(pipeline_raw.get("stream_max_attempts", 3)),
        stream_backoff_seconds=_non_negative_float(pipeline_raw, "stream_backoff_seconds", "pipeline", 1.0),
        stream_timeout_seconds=_positive_float(pipeline_raw, "stream_timeout_seconds", "pipeline", 300.0),
        terminal_expiry_seconds=_non_negative_float(pipeline_raw, "terminal_expiry_seconds", "pipeline", 5.0),
        canceled_expiry_seconds=_non_negative_float(pipeline_raw, "canceled_expiry_seconds", "pipeline", 3.0),
    )
    if pipeline.max_concurrent_jobs < 1:
        raise ValueError("`pipeline.max_concurrent_jobs` must be >= 1")
    if pipeline.stream_max_attempts < 1:
        raise ValueError("`pipeline.stream_max_attempts` must be >= 1")

    rate_limit = RateLimitConfig(
        default_cooldown_seconds=_positive_float(
            rate_limit_raw, "default_cooldown_seconds", "rate_limit", 60.0
        ),
        tick_seconds=_positive_float(rate_limit_raw, "tick_seconds", "rate_limit", 1.0),
    )

    return AppConfig(api=api, paths=paths, pipeline=pipeline, rate_limit=rate_limit)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
    config.paths.device_id.parent.mkdir(parents=True, exist_ok=True)
