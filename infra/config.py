"""Centralized application configuration with schema validation.

This module is intentionally compatibility-first:
- Supports flat environment names (for example ``ARTIFACTSTREAM_WORKERS``).
- Supports nested names (for example ``PIPELINE__WORKERS``) for consistency.
- Optionally reads a local ``.env`` file before process env values.

CLI flags are applied on top with :meth:`Settings.with_overrides`.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from contracts.artifacts import ArtifactKind

# Filename patterns used to tag artifacts when no explicit kind is given.
_DEFAULT_KIND_PATTERNS: dict[str, str] = {
    ArtifactKind.EVENT_LOG.value: r"(?i)\.evtx$",
    ArtifactKind.FILESYSTEM_METADATA.value: r"(?i)(^|[\\/])\$?mft(\.bin|\.raw)?$",
    ArtifactKind.REGISTRY_HIVE.value: (
        r"(?i)(^|[\\/])(system|software|sam|security|default|ntuser\.dat|usrclass\.dat|amcache\.hve)$"
    ),
    ArtifactKind.USAGE_DATABASE.value: r"(?i)(^|[\\/])srudb\.dat$",
    ArtifactKind.CSV_TABLE.value: r"(?i)\.csv$",
}

_SINK_NAMES = {"duckdb", "parquet", "kafka"}


def _split_list(value: object, what: str) -> list[str]:
    """Accept list or comma-separated string and normalize to unique ordered list."""
    if value is None:
        return []
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple)):
        items = [str(part).strip() for part in value if str(part).strip()]
    else:
        raise ValueError(f"{what} must be a list[str] or comma-separated string")
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class InputConfig(BaseModel):
    """Where artifacts come from and how they are tagged."""

    model_config = ConfigDict(frozen=True)

    paths: list[str] = Field(default_factory=list)
    recursive: bool = Field(default=True)
    host: str = Field(default="")
    sniff: bool = Field(default=True)
    kind_patterns: dict[str, str] = Field(default_factory=lambda: dict(_DEFAULT_KIND_PATTERNS))
    csv_mapping: str | None = Field(default=None)
    hive_root_name: str = Field(default="ROOT")
    hive_max_depth: int = Field(default=512, ge=1, le=4096)

    @field_validator("paths", mode="before")
    @classmethod
    def _normalize_paths(cls, value: object) -> list[str]:
        return _split_list(value, "input.paths")

    @field_validator("kind_patterns", mode="before")
    @classmethod
    def _normalize_patterns(cls, value: object) -> dict[str, str]:
        if value is None:
            return dict(_DEFAULT_KIND_PATTERNS)
        if not isinstance(value, Mapping):
            raise ValueError("input.kind_patterns must be a mapping of kind -> regex")
        patterns = dict(_DEFAULT_KIND_PATTERNS)
        for key, pattern in value.items():
            kind = ArtifactKind.parse(str(key))
            try:
                re.compile(str(pattern))
            except re.error as exc:
                raise ValueError(f"invalid pattern for {kind.value}: {exc}") from exc
            patterns[kind.value] = str(pattern)
        return patterns

    @field_validator("host", mode="before")
    @classmethod
    def _normalize_host(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("csv_mapping", mode="before")
    @classmethod
    def _normalize_mapping(cls, value: object) -> str | None:
        return _optional_text(value)

    @field_validator("hive_root_name", mode="before")
    @classmethod
    def _normalize_root_name(cls, value: object) -> str:
        text = str(value or "").strip().strip("\\")
        return text or "ROOT"


class PipelineConfig(BaseModel):
    """Decode worker pool, output channel and batching."""

    model_config = ConfigDict(frozen=True)

    workers: int = Field(default=4, ge=1, le=256)
    channel_capacity: int = Field(default=10_000, ge=1)
    batch_size: int = Field(default=1000, ge=1)
    flush_interval_seconds: float = Field(default=2.0, gt=0.0)
    yield_every: int = Field(default=256, ge=1)
    hard_timeout_seconds: float | None = Field(default=None, gt=0.0)


class RetryConfig(BaseModel):
    """Bounded exponential backoff for batch delivery."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1, le=100)
    initial_backoff_seconds: float = Field(default=0.5, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=30.0, ge=0.0)


class DedupConfig(BaseModel):
    """Fingerprint admission settings."""

    model_config = ConfigDict(frozen=True)

    granularity: Literal["artifact", "record", "both"] = Field(default="both")
    record_mode: Literal["position", "content"] = Field(default="position")
    max_entries: int = Field(default=1_000_000, ge=1)
    retention_seconds: float | None = Field(default=None, gt=0.0)
    store_path: str | None = Field(default=None)

    @field_validator("granularity", "record_mode", mode="before")
    @classmethod
    def _normalize_choice(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("store_path", mode="before")
    @classmethod
    def _normalize_store(cls, value: object) -> str | None:
        return _optional_text(value)


class SinksConfig(BaseModel):
    """Delivery targets."""

    model_config = ConfigDict(frozen=True)

    outputs: list[str] = Field(default_factory=lambda: ["duckdb"])
    duckdb_path: str = Field(default="data/artifactstream.duckdb")
    duckdb_threads: int | None = Field(default=None, ge=1)
    parquet_dir: str = Field(default="data/parquet")
    kafka_bootstrap: str = Field(default="localhost:9092")
    kafka_topic_prefix: str = Field(default="artifactstream")
    kafka_client_id: str = Field(default="artifactstream")
    kafka_acks: str = Field(default="all")
    kafka_delivery_timeout_seconds: float = Field(default=30.0, gt=0.0)
    kafka_partitions: int = Field(default=3, ge=1)
    kafka_replication: int = Field(default=1, ge=1)
    dead_letter_path: str | None = Field(default=None)
    manifest_path: str | None = Field(default=None)

    @field_validator("outputs", mode="before")
    @classmethod
    def _normalize_outputs(cls, value: object) -> list[str]:
        outputs = [o.lower() for o in _split_list(value, "sinks.outputs")]
        unknown = sorted(set(outputs) - _SINK_NAMES)
        if unknown:
            raise ValueError(f"unknown sink(s): {unknown}; expected any of {sorted(_SINK_NAMES)}")
        return outputs

    @field_validator("dead_letter_path", "manifest_path", mode="before")
    @classmethod
    def _normalize_optional_path(cls, value: object) -> str | None:
        return _optional_text(value)

    @field_validator("kafka_topic_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        text = str(value or "").strip()
        if not re.match(r"^[A-Za-z0-9._-]+$", text):
            raise ValueError("sinks.kafka_topic_prefix must match [A-Za-z0-9._-]+")
        return text


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return text
        return "INFO"


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    input: InputConfig = Field(default_factory=InputConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    sinks: SinksConfig = Field(default_factory=SinksConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> Settings:
        """Return a copy with per-section values replaced (``None`` values are ignored)."""
        payload = self.model_dump()
        for section, values in overrides.items():
            if section not in payload:
                raise KeyError(f"Unknown settings section: {section!r}")
            payload[section].update({k: v for k, v in values.items() if v is not None})
        return type(self).model_validate(payload)


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _kind_patterns(env: Mapping[str, str]) -> dict[str, str] | None:
    """Collect ``INPUT__PATTERN_<KIND>`` overrides."""
    out: dict[str, str] = {}
    for kind in ArtifactKind:
        value = _first_non_empty(env, f"INPUT__PATTERN_{kind.name}", f"ARTIFACTSTREAM_PATTERN_{kind.name}")
        if value is not None:
            out[kind.value] = value
    return out or None


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    input_cfg = {
        "paths": _first_non_empty(env, "INPUT__PATHS", "ARTIFACTSTREAM_INPUT"),
        "recursive": _first_non_empty(env, "INPUT__RECURSIVE", "ARTIFACTSTREAM_RECURSIVE"),
        "host": _first_non_empty(env, "INPUT__HOST", "ARTIFACTSTREAM_HOST"),
        "sniff": _first_non_empty(env, "INPUT__SNIFF", "ARTIFACTSTREAM_SNIFF"),
        "kind_patterns": _kind_patterns(env),
        "csv_mapping": _first_non_empty(env, "INPUT__CSV_MAPPING", "ARTIFACTSTREAM_CSV_MAPPING"),
        "hive_root_name": _first_non_empty(env, "INPUT__HIVE_ROOT_NAME", "ARTIFACTSTREAM_HIVE_ROOT"),
        "hive_max_depth": _first_non_empty(env, "INPUT__HIVE_MAX_DEPTH", "ARTIFACTSTREAM_HIVE_MAX_DEPTH"),
    }
    pipeline = {
        "workers": _first_non_empty(env, "PIPELINE__WORKERS", "ARTIFACTSTREAM_WORKERS"),
        "channel_capacity": _first_non_empty(env, "PIPELINE__CHANNEL_CAPACITY", "ARTIFACTSTREAM_CHANNEL_CAPACITY"),
        "batch_size": _first_non_empty(env, "PIPELINE__BATCH_SIZE", "ARTIFACTSTREAM_BATCH_SIZE"),
        "flush_interval_seconds": _first_non_empty(
            env, "PIPELINE__FLUSH_INTERVAL_SECONDS", "ARTIFACTSTREAM_FLUSH_INTERVAL"
        ),
        "yield_every": _first_non_empty(env, "PIPELINE__YIELD_EVERY", "ARTIFACTSTREAM_YIELD_EVERY"),
        "hard_timeout_seconds": _first_non_empty(
            env, "PIPELINE__HARD_TIMEOUT_SECONDS", "ARTIFACTSTREAM_HARD_TIMEOUT"
        ),
    }
    retry = {
        "max_attempts": _first_non_empty(env, "RETRY__MAX_ATTEMPTS", "ARTIFACTSTREAM_RETRY_MAX_ATTEMPTS"),
        "initial_backoff_seconds": _first_non_empty(
            env, "RETRY__INITIAL_BACKOFF_SECONDS", "ARTIFACTSTREAM_RETRY_INITIAL_BACKOFF"
        ),
        "multiplier": _first_non_empty(env, "RETRY__MULTIPLIER", "ARTIFACTSTREAM_RETRY_MULTIPLIER"),
        "max_backoff_seconds": _first_non_empty(
            env, "RETRY__MAX_BACKOFF_SECONDS", "ARTIFACTSTREAM_RETRY_MAX_BACKOFF"
        ),
    }
    dedup = {
        "granularity": _first_non_empty(env, "DEDUP__GRANULARITY", "ARTIFACTSTREAM_DEDUP_GRANULARITY"),
        "record_mode": _first_non_empty(env, "DEDUP__RECORD_MODE", "ARTIFACTSTREAM_DEDUP_RECORD_MODE"),
        "max_entries": _first_non_empty(env, "DEDUP__MAX_ENTRIES", "ARTIFACTSTREAM_DEDUP_MAX_ENTRIES"),
        "retention_seconds": _first_non_empty(env, "DEDUP__RETENTION_SECONDS", "ARTIFACTSTREAM_DEDUP_RETENTION"),
        "store_path": _first_non_empty(env, "DEDUP__STORE_PATH", "ARTIFACTSTREAM_DEDUP_STORE"),
    }
    sinks = {
        "outputs": _first_non_empty(env, "SINKS__OUTPUTS", "ARTIFACTSTREAM_OUTPUTS"),
        "duckdb_path": _first_non_empty(env, "SINKS__DUCKDB_PATH", "ARTIFACTSTREAM_DUCKDB"),
        "duckdb_threads": _first_non_empty(env, "SINKS__DUCKDB_THREADS", "ARTIFACTSTREAM_DUCKDB_THREADS"),
        "parquet_dir": _first_non_empty(env, "SINKS__PARQUET_DIR", "ARTIFACTSTREAM_PARQUET_DIR"),
        "kafka_bootstrap": _first_non_empty(env, "SINKS__KAFKA_BOOTSTRAP", "KAFKA_BOOTSTRAP_SERVERS"),
        "kafka_topic_prefix": _first_non_empty(env, "SINKS__KAFKA_TOPIC_PREFIX", "ARTIFACTSTREAM_TOPIC_PREFIX"),
        "kafka_client_id": _first_non_empty(env, "SINKS__KAFKA_CLIENT_ID", "KAFKA_CLIENT_ID"),
        "kafka_acks": _first_non_empty(env, "SINKS__KAFKA_ACKS", "KAFKA_ACKS"),
        "kafka_delivery_timeout_seconds": _first_non_empty(
            env, "SINKS__KAFKA_DELIVERY_TIMEOUT_SECONDS", "KAFKA_DELIVERY_TIMEOUT"
        ),
        "kafka_partitions": _first_non_empty(env, "SINKS__KAFKA_PARTITIONS", "KAFKA_PARTITIONS"),
        "kafka_replication": _first_non_empty(env, "SINKS__KAFKA_REPLICATION", "KAFKA_REPLICATION"),
        "dead_letter_path": _first_non_empty(env, "SINKS__DEAD_LETTER_PATH", "ARTIFACTSTREAM_DEAD_LETTER"),
        "manifest_path": _first_non_empty(env, "SINKS__MANIFEST_PATH", "ARTIFACTSTREAM_MANIFEST"),
    }
    logging_settings = {
        "level": _first_non_empty(env, "LOGGING__LEVEL", "ARTIFACTSTREAM_LOG_LEVEL"),
        "json_logs": _first_non_empty(env, "LOGGING__JSON_LOGS", "ARTIFACTSTREAM_LOG_JSON"),
        "override_root_handlers": _first_non_empty(
            env, "LOGGING__OVERRIDE_ROOT_HANDLERS", "ARTIFACTSTREAM_LOG_OVERRIDE"
        ),
    }
    return {
        "input": {k: v for k, v in input_cfg.items() if v is not None},
        "pipeline": {k: v for k, v in pipeline.items() if v is not None},
        "retry": {k: v for k, v in retry.items() if v is not None},
        "dedup": {k: v for k, v in dedup.items() if v is not None},
        "sinks": {k: v for k, v in sinks.items() if v is not None},
        "logging": {k: v for k, v in logging_settings.items() if v is not None},
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "DedupConfig",
    "InputConfig",
    "LoggingSettings",
    "PipelineConfig",
    "RetryConfig",
    "Settings",
    "SinksConfig",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
