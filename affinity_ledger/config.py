"""Configuration helpers for the affinity ledger.

Settings are read from ``LEDGER_*`` environment variables, optionally seeded
from a ``.env`` file in the base directory, and collected into typed
dataclass sections.  ``load_config`` validates the result and raises
:class:`~affinity_ledger.errors.ConfigurationError` on the first problem so
that a misconfigured process never starts processing events.
"""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigurationError

DOMAINS: Tuple[str, ...] = ("cultural", "behavioral", "economic", "spatial")
CATEGORIES: Tuple[str, ...] = ("engagement", "culture", "revenue", "reach")
COMPOSITE_MODES = {"concat", "blend"}
ALLTIME = "alltime"

_WINDOW_RE = re.compile(r"^(\d+)([dh])$")


def _env(key: str, default: str) -> str:
    value = os.getenv(key, default)
    return value.strip() if isinstance(value, str) else default


def _env_int(key: str, default: int) -> int:
    try:
        return int(_env(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(_env(key, str(default)))
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = _env(key, str(default)).lower()
    if value in {"1", "true", "yes", "y"}:
        return True
    if value in {"0", "false", "no", "n"}:
        return False
    return default


def _env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env(key, ",".join(default))
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items or default


def _load_dotenv(base_dir: Path) -> None:
    env_path = base_dir / ".env"
    if env_path.exists():
        load_dotenv(env_path)


def parse_window(window: str) -> Optional[timedelta]:
    """Return the lookback for a leaderboard window, ``None`` for all time."""
    if window == ALLTIME:
        return None
    match = _WINDOW_RE.match(window or "")
    if not match:
        raise ConfigurationError(f"Unsupported leaderboard window: {window!r}")
    amount, unit = int(match.group(1)), match.group(2)
    if amount <= 0:
        raise ConfigurationError(f"Leaderboard window must be positive: {window!r}")
    return timedelta(days=amount) if unit == "d" else timedelta(hours=amount)


@dataclass(slots=True)
class TelemetryConfig:
    enable_metrics: bool = True
    export_interval: timedelta = timedelta(seconds=30)
    window_size: int = 5000


@dataclass(slots=True)
class ProjectionConfig:
    dimensions: int = 384
    half_life_days: float = 90.0
    composite_mode: str = "concat"
    initial_confidence: float = 0.1
    domain_importance: Dict[str, float] = field(
        default_factory=lambda: {
            "cultural": 0.40,
            "behavioral": 0.30,
            "economic": 0.15,
            "spatial": 0.15,
        }
    )
    # Optional per-domain override of half_life_days.
    domain_half_lives: Dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class MutationConfig:
    half_life_days: float = 30.0
    decay_floor: float = 0.2
    windows: Tuple[str, ...] = ("7d", "30d", ALLTIME)
    leaderboard_size: int = 100
    weights_file: Optional[Path] = None


@dataclass(slots=True)
class BatchConfig:
    batch_size: int = 100
    max_attempts: int = 3
    run_timeout: timedelta = timedelta(seconds=30)
    lease_ttl: timedelta = timedelta(seconds=120)
    lease_name: str = "ledger-batch"
    embedding_workers: int = 1
    schedule_interval: timedelta = timedelta(0)
    backfill_recency_factor: float = 0.5


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(slots=True)
class AppConfig:
    base_dir: Path
    database_url: str
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    mutations: MutationConfig = field(default_factory=MutationConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    extra: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "AppConfig":
        projection = self.projection
        if projection.dimensions <= 0:
            raise ConfigurationError("Embedding dimensionality must be positive")
        _check_half_life(projection.half_life_days, "profile half-life")
        if projection.composite_mode not in COMPOSITE_MODES:
            raise ConfigurationError(
                f"Unknown composite mode {projection.composite_mode!r}; "
                f"expected one of {sorted(COMPOSITE_MODES)}"
            )
        if not 0 < projection.initial_confidence <= 1:
            raise ConfigurationError("Initial confidence must be in (0, 1]")
        missing = set(DOMAINS) - projection.domain_importance.keys()
        if missing:
            raise ConfigurationError(f"Missing domain importance: {sorted(missing)}")
        if any(value < 0 for value in projection.domain_importance.values()):
            raise ConfigurationError("Domain importance values must be non-negative")
        if sum(projection.domain_importance.values()) <= 0:
            raise ConfigurationError("Domain importance values must not all be zero")
        unknown = set(projection.domain_half_lives) - set(DOMAINS)
        if unknown:
            raise ConfigurationError(f"Unknown domains in half-life overrides: {sorted(unknown)}")
        for domain, value in projection.domain_half_lives.items():
            _check_half_life(value, f"{domain} profile half-life")

        mutations = self.mutations
        _check_half_life(mutations.half_life_days, "mutation half-life")
        if not 0 <= mutations.decay_floor < 1:
            raise ConfigurationError("Mutation decay floor must be in [0, 1)")
        if not mutations.windows:
            raise ConfigurationError("At least one leaderboard window is required")
        for window in mutations.windows:
            parse_window(window)
        if mutations.leaderboard_size <= 0:
            raise ConfigurationError("Leaderboard size must be positive")
        if mutations.weights_file and not Path(mutations.weights_file).exists():
            raise ConfigurationError(f"Weights file not found: {mutations.weights_file}")

        batch = self.batch
        if batch.batch_size <= 0:
            raise ConfigurationError("Batch size must be positive")
        if batch.max_attempts <= 0:
            raise ConfigurationError("Max attempts must be positive")
        if batch.run_timeout.total_seconds() <= 0:
            raise ConfigurationError("Run timeout must be positive")
        if batch.lease_ttl < batch.run_timeout:
            raise ConfigurationError("Lease TTL must not be shorter than the run timeout")
        if batch.embedding_workers <= 0:
            raise ConfigurationError("Embedding workers must be positive")
        if not 0 < batch.backfill_recency_factor <= 1:
            raise ConfigurationError("Backfill recency factor must be in (0, 1]")
        return self


def _check_half_life(value: float, name: str) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"Invalid {name}: {value!r} (must be a positive number of days)")


def load_config(base_dir: Path | None = None) -> AppConfig:
    base_dir = base_dir or Path(os.getenv("LEDGER_HOME", Path.cwd()))
    _load_dotenv(base_dir)
    data_dir = base_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    database_url = _env("LEDGER_DB_URL", f"sqlite:///{data_dir / 'affinity_ledger.db'}")
    telemetry = TelemetryConfig(
        enable_metrics=_env_bool("LEDGER_METRICS", True),
        export_interval=timedelta(seconds=_env_int("LEDGER_METRICS_INTERVAL", 30)),
        window_size=_env_int("LEDGER_METRICS_WINDOW", 5000),
    )
    projection = ProjectionConfig(
        dimensions=_env_int("LEDGER_DIMENSIONS", 384),
        half_life_days=_env_float("LEDGER_PROFILE_HALF_LIFE_DAYS", 90.0),
        composite_mode=_env("LEDGER_COMPOSITE_MODE", "concat").lower(),
        domain_importance={
            domain: _env_float(f"LEDGER_IMPORTANCE_{domain.upper()}", default)
            for domain, default in ProjectionConfig().domain_importance.items()
        },
        domain_half_lives={
            domain: _env_float(f"LEDGER_PROFILE_HALF_LIFE_{domain.upper()}", 0.0)
            for domain in DOMAINS
            if _env(f"LEDGER_PROFILE_HALF_LIFE_{domain.upper()}", "")
        },
    )
    weights_file = _env("LEDGER_WEIGHTS_FILE", "")
    mutations = MutationConfig(
        half_life_days=_env_float("LEDGER_MUTATION_HALF_LIFE_DAYS", 30.0),
        decay_floor=_env_float("LEDGER_MUTATION_FLOOR", 0.2),
        windows=_env_list("LEDGER_WINDOWS", MutationConfig().windows),
        leaderboard_size=_env_int("LEDGER_LEADERBOARD_SIZE", 100),
        weights_file=Path(weights_file).expanduser() if weights_file else None,
    )
    batch = BatchConfig(
        batch_size=_env_int("LEDGER_BATCH_SIZE", 100),
        max_attempts=_env_int("LEDGER_MAX_ATTEMPTS", 3),
        run_timeout=timedelta(seconds=_env_float("LEDGER_RUN_TIMEOUT_SEC", 30.0)),
        lease_ttl=timedelta(seconds=_env_float("LEDGER_LEASE_TTL_SEC", 120.0)),
        lease_name=_env("LEDGER_LEASE_NAME", "ledger-batch"),
        embedding_workers=_env_int("LEDGER_EMBEDDING_WORKERS", 1),
        schedule_interval=timedelta(seconds=_env_float("LEDGER_SCHEDULE_SEC", 0.0)),
        backfill_recency_factor=_env_float("LEDGER_BACKFILL_RECENCY", 0.5),
    )
    logging_config = LoggingConfig(
        level=_env("LEDGER_LOG_LEVEL", "INFO").upper(),
        json=_env_bool("LEDGER_LOG_JSON", False),
    )
    extra = {
        "instance_id": _env("LEDGER_INSTANCE_ID", "affinity-ledger-local"),
    }

    config = AppConfig(
        base_dir=base_dir,
        database_url=database_url,
        telemetry=telemetry,
        projection=projection,
        mutations=mutations,
        batch=batch,
        logging=logging_config,
        extra=extra,
    )
    return config.validate()
