"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from memo_engine.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_DEFAULT_TIER_MINUTES: dict[str, int | None] = {"FREE": 120, "PRO": 600, "ENTERPRISE": None}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the memo processing service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  storage_backend: str
  blob_backend: str
  audio_bucket: str
  gcs_storage_host: str | None
  gcp_project_id: str | None
  openai_api_key: str | None
  openai_base_url: str | None
  transcription_model: str
  generation_model: str
  generation_temperature: float
  job_max_attempts: int
  job_backoff_base_seconds: float
  job_backoff_max_seconds: float
  fail_fast_permanent_errors: bool
  transcription_concurrency: int
  generation_concurrency: int
  transcription_timeout_seconds: float
  generation_timeout_seconds: float
  transcription_lease_seconds: float
  generation_lease_seconds: float
  worker_poll_interval_seconds: float
  worker_max_poll_interval_seconds: float
  worker_shutdown_grace_seconds: float
  sweep_interval_seconds: float
  stall_grace_seconds: float
  tier_monthly_minutes: dict[str, int | None] = field(hash=False)
  default_tier: str
  max_audio_bytes: int
  run_workers_in_api: bool
  operator_accounts: frozenset[str] = frozenset()


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("MEMO_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("MEMO_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_accounts(raw: str | None) -> frozenset[str]:
  """Parse a comma-separated list of account ids."""
  if not raw:
    return frozenset()
  return frozenset(account.strip() for account in raw.split(",") if account.strip())


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _parse_tier_minutes(raw: str | None) -> dict[str, int | None]:
  """Parse the per-tier monthly allotment; null means unlimited."""
  if not raw:
    return dict(_DEFAULT_TIER_MINUTES)
  try:
    parsed: dict[str, Any] = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError("MEMO_TIER_MONTHLY_MINUTES must be a JSON object.") from exc
  if not isinstance(parsed, dict):
    raise ValueError("MEMO_TIER_MONTHLY_MINUTES must be a JSON object.")

  tiers: dict[str, int | None] = {}
  for tier, minutes in parsed.items():
    if minutes is None:
      tiers[str(tier).upper()] = None
      continue
    if not isinstance(minutes, int) or minutes < 0:
      raise ValueError(f"MEMO_TIER_MONTHLY_MINUTES[{tier}] must be a non-negative integer or null.")
    tiers[str(tier).upper()] = minutes
  return tiers


def _choice(name: str, default: str, allowed: set[str]) -> str:
  value = (os.getenv(name) or default).strip().lower()
  if value not in allowed:
    raise ValueError(f"{name} must be one of: {', '.join(sorted(allowed))}.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("MEMO_ENV", "development").lower()
  debug = _parse_bool(os.getenv("MEMO_DEBUG"))

  log_max_bytes = _positive_int("MEMO_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("MEMO_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("MEMO_LOG_BACKUP_COUNT must be zero or a positive integer.")

  transcription_timeout_seconds = _positive_float("MEMO_TRANSCRIPTION_TIMEOUT_SECONDS", "900")
  generation_timeout_seconds = _positive_float("MEMO_GENERATION_TIMEOUT_SECONDS", "180")
  # Leases must outlive the stage timeout or a slow but healthy job gets leased twice.
  transcription_lease_seconds = float(os.getenv("MEMO_TRANSCRIPTION_LEASE_SECONDS", str(transcription_timeout_seconds + 60)))
  generation_lease_seconds = float(os.getenv("MEMO_GENERATION_LEASE_SECONDS", str(generation_timeout_seconds + 60)))
  if transcription_lease_seconds <= transcription_timeout_seconds:
    raise ValueError("MEMO_TRANSCRIPTION_LEASE_SECONDS must exceed MEMO_TRANSCRIPTION_TIMEOUT_SECONDS.")
  if generation_lease_seconds <= generation_timeout_seconds:
    raise ValueError("MEMO_GENERATION_LEASE_SECONDS must exceed MEMO_GENERATION_TIMEOUT_SECONDS.")

  backoff_base = _positive_float("MEMO_JOB_BACKOFF_BASE_SECONDS", "2")
  backoff_max = _positive_float("MEMO_JOB_BACKOFF_MAX_SECONDS", "300")
  if backoff_max < backoff_base:
    raise ValueError("MEMO_JOB_BACKOFF_MAX_SECONDS must be at least MEMO_JOB_BACKOFF_BASE_SECONDS.")

  tier_monthly_minutes = _parse_tier_minutes(os.getenv("MEMO_TIER_MONTHLY_MINUTES"))
  default_tier = (os.getenv("MEMO_DEFAULT_TIER") or "FREE").strip().upper()
  if default_tier not in tier_monthly_minutes:
    raise ValueError("MEMO_DEFAULT_TIER must name a tier in MEMO_TIER_MONTHLY_MINUTES.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("MEMO_ALLOWED_ORIGINS")),
    log_dir=(os.getenv("MEMO_LOG_DIR") or "./logs").strip(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("MEMO_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("MEMO_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("MEMO_PG_CONNECT_TIMEOUT", "5"),
    storage_backend=_choice("MEMO_STORAGE_BACKEND", "postgres", {"postgres", "memory"}),
    blob_backend=_choice("MEMO_BLOB_BACKEND", "gcs", {"gcs", "memory"}),
    audio_bucket=os.getenv("MEMO_AUDIO_BUCKET", "memo-audio"),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    openai_base_url=_optional_str(os.getenv("OPENAI_BASE_URL")),
    transcription_model=os.getenv("MEMO_TRANSCRIPTION_MODEL", "whisper-1"),
    generation_model=os.getenv("MEMO_GENERATION_MODEL", "gpt-4o-mini"),
    generation_temperature=float(os.getenv("MEMO_GENERATION_TEMPERATURE", "0.3")),
    job_max_attempts=_positive_int("MEMO_JOB_MAX_ATTEMPTS", "3"),
    job_backoff_base_seconds=backoff_base,
    job_backoff_max_seconds=backoff_max,
    fail_fast_permanent_errors=_parse_bool(os.getenv("MEMO_FAIL_FAST_PERMANENT_ERRORS")),
    transcription_concurrency=_positive_int("MEMO_TRANSCRIPTION_CONCURRENCY", "2"),
    generation_concurrency=_positive_int("MEMO_GENERATION_CONCURRENCY", "3"),
    transcription_timeout_seconds=transcription_timeout_seconds,
    generation_timeout_seconds=generation_timeout_seconds,
    transcription_lease_seconds=transcription_lease_seconds,
    generation_lease_seconds=generation_lease_seconds,
    worker_poll_interval_seconds=_positive_float("MEMO_WORKER_POLL_INTERVAL_SECONDS", "1"),
    worker_max_poll_interval_seconds=_positive_float("MEMO_WORKER_MAX_POLL_INTERVAL_SECONDS", "10"),
    worker_shutdown_grace_seconds=_positive_float("MEMO_WORKER_SHUTDOWN_GRACE_SECONDS", "30"),
    sweep_interval_seconds=_positive_float("MEMO_SWEEP_INTERVAL_SECONDS", "60"),
    stall_grace_seconds=_positive_float("MEMO_STALL_GRACE_SECONDS", "600"),
    tier_monthly_minutes=tier_monthly_minutes,
    default_tier=default_tier,
    max_audio_bytes=_positive_int("MEMO_MAX_AUDIO_BYTES", str(100 * 1024 * 1024)),
    run_workers_in_api=_parse_bool(os.getenv("MEMO_RUN_WORKERS_IN_API")),
    operator_accounts=_parse_accounts(os.getenv("MEMO_OPERATOR_ACCOUNTS")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring the rest of the runtime configuration."""
  debug = _parse_bool(os.getenv("MEMO_DEBUG"))
  pg_connect_timeout = int(os.getenv("MEMO_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("MEMO_PG_CONNECT_TIMEOUT must be a positive integer.")

  # DATABASE_URL is honored for platforms that inject it directly.
  pg_dsn = os.getenv("MEMO_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
