from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_opt_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return _env_bool(name)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    return raw if raw in choices else default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("MICRO_DB_PATH", "micro-operator.db")
    namespace: str = os.getenv("MICRO_NAMESPACE", "")
    workers: int = max(1, _env_int("MICRO_WORKERS", 2))
    request_timeout_s: float = _env_float("MICRO_REQUEST_TIMEOUT_S", 30.0)
    # None means: detect (in-cluster if the service account is mounted).
    in_cluster: bool | None = _env_opt_bool("MICRO_IN_CLUSTER")

    # Micro custom resource coordinates
    group: str = os.getenv("MICRO_GROUP", "micro.mu")
    version: str = os.getenv("MICRO_VERSION", "v1alpha1")
    plural: str = os.getenv("MICRO_PLURAL", "micros")

    # Requeue backoff
    backoff_base_s: float = _env_float("MICRO_BACKOFF_BASE_S", 0.5)
    backoff_max_s: float = _env_float("MICRO_BACKOFF_MAX_S", 60.0)

    # "ordered" keeps the historical element-wise comparison of status.nodes,
    # "set" only reacts to membership changes.
    status_compare: str = _env_choice("MICRO_STATUS_COMPARE", "ordered", {"ordered", "set"})

    # Probe / status server
    probe_host: str = os.getenv("MICRO_PROBE_HOST", "0.0.0.0")
    probe_port: int = _env_int("MICRO_PROBE_PORT", 8080)

    # Email alerting (optional)
    fail_threshold: int = max(1, _env_int("MICRO_FAIL_THRESHOLD", 5))
    enable_email: bool = _env_bool("MICRO_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("MICRO_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("MICRO_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("MICRO_SMTP_USER")
    smtp_password: str | None = os.getenv("MICRO_SMTP_PASSWORD")
    email_from: str | None = os.getenv("MICRO_EMAIL_FROM")
    email_to: str | None = os.getenv("MICRO_EMAIL_TO")

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


settings = Settings()
