from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("FLEET_DB_PATH", "fleet.db")
    resync_interval_s: int = _env_int("FLEET_RESYNC_INTERVAL_S", 30)
    workers: int = _env_int("FLEET_WORKERS", 2)
    run_controller: bool = _env_bool("FLEET_RUN_CONTROLLER", True)

    # Retry knobs
    status_update_retries: int = _env_int("FLEET_STATUS_UPDATE_RETRIES", 5)
    requeue_base_delay_s: int = _env_int("FLEET_REQUEUE_BASE_DELAY_S", 1)
    requeue_max_delay_s: int = _env_int("FLEET_REQUEUE_MAX_DELAY_S", 300)

    # Scaling
    default_delete_policy: str = os.getenv("FLEET_DELETE_POLICY", "Oldest")

    # Safety knobs
    # Refuse sets that would fan out into an unreasonable number of units.
    max_replicas: int = _env_int("FLEET_MAX_REPLICAS", 500)


settings = Settings()
