"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "schedviz"
    debug: bool = False
    log_level: str = "INFO"

    # Normalization: structural limits and timestamp handling
    max_cpus: int = 4096
    max_pid: int = 4_194_304
    normalize_timestamps: bool = False
    normalizer_workers: int = 4

    # Ordering: clock granularity below which cross-CPU events are concurrent
    skew_tolerance_ns: int = 1000

    # Inference
    idle_pid: int = 0
    drop_redundant_wakeups: bool = True
    runtime_tolerance_ns: int = 10_000

    # PID identity splitting heuristic
    split_on_command_change: bool = True
    split_on_wakeup_new: bool = True
    split_on_priority_change: bool = False

    # Aggregation
    aggregator_workers: int = 4

    # Collection store
    collection_cache_capacity: int = 16

    model_config = {"env_prefix": "SCHEDVIZ_"}


settings = Settings()
