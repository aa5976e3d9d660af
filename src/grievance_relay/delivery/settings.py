from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .policy import BackoffPolicy


class DeliveryRuntimeSettings(BaseSettings):
    """Environment-driven delivery queue settings (prefix RELAY_).

    Defaults match the server notification worker: 1 min initial backoff,
    30 min cap, doubling, 3 attempts, 100 items per 30 s tick.
    """

    model_config = SettingsConfigDict(env_prefix="RELAY_", env_file=".env", extra="ignore")

    initial_retry_delay: float = Field(60.0, ge=0, description="seconds")
    max_retry_delay: float = Field(1800.0, ge=0, description="seconds")
    backoff_multiplier: float = Field(2.0, ge=1.0)
    backoff_jitter: bool = False
    max_attempts: int = Field(3, ge=1)
    worker_batch_size: Optional[int] = Field(100, ge=1)
    worker_interval: float = Field(30.0, gt=0, description="seconds")
    worker_concurrency: int = Field(4, ge=1)
    queue_max_size: Optional[int] = Field(10_000, ge=1)
    dlq_path: str = ".dlq/dead_letters.ndjson"
    dlq_max_records: int = Field(1000, ge=1)

    @field_validator("max_retry_delay")
    @classmethod
    def _cap_not_below_initial(cls, v: float, info) -> float:
        initial = info.data.get("initial_retry_delay")
        if initial is not None and v < initial:
            raise ValueError("max_retry_delay must be >= initial_retry_delay")
        return v

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy.from_seconds(
            self.initial_retry_delay,
            self.max_retry_delay,
            self.backoff_multiplier,
            jitter=self.backoff_jitter,
        )

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.worker_interval)
