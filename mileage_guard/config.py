"""Pipeline configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an env var.
``env_prefix`` is empty, so field names map directly to env vars (e.g.
``INACTIVITY_WINDOW_SECONDS``, ``LEDGER_BASE_URL``).

The plausibility and scoring thresholds are defaults, not fixed
constants; per-device overrides live in
:class:`~mileage_guard.schemas.DeviceBatchConfig`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

if TYPE_CHECKING:
    from mileage_guard.schemas import DeviceBatchConfig


@dataclass(frozen=True)
class Thresholds:
    """Effective validation and batching limits for one device."""

    inactivity_window_seconds: int
    engine_off_samples: int
    max_plausible_speed_kmh: float
    suspicious_rate_multiplier: float
    suspicious_min_history: int
    trailing_window: int
    validity_threshold: float
    valid_fraction_decay: float
    low_quality_threshold: float


class PipelineSettings(BaseSettings):
    """Runtime settings for ingestion, validation and submission."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- batching -----------------------------------------------------------
    inactivity_window_seconds: int = Field(
        default=1800,
        gt=0,
        description="Close an active batch after this many seconds without a reading",
    )
    engine_off_samples: int = Field(
        default=3,
        ge=0,
        description="Close a batch after this many consecutive readings with rpm and speed at 0 (0 disables)",
    )

    # -- validation ---------------------------------------------------------
    max_plausible_speed_kmh: float = Field(
        default=180.0,
        gt=0,
        description="Upper bound on average speed between two trusted readings",
    )
    suspicious_rate_multiplier: float = Field(
        default=3.0,
        gt=1,
        description="Flag a reading whose km/h rate exceeds this multiple of the trailing average",
    )
    suspicious_min_history: int = Field(
        default=3,
        ge=1,
        description="Trailing samples required before the suspicious-rate check applies",
    )
    trailing_window: int = Field(
        default=10,
        ge=1,
        description="Number of recent VALID rates kept per vehicle",
    )

    # -- scoring ------------------------------------------------------------
    validity_threshold: float = Field(
        default=70.0,
        gt=0,
        le=100,
        description="Batches scoring at or above this are rejected",
    )
    valid_fraction_decay: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="How strongly a high share of VALID readings pulls the score toward 0",
    )
    low_quality_threshold: float = Field(
        default=70.0,
        ge=0,
        le=100,
        description="Average data_quality below this adds a scoring penalty",
    )

    # -- submission ---------------------------------------------------------
    ledger_base_url: str = Field(
        default="http://127.0.0.1:8899",
        description="Base URL of the ledger anchoring service",
    )
    ledger_api_key: Optional[str] = Field(
        default=None,
        description="Bearer token sent to the ledger, if required",
    )
    ledger_dry_run: bool = Field(
        default=False,
        description="Validate and log submissions; never call the ledger",
    )
    submission_base_delay_seconds: float = Field(
        default=5.0, gt=0, description="Backoff base delay"
    )
    submission_max_delay_seconds: float = Field(
        default=3600.0, gt=0, description="Backoff delay cap"
    )
    submission_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts before a submission becomes terminally failed",
    )
    submission_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for a single ledger call"
    )
    submission_workers: int = Field(
        default=4, ge=1, description="Concurrent submission workers"
    )
    min_readings_for_submission: int = Field(
        default=1,
        ge=1,
        description="Validated batches with fewer readings are kept but not anchored",
    )

    # -- background ---------------------------------------------------------
    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between inactivity and retry sweeps",
    )

    # -- storage ------------------------------------------------------------
    database_url: str = Field(
        default="sqlite:///./mileage_guard.db",
        description="SQLAlchemy URL, or 'memory' for the in-process store",
    )

    # -- service ------------------------------------------------------------
    api_host: str = Field(default="127.0.0.1", description="API bind host")
    api_port: int = Field(default=8000, gt=0, le=65535, description="API bind port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    # -- derived ------------------------------------------------------------
    @property
    def uses_memory_store(self) -> bool:
        """Return ``True`` when readings and batches are kept in-process."""
        return self.database_url.strip().lower() == "memory"

    def thresholds_for(
        self, override: Optional["DeviceBatchConfig"] = None
    ) -> Thresholds:
        """Merge a device's overrides onto the global defaults."""

        def pick(name: str):
            value = getattr(override, name, None) if override is not None else None
            return getattr(self, name) if value is None else value

        return Thresholds(
            inactivity_window_seconds=pick("inactivity_window_seconds"),
            engine_off_samples=self.engine_off_samples,
            max_plausible_speed_kmh=pick("max_plausible_speed_kmh"),
            suspicious_rate_multiplier=pick("suspicious_rate_multiplier"),
            suspicious_min_history=self.suspicious_min_history,
            trailing_window=self.trailing_window,
            validity_threshold=pick("validity_threshold"),
            valid_fraction_decay=self.valid_fraction_decay,
            low_quality_threshold=self.low_quality_threshold,
        )
