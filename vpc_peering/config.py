"""Runtime configuration for the orchestrator Lambda, loaded from environment variables."""

import logging
import os
from dataclasses import dataclass, fields

from botocore.config import Config


@dataclass(frozen=True)
class OrchestratorConfig:
    """Tunables for retries, deadlines and provider calls."""
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 30.0
    # Ceiling for waiting on cross-account visibility; propagation lag varies by region pair
    max_acceptance_wait_seconds: float = 300.0
    # Must cover one stalled provider call plus the response PUT
    deadline_safety_margin_seconds: float = 75.0
    call_connect_timeout_seconds: float = 5.0
    call_read_timeout_seconds: float = 15.0
    call_max_attempts: int = 3
    response_timeout_seconds: float = 10.0
    credential_duration_seconds: int = 900
    default_response_deadline_seconds: float = 840.0
    managed_by_tag: str = "CDK"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.backoff_base_seconds <= 0:
            raise ValueError("BACKOFF_BASE_SECONDS must be positive")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("BACKOFF_CAP_SECONDS must be >= BACKOFF_BASE_SECONDS")
        if self.call_max_attempts < 1:
            raise ValueError("CALL_MAX_ATTEMPTS must be at least 1")
        if self.response_timeout_seconds <= 0:
            raise ValueError("RESPONSE_TIMEOUT_SECONDS must be positive")
        if not 900 <= self.credential_duration_seconds <= 43200:
            raise ValueError("CREDENTIAL_DURATION_SECONDS must be between 900 and 43200")
        reserve = self.worst_case_call_seconds + self.response_timeout_seconds
        if self.deadline_safety_margin_seconds < reserve:
            raise ValueError(
                f"DEADLINE_SAFETY_MARGIN_SECONDS must be at least {reserve:.0f} "
                f"(CALL_MAX_ATTEMPTS x (CALL_CONNECT_TIMEOUT_SECONDS + CALL_READ_TIMEOUT_SECONDS) "
                f"+ RESPONSE_TIMEOUT_SECONDS)"
            )
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"LOG_LEVEL is not a logging level: {self.log_level!r}")

    @property
    def worst_case_call_seconds(self) -> float:
        """Longest a single provider call can block, all botocore attempts included."""
        return self.call_max_attempts * (self.call_connect_timeout_seconds + self.call_read_timeout_seconds)

    @classmethod
    def from_env(cls, environ=None) -> "OrchestratorConfig":
        """Build a config from environment variables, falling back to defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                if f.type in (float, "float"):
                    values[f.name] = float(raw)
                elif f.type in (int, "int"):
                    values[f.name] = int(raw)
                else:
                    values[f.name] = raw
            except ValueError:
                raise ValueError(f"Invalid value for {f.name.upper()}: {raw!r}")
        return cls(**values)

    def client_config(self) -> Config:
        """botocore config giving every provider call its own bounded timeout."""
        return Config(
            connect_timeout=self.call_connect_timeout_seconds,
            read_timeout=self.call_read_timeout_seconds,
            retries={"max_attempts": self.call_max_attempts, "mode": "standard"},
        )
