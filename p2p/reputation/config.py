"""
Reputation Configuration

Immutable tunables for verdict confirmation, scoring, caching and
blacklisting. A config object is loaded once and handed to every component;
changing a value means building a new object and reloading the service.

Defaults match the network-wide reference values:
- 12 confirmations, 1 hour confirmation timeout
- maturity at 100 verdicts, 90 day decay half-life, 90 day retention
- 10 minute score cache
- hybrid blacklisting at score <= 0.2 with >= 3 bad verdicts, 30 day retention
"""

import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError


SECONDS_PER_DAY = 86400


class BlacklistMode(str, Enum):
    """Policy for where blacklist entries may come from."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    HYBRID = "hybrid"


class ReputationConfig(BaseModel):
    """Reputation system configuration."""

    model_config = ConfigDict(frozen=True)

    # Confirmation
    confirmation_threshold: int = Field(
        default=12, ge=0, description="Blocks required before a transaction counts"
    )
    confirmation_timeout: int = Field(
        default=3600, gt=0, description="Max seconds to keep a verdict pending"
    )

    # Scoring
    maturity_threshold: int = Field(
        default=100, gt=0, description="Verdicts needed to reach an undamped score"
    )
    decay_half_life: float = Field(
        default=90, ge=0, description="Half-life for time decay in days (0 = disabled)"
    )
    retention_period: float = Field(
        default=90, gt=0, description="Days to keep accepted verdicts"
    )
    max_verdict_size: int = Field(
        default=1024, gt=0, description="Max bytes in the details field"
    )
    cache_ttl: int = Field(
        default=600, ge=0, description="Seconds a computed score stays cached"
    )

    # Blacklist
    blacklist_mode: BlacklistMode = Field(default=BlacklistMode.HYBRID)
    blacklist_auto_enabled: bool = Field(default=True)
    blacklist_score_threshold: float = Field(
        default=0.2, ge=0.0, le=1.0, description="Score at or below which auto-blacklist may fire"
    )
    blacklist_bad_verdicts_threshold: int = Field(
        default=3, ge=1, description="Confirmed bad verdicts needed for auto-blacklist"
    )
    blacklist_retention: float = Field(
        default=30, gt=0, description="Days an automatic entry lasts"
    )

    # Payments
    payment_deadline_default: int = Field(
        default=3600, gt=0, description="Default deadline for signed payment messages (seconds)"
    )
    payment_grace_period: int = Field(
        default=1800, ge=0, description="Grace period after a payment deadline (seconds)"
    )
    min_balance_multiplier: float = Field(
        default=1.2, ge=1.0, description="Required balance as a multiple of the file price"
    )

    @property
    def auto_blacklist_active(self) -> bool:
        """True when automatic blacklist transitions are allowed at all."""
        return self.blacklist_auto_enabled and self.blacklist_mode in (
            BlacklistMode.AUTOMATIC,
            BlacklistMode.HYBRID,
        )

    @property
    def blacklist_retention_seconds(self) -> float:
        return self.blacklist_retention * SECONDS_PER_DAY

    @property
    def retention_seconds(self) -> float:
        return self.retention_period * SECONDS_PER_DAY

    @classmethod
    def load(cls, values: Optional[Dict[str, Any]] = None) -> "ReputationConfig":
        """
        Build a config from a mapping, raising ConfigurationError on bad input.

        Args:
            values: Field overrides (unknown keys are rejected)

        Returns:
            Validated, frozen ReputationConfig
        """
        values = dict(values or {})
        unknown = set(values) - set(cls.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown reputation config fields: {sorted(unknown)}")
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_env(cls, prefix: str = "CHIRAL_REP_") -> "ReputationConfig":
        """
        Load config from environment variables.

        Each field maps to PREFIX + FIELD_NAME in upper case, e.g.
        CHIRAL_REP_DECAY_HALF_LIFE=30. Unset variables keep the default.
        """
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            if name == "blacklist_auto_enabled":
                values[name] = raw.lower() in ("true", "1", "yes")
            else:
                values[name] = raw
        return cls.load(values)


DEFAULT_CONFIG = ReputationConfig()
