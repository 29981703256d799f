"""
Configuration for the RuleDB engine.

All configuration is done via environment variables (prefix RULEDB_),
loaded with pydantic-settings. Every setting has a default suitable for
local development and tests.

Invariants:
    - max_cascade_depth is positive
    - Configuration is read once when the engine is constructed

How to change safely:
    - Add new settings with defaults that keep current behavior
    - Validate new settings in check()
"""

from __future__ import annotations

import logging

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

LOG_FORMATS = ("json", "text")


class EngineConfig(BaseSettings):
    """Engine configuration loaded from environment."""

    # Cascade control
    max_cascade_depth: int = Field(
        default=16, description="Maximum reaction propagation depth per external mutation"
    )

    # State rules
    reject_contradictory_state: bool = Field(
        default=True,
        description="Reject state rules that can yield required+hidden or disjoint enum subsets",
    )
    enforce_state_on_reactions: bool = Field(
        default=False, description="Check $state flags on writes made by reaction actions"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json, text)")

    model_config = {"env_prefix": "RULEDB_"}

    def check(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.max_cascade_depth <= 0:
            raise ValueError(
                f"RULEDB_MAX_CASCADE_DEPTH must be positive, got {self.max_cascade_depth}"
            )
        if self.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid RULEDB_LOG_FORMAT '{self.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "max_cascade_depth": self.max_cascade_depth,
                "reject_contradictory_state": self.reject_contradictory_state,
                "enforce_state_on_reactions": self.enforce_state_on_reactions,
                "log_level": self.log_level,
                "log_format": self.log_format,
            },
        )
