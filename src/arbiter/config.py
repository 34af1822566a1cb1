"""
Runtime configuration via pydantic-settings, and structlog setup.

Every setting can be overridden with an ``ARBITER_`` prefixed environment
variable, e.g. ``ARBITER_LOG_LEVEL=DEBUG``.
"""

import logging
from functools import lru_cache

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from arbiter.core.adaptation import AdaptationPolicy, RateLimit
from arbiter.core.policy import DEFAULT_PRIORITY_ORDER
from arbiter.core.preferences import RiskThresholds
from arbiter.core.types import ResolutionStrategy, RiskLevel


class ArbiterSettings(BaseSettings):
    """Settings for a wired arbiter runtime."""

    model_config = SettingsConfigDict(env_prefix="ARBITER_", env_file=".env", extra="ignore")

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # console | json

    # Arbitration defaults
    default_strategy: ResolutionStrategy = ResolutionStrategy.PRIORITY
    priority_order: list[str] = Field(default_factory=lambda: list(DEFAULT_PRIORITY_ORDER))
    escalation_risk_threshold: RiskLevel | None = RiskLevel.HIGH
    escalation_confidence_threshold: float | None = 0.3

    # Confidence required to auto-apply, per preference risk level
    risk_threshold_low: float = 0.70
    risk_threshold_medium: float = 0.85
    risk_threshold_high: float = 1.0

    # Default adaptation policy for agents without one
    adaptation_min_confidence: float = 0.8
    adaptation_cooldown_seconds: int = 60
    adaptation_max_changes: int = 5
    adaptation_window_seconds: int = 3600

    bus_max_concurrent_handlers: int = 100

    def risk_thresholds(self) -> RiskThresholds:
        return RiskThresholds(
            low=self.risk_threshold_low,
            medium=self.risk_threshold_medium,
            high=self.risk_threshold_high,
        )

    def default_adaptation_policy(self, agent_name: str) -> AdaptationPolicy:
        return AdaptationPolicy(
            agent_name=agent_name,
            min_confidence=self.adaptation_min_confidence,
            cooldown_seconds=self.adaptation_cooldown_seconds,
            rate_limit=RateLimit(
                max_changes=self.adaptation_max_changes,
                window_seconds=self.adaptation_window_seconds,
            ),
        )


@lru_cache
def get_settings() -> ArbiterSettings:
    return ArbiterSettings()


def configure_logging(settings: ArbiterSettings | None = None) -> None:
    """Configure structlog on top of stdlib logging."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger().setLevel(level)

    renderer: structlog.types.Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
