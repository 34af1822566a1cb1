"""Runtime wiring and lifecycle."""

from arbiter.runtime.orchestrator import (
    DEFAULT_POLICY_ID,
    ArbiterRuntime,
    Repositories,
    RuntimeState,
    create_runtime,
)

__all__ = [
    "DEFAULT_POLICY_ID",
    "ArbiterRuntime",
    "Repositories",
    "RuntimeState",
    "create_runtime",
]
