"""
arbiter

Arbitration between agent proposals and controlled adaptation of learned
preferences.

- Agents propose actions on shared targets; conflicts are detected per
  target and resolved under a declared policy, or escalated to a human.
- Learned preference suggestions are applied automatically only when the
  agent's adaptation policy allows it.
- Everything is audited and preference changes can be rolled back.
"""

__version__ = "0.1.0"

from arbiter.errors import ArbiterError, InvalidStateError, NotFoundError, ValidationFailure
from arbiter.runtime import ArbiterRuntime, create_runtime

__all__ = [
    "__version__",
    "ArbiterError",
    "ArbiterRuntime",
    "InvalidStateError",
    "NotFoundError",
    "ValidationFailure",
    "create_runtime",
]
