"""
Error taxonomy and the Result type returned by validating factories.

Governance outcomes (blocked, skipped, suppressed, vetoed, escalated) are
never raised; they are carried as reason codes on the returned records.
Only missing entities, illegal state transitions, and invalid values raise.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ArbiterError(Exception):
    """Base class for all arbiter errors."""


class NotFoundError(ArbiterError):
    """A proposal, decision, attempt, policy or preference does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(ArbiterError):
    """The requested transition is not legal for the entity's current state."""


class ValidationFailure(ArbiterError):
    """A proposed or suggested value is outside the allowed set."""

    def __init__(
        self,
        field_name: str,
        value: Any,
        allowed: Sequence[Any] = (),
        message: str | None = None,
    ) -> None:
        if message is None:
            message = f"invalid value {value!r} for {field_name}"
            if allowed:
                message += f"; allowed: {list(allowed)}"
        super().__init__(message)
        self.field_name = field_name
        self.value = value
        self.allowed = tuple(allowed)


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful factory result."""

    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed factory result listing every problem found."""

    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise ValidationFailure("input", None, message="; ".join(self.errors))


Result = Ok[T] | Err
