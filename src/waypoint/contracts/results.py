"""Tagged result types for validation that must not use exceptions for control flow.

Manifests read from disk are untrusted until validated. Validation returns
either Ok(value) or Err(errors) so that scanning many candidates never depends
on catching exceptions:

    match validate_manifest(raw):
        case Ok(value=manifest):
            ...
        case Err(errors=errors):
            ...
"""

from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful validation carrying the validated value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed validation carrying one message per problem."""

    errors: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.errors:
            raise ValueError("Err must carry at least one error message")

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err
