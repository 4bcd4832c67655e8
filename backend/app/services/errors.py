"""
Verification Error Taxonomy

Every failure raised by the verification and fraud core derives from
VerificationError. The HTTP layer maps each family to a status code;
the orchestrator uses the families to decide between isolation,
retry and degradation.

- ValidationError: malformed input, rejected before any state is mutated
- InvalidStateTransitionError: state machine violation, never forced
- DuplicateError: uniqueness violation on create
- ExternalDependencyError: AI / POS / behavioral call failed or timed out
- InvalidScoreRangeError: a score outside [0, 1] reached the scorer (upstream bug)
"""
from typing import Optional

from ..config import ConfigurationError


class VerificationError(Exception):
    """Base class for all verification core errors."""
    pass


class ValidationError(VerificationError):
    """Raised for malformed input before any state is mutated."""
    pass


class InvalidInputError(ValidationError):
    """Raised by pure calculators for NaN, negative or missing inputs."""
    pass


class RecordNotFoundError(ValidationError):
    """Raised when a referenced cycle, database or transaction does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateTransitionError(VerificationError):
    """Raised when a state transition is not allowed from the current state."""

    def __init__(self, entity: str, from_state: str, to_state: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.entity_id = entity_id
        target = f" {entity_id}" if entity_id else ""
        super().__init__(f"Cannot transition {entity}{target} from {from_state} to {to_state}")


class DuplicateError(VerificationError):
    """Raised when a uniqueness invariant would be violated. Not retryable."""
    pass


class ExternalDependencyError(VerificationError):
    """Raised when an external scoring or POS dependency fails or times out."""

    def __init__(self, dependency: str, message: str):
        self.dependency = dependency
        super().__init__(f"{dependency}: {message}")


class InvalidScoreRangeError(VerificationError, ValueError):
    """Raised when a sub-score outside [0, 1] is passed to the scorer."""
    pass


__all__ = [
    "VerificationError",
    "ValidationError",
    "InvalidInputError",
    "RecordNotFoundError",
    "InvalidStateTransitionError",
    "DuplicateError",
    "ExternalDependencyError",
    "InvalidScoreRangeError",
    "ConfigurationError",
]
