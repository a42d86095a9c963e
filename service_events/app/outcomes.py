"""
Tagged handler outcomes.

The delivery runtime dispatches on ``Outcome.kind`` only. Handlers either
return one of these values (``None`` counts as success) or raise; a raised
exception is classified once, here, into the same tags.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from pydantic import ValidationError

from shared.errors import PermanentHandlerError, SchemaValidationError


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class Success:
    kind: ClassVar[OutcomeKind] = OutcomeKind.SUCCESS
    note: Optional[str] = None


@dataclass(frozen=True)
class RetryableFailure:
    kind: ClassVar[OutcomeKind] = OutcomeKind.RETRYABLE_FAILURE
    reason: str
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class PermanentFailure:
    kind: ClassVar[OutcomeKind] = OutcomeKind.PERMANENT_FAILURE
    reason: str
    error: Optional[BaseException] = None


Outcome = Union[Success, RetryableFailure, PermanentFailure]

# Errors that no amount of redelivery can fix.
PERMANENT_ERRORS = (PermanentHandlerError, SchemaValidationError, ValidationError)


def classify_exception(exc: Exception) -> Outcome:
    """Map an exception raised by a handler onto an outcome tag."""
    if isinstance(exc, PERMANENT_ERRORS):
        return PermanentFailure(reason=str(exc) or type(exc).__name__, error=exc)
    return RetryableFailure(reason=str(exc) or type(exc).__name__, error=exc)


def coerce_outcome(value: Any) -> Outcome:
    """Interpret a handler's return value."""
    if value is None:
        return Success()
    if isinstance(value, (Success, RetryableFailure, PermanentFailure)):
        return value
    raise TypeError(f"Handler returned {type(value).__name__}, expected an Outcome or None")
