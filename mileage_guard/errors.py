"""Error taxonomy for the ingestion and submission pipeline.

Validation outcomes (rollback, impossible distance, suspicious) and
out-of-order readings are data carried by
:class:`~mileage_guard.schemas.ValidationResult` and the batch anomalies,
not exceptions.  The classes here cover the failures that change control flow.
"""

from __future__ import annotations

import enum
from typing import List, Optional, Sequence


class ErrorKind(str, enum.Enum):
    INVALID_PAYLOAD = "InvalidPayload"
    SUBMISSION_TRANSPORT_ERROR = "SubmissionTransportError"
    SUBMISSION_REJECTED = "SubmissionRejected"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"
    INVALID_TRANSITION = "InvalidTransition"
    NOT_FOUND = "NotFound"


class MileageGuardError(Exception):
    """Base class; every subclass carries an :class:`ErrorKind`."""

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidPayloadError(MileageGuardError):
    """Raw device payload is missing or has malformed required fields."""

    kind = ErrorKind.INVALID_PAYLOAD

    def __init__(self, fields: Sequence[str]) -> None:
        self.fields: List[str] = list(fields)
        super().__init__(
            "Missing or invalid required fields: " + ", ".join(self.fields)
        )


class SubmissionTransportError(MileageGuardError):
    """Network, timeout or 5xx failure talking to the ledger.  Retryable."""

    kind = ErrorKind.SUBMISSION_TRANSPORT_ERROR

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class SubmissionRejectedError(MileageGuardError):
    """The ledger refused the payload.  Terminal; needs manual review."""

    kind = ErrorKind.SUBMISSION_REJECTED

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ConcurrencyConflictError(MileageGuardError):
    """A compare-and-set write lost against a concurrent writer."""

    kind = ErrorKind.CONCURRENCY_CONFLICT


class InvalidTransitionError(MileageGuardError):
    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")


class BatchNotFoundError(MileageGuardError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, batch_id: str) -> None:
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} not found")
