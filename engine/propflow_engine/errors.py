"""Typed domain errors surfaced by the engine and the API services.

Every error carries a fixed machine-readable ``code``, an :class:`ErrorKind`
and an HTTP-like ``status_code``.  Callers map kinds to responses:

* ``not_found``      -> 404
* ``forbidden``      -> 403
* ``invalid_state``  -> 422
* ``validation``     -> 400 / 422
* ``conflict``       -> 409 (retry the whole operation)
* ``security``       -> 400 (never retried automatically)

Expected business outcomes that are *not* failures (an idempotent replay of
a receipt, an already-paid payment) are returned as results, never raised.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    SECURITY = "security"


class DomainError(Exception):
    """Base class for all Propflow business errors."""

    code: str = "DOMAIN_ERROR"
    kind: ErrorKind = ErrorKind.INVALID_STATE
    status_code: int = 422
    default_message: str = "Business rule violated"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status={self.status_code}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(DomainError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "Resource not found"


class InstanceNotFound(NotFoundError):
    code = "INSTANCE_NOT_FOUND"
    default_message = "Service instance not found"


class DefinitionNotFound(NotFoundError):
    code = "DEFINITION_NOT_FOUND"
    default_message = "Service definition not found or inactive"


class DepositNotFound(NotFoundError):
    code = "DEPOSIT_NOT_FOUND"
    default_message = "Deposit not found"


class PaymentNotFound(NotFoundError):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found"


class ServiceRequestNotFound(NotFoundError):
    code = "SERVICE_REQUEST_NOT_FOUND"
    default_message = "Service request not found"


class Forbidden(DomainError):
    code = "FORBIDDEN"
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    default_message = "Not your service request"


# ---------------------------------------------------------------------------
# Invalid state
# ---------------------------------------------------------------------------


class InvalidStateError(DomainError):
    kind = ErrorKind.INVALID_STATE
    status_code = 422


class CannotHalt(InvalidStateError):
    code = "CANNOT_HALT"
    default_message = "Service cannot be halted in its current state"


class AlreadyHalted(InvalidStateError):
    code = "ALREADY_HALTED"
    default_message = "Service is already halted"


class NotHalted(InvalidStateError):
    code = "NOT_HALTED"
    default_message = "Service is not currently halted"


class InvalidTransition(InvalidStateError):
    code = "INVALID_TRANSITION"
    default_message = "Invalid state transition"


class HaltFailed(InvalidStateError):
    code = "HALT_FAILED"
    default_message = "Failed to halt service"


class ResumeFailed(InvalidStateError):
    code = "RESUME_FAILED"
    default_message = "Failed to resume service"


class InstanceAlreadyExists(InvalidStateError):
    code = "INSTANCE_ALREADY_EXISTS"
    default_message = "An active service instance already exists for this request"


class DepositAlreadyProcessed(InvalidStateError):
    code = "DEPOSIT_ALREADY_PROCESSED"
    default_message = "Deposit has already been processed"


# ---------------------------------------------------------------------------
# Validation and conflict
# ---------------------------------------------------------------------------


class BusinessValidationError(DomainError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class AmountRequired(BusinessValidationError):
    code = "AMOUNT_REQUIRED"
    default_message = "Amount is required and could not be derived from the stored order"


class ServiceRequestRequired(BusinessValidationError):
    code = "SERVICE_REQUEST_REQUIRED"
    default_message = "Service request id is required and could not be derived from the stored order"


class DepositAmountMismatch(BusinessValidationError):
    code = "DEPOSIT_AMOUNT_MISMATCH"
    status_code = 422
    default_message = "Deposit amount does not match sum of receipts"


class ReceiptMismatch(DomainError):
    """Receipts could not all be claimed.

    Raised with status 422 when the pre-read finds missing, foreign or
    already-reconciled receipts, and with status 409 (:meth:`race`) when the
    guarded update shows a concurrent deposit claimed one in between.
    """

    code = "RECEIPT_MISMATCH"
    kind = ErrorKind.VALIDATION
    status_code = 422
    default_message = "Some receipts not found, already reconciled, or not owned by agent"

    @classmethod
    def race(cls, *, expected: int, updated: int) -> ReceiptMismatch:
        err = cls(
            "One or more receipts were reconciled by a concurrent deposit",
            details={"expected": expected, "updated": updated},
            status_code=409,
        )
        err.kind = ErrorKind.CONFLICT
        return err


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------


class InvalidSignature(DomainError):
    code = "INVALID_SIGNATURE"
    kind = ErrorKind.SECURITY
    status_code = 400
    default_message = "Invalid payment signature"
