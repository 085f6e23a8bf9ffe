"""Tests for the typed domain errors."""

from __future__ import annotations

import pytest
from propflow_engine.errors import (
    AlreadyHalted,
    DepositAmountMismatch,
    DomainError,
    ErrorKind,
    Forbidden,
    InstanceNotFound,
    InvalidSignature,
    ReceiptMismatch,
)


class TestDomainErrors:
    @pytest.mark.parametrize(
        ("error", "status", "kind"),
        [
            (InstanceNotFound(), 404, ErrorKind.NOT_FOUND),
            (Forbidden(), 403, ErrorKind.FORBIDDEN),
            (AlreadyHalted(), 422, ErrorKind.INVALID_STATE),
            (DepositAmountMismatch(), 422, ErrorKind.VALIDATION),
            (InvalidSignature(), 400, ErrorKind.SECURITY),
        ],
    )
    def test_status_and_kind(self, error: DomainError, status: int, kind: ErrorKind) -> None:
        assert error.status_code == status
        assert error.kind is kind

    def test_default_message(self) -> None:
        assert str(InstanceNotFound()) == "Service instance not found"

    def test_custom_message_and_details(self) -> None:
        err = AlreadyHalted("Service is already halted", details={"state": "halted"})
        assert err.to_dict() == {
            "code": "ALREADY_HALTED",
            "kind": "invalid_state",
            "message": "Service is already halted",
            "details": {"state": "halted"},
        }

    def test_receipt_mismatch_pre_read_is_validation(self) -> None:
        err = ReceiptMismatch(details={"requested": 3, "found": 2})
        assert err.status_code == 422
        assert err.kind is ErrorKind.VALIDATION

    def test_receipt_mismatch_race_is_conflict(self) -> None:
        err = ReceiptMismatch.race(expected=3, updated=2)
        assert err.status_code == 409
        assert err.kind is ErrorKind.CONFLICT
        assert err.details == {"expected": 3, "updated": 2}
        # The class default is untouched.
        assert ReceiptMismatch.kind is ErrorKind.VALIDATION
        assert ReceiptMismatch.status_code == 422
