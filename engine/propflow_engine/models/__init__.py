"""Domain models for the Propflow engine."""

from propflow_engine.models.cash import (
    AgentCashBalance,
    CashDepositRecord,
    CashReceiptCreate,
    CashReceiptRecord,
    DepositMethod,
    DepositRecord,
    DepositStatus,
    ReceiptResult,
    ServiceRequestPaymentStatus,
)
from propflow_engine.models.halt import HaltContext, HaltReason
from propflow_engine.models.payment import (
    PaymentAuditEntry,
    PaymentMethodType,
    PaymentOrder,
    PaymentRecord,
    PaymentStatus,
    PaymentVerification,
)
from propflow_engine.models.workflow import (
    INITIAL_FROM_STATE,
    FixedState,
    ServiceState,
    StateHistoryEntry,
    StateInfo,
    StepState,
    TransitionFailure,
    TransitionResult,
    is_step_state,
    parse_state,
    state_name,
)

__all__ = [
    "INITIAL_FROM_STATE",
    "AgentCashBalance",
    "CashDepositRecord",
    "CashReceiptCreate",
    "CashReceiptRecord",
    "DepositMethod",
    "DepositRecord",
    "DepositStatus",
    "FixedState",
    "HaltContext",
    "HaltReason",
    "PaymentAuditEntry",
    "PaymentMethodType",
    "PaymentOrder",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentVerification",
    "ReceiptResult",
    "ServiceRequestPaymentStatus",
    "ServiceState",
    "StateHistoryEntry",
    "StateInfo",
    "StepState",
    "TransitionFailure",
    "TransitionResult",
    "is_step_state",
    "parse_state",
    "state_name",
]
