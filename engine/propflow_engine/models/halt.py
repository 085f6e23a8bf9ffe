"""Halt reasons and the typed halt context kept alongside an instance."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HaltReason(str, Enum):
    """Why a service instance was paused."""

    MISSING_DOCUMENTS = "missing_documents"
    PAYMENT_PENDING = "payment_pending"
    GOVERNMENT_DELAY = "government_delay"
    CUSTOMER_REQUEST = "customer_request"
    DISPUTE_PENDING = "dispute_pending"
    AGENT_REASSIGNMENT = "agent_reassignment"
    FORCE_MAJEURE = "force_majeure"
    OTHER = "other"


class HaltContext(BaseModel):
    """Snapshot taken when an instance is halted.

    ``pre_halt_state`` is the node a plain resume returns to.
    """

    model_config = ConfigDict(from_attributes=True)

    service_instance_id: str
    pre_halt_state: str
    halt_reason: HaltReason
    halt_description: str
    halted_by: str
    expected_resume_date: date | None = None
    required_actions: list[str] = Field(default_factory=list)
    halted_at: datetime | None = None
