"""API router for halting and resuming service instances."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from propflow_api.dependencies import ActorDep, ServiceHaltServiceDep
from propflow_api.schemas import HaltRequest, ResumeRequest, ServiceInstanceResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["service-halts"])


@router.post("/service-instances/{instance_id}/halt")
async def halt_service(
    instance_id: str,
    body: HaltRequest,
    service: ServiceHaltServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    outcome = await service.halt_service(
        instance_id,
        body.reason,
        body.description,
        actor_id,
        expected_resume_date=body.expected_resume_date,
        required_actions=body.required_actions,
    )
    return outcome.model_dump(mode="json", exclude_none=True)


@router.post("/service-instances/{instance_id}/resume")
async def resume_service(
    instance_id: str,
    body: ResumeRequest,
    service: ServiceHaltServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    outcome = await service.resume_service(
        instance_id,
        actor_id,
        resume_to_state=body.resume_to_state,
        notes=body.notes,
    )
    return outcome.model_dump(mode="json", exclude_none=True)


@router.get("/service-instances/{instance_id}/halt-history")
async def get_halt_history(instance_id: str, service: ServiceHaltServiceDep) -> list[dict[str, Any]]:
    """Return transitions into or out of ``halted``, newest first."""
    entries = await service.get_halt_history(instance_id)
    return [e.model_dump(mode="json") for e in entries]


@router.get("/halted-services", response_model=list[ServiceInstanceResponse])
async def get_halted_services(
    service: ServiceHaltServiceDep,
    city_id: str = Query(..., min_length=1),
) -> list[ServiceInstanceResponse]:
    rows = await service.get_halted_services(city_id)
    return [ServiceInstanceResponse.model_validate(r) for r in rows]
