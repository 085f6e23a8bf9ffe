"""API router for service instances and their workflow transitions."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, status

from propflow_api.dependencies import ActorDep, ServiceInstanceServiceDep
from propflow_api.schemas import (
    CreateInstanceRequest,
    ServiceInstanceDetailResponse,
    ServiceInstanceListResponse,
    ServiceInstanceResponse,
    TransitionRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/service-instances", tags=["service-instances"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ServiceInstanceResponse)
async def create_instance(
    body: CreateInstanceRequest,
    service: ServiceInstanceServiceDep,
    actor_id: ActorDep,
) -> ServiceInstanceResponse:
    """Create a service instance in the ``requested`` state."""
    instance = await service.create_instance(
        body.customer_id,
        body.service_definition_id,
        body.city_id,
        created_by=actor_id,
        metadata=body.metadata,
    )
    return ServiceInstanceResponse.model_validate(instance)


@router.get("", response_model=ServiceInstanceListResponse)
async def list_instances(
    service: ServiceInstanceServiceDep,
    city_id: str = Query(..., min_length=1),
    state: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    cursor: str | None = Query(None),
) -> ServiceInstanceListResponse:
    """List a city's instances, newest first."""
    rows, next_cursor = await service.list_instances(city_id, state=state, limit=limit, cursor=cursor)
    return ServiceInstanceListResponse(
        items=[ServiceInstanceResponse.model_validate(r) for r in rows],
        next_cursor=next_cursor,
    )


@router.get("/{instance_id}", response_model=ServiceInstanceDetailResponse)
async def get_instance(instance_id: str, service: ServiceInstanceServiceDep) -> ServiceInstanceDetailResponse:
    instance, state = await service.get_instance(instance_id)
    return ServiceInstanceDetailResponse(
        instance=ServiceInstanceResponse.model_validate(instance),
        state=state.model_dump(mode="json"),
    )


@router.post("/{instance_id}/transitions")
async def transition_instance(
    instance_id: str,
    body: TransitionRequest,
    service: ServiceInstanceServiceDep,
    actor_id: ActorDep,
) -> dict[str, Any]:
    """Move an instance to a new workflow state."""
    result = await service.transition_state(
        instance_id,
        body.new_state,
        actor_id,
        reason=body.reason,
        metadata=body.metadata,
    )
    return result.model_dump(mode="json", exclude_none=True)


@router.get("/{instance_id}/history")
async def get_history(instance_id: str, service: ServiceInstanceServiceDep) -> list[dict[str, Any]]:
    """Return the instance's state history, newest first."""
    await service.get_instance(instance_id)
    entries = await service.get_history(instance_id)
    return [e.model_dump(mode="json") for e in entries]
