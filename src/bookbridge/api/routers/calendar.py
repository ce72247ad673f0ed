"""Tenant calendar endpoints: availability, bookings, events and health."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from bookbridge.api.deps import get_orchestrator, get_registry
from bookbridge.api.middleware import operation_error_response
from bookbridge.api.models import ApiMeta, ApiResponse
from bookbridge.api.models.calendar import AvailabilityRequest, BookingRequestBody
from bookbridge.models import (
    BookingRequest,
    CalendarConnection,
    CancelResult,
    OperationError,
    SalonCalendarConfig,
    TenantHealthReport,
    UnifiedAvailabilitySlot,
    UnifiedCalendarEvent,
)
from bookbridge.orchestrator import CalendarOrchestrator
from bookbridge.registry import ConnectionRegistry

router = APIRouter(prefix="/api/tenants", tags=["calendar"])
logger = logging.getLogger(__name__)


def _salon_config(registry: ConnectionRegistry, tenant_id: str) -> SalonCalendarConfig:
    config = registry.salon_config(tenant_id)
    if not config.connections:
        raise KeyError(f"tenant {tenant_id}")
    return config


def _find_connection(
    registry: ConnectionRegistry, tenant_id: str, connection_id: str
) -> CalendarConnection:
    for connection in registry.list_connections(tenant_id):
        if connection.id == connection_id:
            return connection
    raise KeyError(f"connection {connection_id}")


@router.post(
    "/{tenant_id}/availability",
    response_model=ApiResponse[list[UnifiedAvailabilitySlot]],
)
async def check_availability(
    tenant_id: str,
    body: AvailabilityRequest,
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
    registry: ConnectionRegistry = Depends(get_registry),
) -> ApiResponse[list[UnifiedAvailabilitySlot]]:
    """Merged slots for the window; a slot is free only when every calendar agrees."""
    config = _salon_config(registry, tenant_id)
    slots = await orchestrator.check_unified_availability(
        config.active_connections, body.start, body.end, body.timezone
    )
    return ApiResponse[list[UnifiedAvailabilitySlot]](
        data=slots,
        meta=ApiMeta(connections=len(config.active_connections)),
    )


@router.post(
    "/{tenant_id}/bookings",
    status_code=201,
    response_model=ApiResponse[UnifiedCalendarEvent],
)
async def create_booking(
    tenant_id: str,
    body: BookingRequestBody,
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
    registry: ConnectionRegistry = Depends(get_registry),
) -> Response | ApiResponse[UnifiedCalendarEvent]:
    """Book the requested slot, or return 409 with bookable alternatives."""
    config = _salon_config(registry, tenant_id)
    request = BookingRequest.model_validate(body.model_dump(exclude={"preferred_provider"}))
    result = await orchestrator.create_booking(
        config, request, preferred_provider=body.preferred_provider
    )

    if result.success and result.event is not None:
        return ApiResponse[UnifiedCalendarEvent](data=result.event)

    error = result.error or OperationError(kind="internal", message="Booking failed")
    details = None
    if result.alternatives is not None:
        details = {"alternatives": [slot.model_dump(mode="json") for slot in result.alternatives]}
    return operation_error_response(error, details)


@router.delete(
    "/{tenant_id}/connections/{connection_id}/events/{event_id}",
    response_model=ApiResponse[CancelResult],
)
async def cancel_booking(
    tenant_id: str,
    connection_id: str,
    event_id: str,
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
    registry: ConnectionRegistry = Depends(get_registry),
) -> Response | ApiResponse[CancelResult]:
    connection = _find_connection(registry, tenant_id, connection_id)
    result = await orchestrator.cancel_booking(connection, event_id)
    if not result.success and result.error is not None:
        return operation_error_response(result.error)
    return ApiResponse[CancelResult](data=result)


@router.get("/{tenant_id}/events", response_model=ApiResponse[list[UnifiedCalendarEvent]])
async def list_events(
    tenant_id: str,
    time_min: datetime | None = Query(default=None, description="Inclusive lower bound."),
    time_max: datetime | None = Query(default=None, description="Exclusive upper bound."),
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
    registry: ConnectionRegistry = Depends(get_registry),
) -> ApiResponse[list[UnifiedCalendarEvent]]:
    config = _salon_config(registry, tenant_id)
    events = await orchestrator.list_unified_events(config, time_min, time_max)
    return ApiResponse[list[UnifiedCalendarEvent]](data=events)


@router.get("/{tenant_id}/health", response_model=ApiResponse[TenantHealthReport])
async def tenant_health(
    tenant_id: str,
    orchestrator: CalendarOrchestrator = Depends(get_orchestrator),
    registry: ConnectionRegistry = Depends(get_registry),
) -> ApiResponse[TenantHealthReport]:
    config = _salon_config(registry, tenant_id)
    report = await orchestrator.health_check(config)
    if report.overall_status == "error":
        logger.warning("Tenant %s has no healthy calendar connection", tenant_id)
    return ApiResponse[TenantHealthReport](data=report)
