"""
Tile recovery API router.

The rendering layer registers layers, reports tile failures and successes,
and polls for recovered tiles and diagnostics:

    POST /api/tiles/resources                      register / reinitialise
    GET  /api/tiles/resources                      all tracked resources
    GET  /api/tiles/resources/{resource_id}        one resource
    POST /api/tiles/resources/{resource_id}/failures
    POST /api/tiles/resources/{resource_id}/success
    GET  /api/tiles/resources/{resource_id}/recovered   last recovered image
    GET  /api/tiles/health                         snapshot + monitor history
    GET  /api/tiles/notifications                  recent user notifications
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response

from api.schemas import (
    FailureReport,
    FailureReportResponse,
    NotificationModel,
    RegisterResourceRequest,
    ResourceStateResponse,
    SuccessReportResponse,
    TileHealthResponse,
)
from api.state import AppState, get_app_state, get_tile_service
from src.tiles.errors import FailureObservation
from src.tiles.service import TileRecoveryService
from src.tiles.state import ResourceState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tiles", tags=["Tiles"])


def _state_response(service: TileRecoveryService, state: ResourceState) -> ResourceStateResponse:
    return ResourceStateResponse(**state.to_dict(max_retries=service.config.max_retries))


def _require_state(service: TileRecoveryService, resource_id: str) -> ResourceState:
    state = service.get_resource_state(resource_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Resource '{resource_id}' is not tracked")
    return state


@router.post("/resources", response_model=ResourceStateResponse, status_code=201)
async def register_resource(
    body: RegisterResourceRequest,
    service: TileRecoveryService = Depends(get_tile_service),
    app_state: AppState = Depends(get_app_state),
):
    """Register a resource for tracking, or clear an existing resource's history."""
    app_state.recovered_tiles.discard(body.resource_id)
    state = service.initialize_resource(
        body.resource_id,
        resource_name=body.resource_name,
        resource_class=body.resource_class.value if body.resource_class else None,
        locator=body.locator,
    )
    return _state_response(service, state)


@router.get("/resources", response_model=List[ResourceStateResponse])
async def list_resources(service: TileRecoveryService = Depends(get_tile_service)):
    return [_state_response(service, state) for state in service.resources()]


@router.get("/resources/{resource_id}", response_model=ResourceStateResponse)
async def get_resource(resource_id: str, service: TileRecoveryService = Depends(get_tile_service)):
    return _state_response(service, _require_state(service, resource_id))


@router.post("/resources/{resource_id}/failures", response_model=FailureReportResponse)
async def report_failure(
    resource_id: str,
    body: FailureReport,
    service: TileRecoveryService = Depends(get_tile_service),
):
    """Report a failed tile load. Recovery runs in the background."""
    task = await service.report_failure(
        resource_id,
        FailureObservation(
            status_code=body.status_code,
            incomplete=body.incomplete,
            locator=body.locator,
        ),
    )
    return FailureReportResponse(
        resource=_state_response(service, _require_state(service, resource_id)),
        recovery_scheduled=task is not None,
    )


@router.post("/resources/{resource_id}/success", response_model=SuccessReportResponse)
async def report_success(resource_id: str, service: TileRecoveryService = Depends(get_tile_service)):
    state = _require_state(service, resource_id)
    reset = service.report_success(resource_id)
    if reset:
        state = _require_state(service, resource_id)
    return SuccessReportResponse(resource=_state_response(service, state), reset=reset)


@router.get("/resources/{resource_id}/recovered")
async def get_recovered_tile(resource_id: str, app_state: AppState = Depends(get_app_state)):
    """Most recent tile recovered for this resource."""
    payload = app_state.recovered_tiles.get(resource_id)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"No recovered tile for '{resource_id}'")
    return Response(
        content=payload.content,
        media_type=payload.content_type,
        headers={
            "Cache-Control": "no-store",
            "X-Recovery-Strategy": payload.strategy,
        },
    )


@router.get("/health", response_model=TileHealthResponse)
async def tile_health(app_state: AppState = Depends(get_app_state)):
    service = app_state.service
    history = service.monitor.history if service.monitor is not None else []
    return TileHealthResponse(
        current=service.get_service_health().to_dict(),
        history=[sample.to_dict() for sample in history],
        recovered_cache=app_state.recovered_tiles.get_stats(),
    )


@router.get("/notifications", response_model=List[NotificationModel])
async def recent_notifications(app_state: AppState = Depends(get_app_state)):
    return app_state.notifications.collector.entries
