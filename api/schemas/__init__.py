"""
TILEGUARD API Pydantic schemas.

Re-exports all schema classes:
    from api.schemas import RegisterResourceRequest, ResourceStateResponse, ...
"""

from .tiles import (  # noqa: F401
    ResourceClassName,
    RegisterResourceRequest,
    FailureReport,
    ResourceStateResponse,
    FailureReportResponse,
    SuccessReportResponse,
    ServiceHealthResponse,
    TileHealthResponse,
    NotificationModel,
)
