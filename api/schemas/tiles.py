"""Tile recovery request/response schemas."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ResourceClassName(str, Enum):
    continuous_forecast = "continuous-forecast"
    limited_temporal = "limited-temporal"
    static = "static"


class RegisterResourceRequest(BaseModel):
    resource_id: str = Field(..., min_length=1, max_length=200)
    resource_name: Optional[str] = Field(None, max_length=200)
    resource_class: Optional[ResourceClassName] = None
    locator: Optional[str] = Field(None, description="GetMap URL used as the base for retries")


class FailureReport(BaseModel):
    status_code: Optional[int] = Field(None, ge=100, le=599)
    incomplete: bool = Field(False, description="Request never completed (transport-level failure)")
    locator: Optional[str] = None


class ResourceStateResponse(BaseModel):
    resource_id: str
    resource_name: str
    resource_class: str
    consecutive_errors: int
    total_errors: int
    last_error_timestamp: Optional[str] = None
    recovery_attempts: int
    error_category: Optional[str] = None
    phase: str


class FailureReportResponse(BaseModel):
    resource: ResourceStateResponse
    recovery_scheduled: bool


class SuccessReportResponse(BaseModel):
    resource: ResourceStateResponse
    reset: bool


class ServiceHealthResponse(BaseModel):
    total_resources: int
    healthy_resources: int
    retrying_resources: int
    problematic_resources: int
    exhausted_resources: int
    healthy_percent: int
    status: str
    timestamp: str


class TileHealthResponse(BaseModel):
    current: ServiceHealthResponse
    history: List[ServiceHealthResponse]
    recovered_cache: dict


class NotificationModel(BaseModel):
    severity: str
    message: str
    duration_ms: int
    timestamp: str
