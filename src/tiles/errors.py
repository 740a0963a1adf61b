"""
Failure classification for remote map tiles.

Maps a structured failure observation plus the static class of the
resource onto one of a fixed set of error categories. Classification is a
pure function; the recovery engine decides what to do with the category.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ResourceClass(Enum):
    """Static resource category governing default classification."""
    CONTINUOUS_FORECAST = "continuous-forecast"
    LIMITED_TEMPORAL = "limited-temporal"
    STATIC = "static"


class ErrorCategory(Enum):
    """Classified tile failure."""
    EXPECTED_DATA_GAP = "expected-data-gap"
    CONFIGURATION_ISSUE = "configuration-issue"
    PROTOCOL_ERROR = "protocol-error"
    SERVER_ERROR = "server-error"
    RESOURCE_NOT_FOUND = "resource-not-found"
    ACCESS_DENIED = "access-denied"
    NETWORK_ISSUE = "network-issue"

    @property
    def retryable(self) -> bool:
        """Known non-actionable conditions are never retried."""
        return self not in _QUIET_CATEGORIES

    @property
    def notifiable(self) -> bool:
        return self not in _QUIET_CATEGORIES


_QUIET_CATEGORIES = frozenset({
    ErrorCategory.EXPECTED_DATA_GAP,
    ErrorCategory.CONFIGURATION_ISSUE,
})


@dataclass(frozen=True)
class FailureObservation:
    """
    What the caller saw when a tile failed to load.

    Attributes:
        status_code: HTTP status if the request completed, else None
        incomplete: True if the request never completed (transport-level failure)
        locator: The request URL that failed; used for recovery, not classification
    """
    status_code: Optional[int] = None
    incomplete: bool = False
    locator: Optional[str] = None


class TileFetchError(Exception):
    """Raised by transports and ladder steps when a fetch yields no usable image."""

    def __init__(self, message: str, status_code: Optional[int] = None, incomplete: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.incomplete = incomplete

    def to_observation(self, locator: Optional[str] = None) -> FailureObservation:
        return FailureObservation(
            status_code=self.status_code,
            incomplete=self.incomplete,
            locator=locator,
        )


def classify_error(resource_class: ResourceClass, observation: FailureObservation) -> ErrorCategory:
    """
    Classify a tile failure.

    Rules are checked in order: the resource class first, then transport
    level failures, then HTTP status. Anything left over is a network issue.

    Args:
        resource_class: Static class of the failing resource
        observation: Structured failure observation

    Returns:
        ErrorCategory for the failure
    """
    if resource_class is ResourceClass.LIMITED_TEMPORAL:
        return ErrorCategory.EXPECTED_DATA_GAP

    if resource_class is ResourceClass.STATIC:
        return ErrorCategory.CONFIGURATION_ISSUE

    status = observation.status_code
    if status is None and observation.incomplete:
        return ErrorCategory.PROTOCOL_ERROR

    if status is not None:
        if status >= 500:
            return ErrorCategory.SERVER_ERROR
        if status == 404:
            return ErrorCategory.RESOURCE_NOT_FOUND
        if status == 403:
            return ErrorCategory.ACCESS_DENIED

    return ErrorCategory.NETWORK_ISSUE


def resource_class_for_layer(layer_name: str) -> ResourceClass:
    """Default resource class for a WMS layer name."""
    # Inundation overlays are static rasters, everything else is forecast
    if "inun" in layer_name.lower():
        return ResourceClass.STATIC
    return ResourceClass.CONTINUOUS_FORECAST


def parse_resource_class(value) -> ResourceClass:
    """Accept a ResourceClass, its value, or an underscore spelling."""
    if isinstance(value, ResourceClass):
        return value
    normalized = str(value).strip().lower().replace("_", "-")
    if normalized == "forecast":
        return ResourceClass.CONTINUOUS_FORECAST
    return ResourceClass(normalized)
