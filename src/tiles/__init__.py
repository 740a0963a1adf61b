"""Tile-fetch resilience: classification, retry scheduling, fallbacks, health."""

from .errors import (
    ErrorCategory,
    FailureObservation,
    ResourceClass,
    TileFetchError,
    classify_error,
    resource_class_for_layer,
)
from .state import NotificationState, ResourcePhase, ResourceState
from .scheduler import RecoveryScheduler
from .transports import HttpxTransport, RequestsTransport, TilePayload, TileTransport
from .ladder import LadderOutcome, StrategyLadder
from .notifications import (
    CollectingNotificationSink,
    LoggingNotificationSink,
    NotificationGate,
    NotificationSink,
    Severity,
)
from .health import HealthMonitor, HealthReporter, HealthStatus, ServiceHealth
from .service import TileRecoveryService

__all__ = [
    'ErrorCategory',
    'FailureObservation',
    'ResourceClass',
    'TileFetchError',
    'classify_error',
    'resource_class_for_layer',
    'NotificationState',
    'ResourcePhase',
    'ResourceState',
    'RecoveryScheduler',
    'HttpxTransport',
    'RequestsTransport',
    'TilePayload',
    'TileTransport',
    'LadderOutcome',
    'StrategyLadder',
    'CollectingNotificationSink',
    'LoggingNotificationSink',
    'NotificationGate',
    'NotificationSink',
    'Severity',
    'HealthMonitor',
    'HealthReporter',
    'HealthStatus',
    'ServiceHealth',
    'TileRecoveryService',
]
