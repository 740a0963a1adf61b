"""
Application state for the TILEGUARD API.

One TileRecoveryService per application instance, created in the lifespan
handler and kept on ``app.state``. There is no module-level singleton, so
tests can build as many independent apps as they like.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from api.cache import RecoveredTileCache
from api.config import Settings
from src.config import RecoveryConfig, get_recovery_config
from src.tiles.notifications import CollectingNotificationSink, LoggingNotificationSink, Severity
from src.tiles.service import TileRecoveryService

logger = logging.getLogger(__name__)


class FanOutSink:
    """Logs every notification and keeps a copy for the notifications endpoint."""

    def __init__(self, history_size: int = 100):
        self.log_sink = LoggingNotificationSink()
        self.collector = CollectingNotificationSink(max_entries=history_size)

    def notify(self, severity: Severity, message: str, duration_ms: int) -> None:
        self.log_sink.notify(severity, message, duration_ms)
        self.collector.notify(severity, message, duration_ms)


@dataclass
class AppState:
    """Everything the routers need, owned by one FastAPI app."""
    service: TileRecoveryService
    recovered_tiles: RecoveredTileCache
    notifications: FanOutSink
    started_at: float = field(default_factory=time.time)

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at


def build_app_state(
    settings: Settings,
    recovery_config: Optional[RecoveryConfig] = None,
    service: Optional[TileRecoveryService] = None,
) -> AppState:
    """Wire cache, sink and service together. A prebuilt service may be injected."""
    cache = RecoveredTileCache(
        max_size=settings.recovered_tile_cache_size,
        default_ttl_seconds=settings.recovered_tile_ttl,
    )
    sink = FanOutSink(history_size=settings.notification_history_size)

    if service is None:
        service = TileRecoveryService(
            config=recovery_config or get_recovery_config(),
            sink=sink,
            on_recovered=cache.store,
            monitor_interval_s=settings.health_monitor_interval or None,
        )
    else:
        service.gate.sink = sink
        service.on_recovered = cache.store

    return AppState(service=service, recovered_tiles=cache, notifications=sink)


def get_app_state(request: Request) -> AppState:
    """FastAPI dependency returning the app's state."""
    return request.app.state.tiles


def get_tile_service(request: Request) -> TileRecoveryService:
    """FastAPI dependency returning the app's recovery service."""
    return request.app.state.tiles.service
