"""
Tile service health.

HealthReporter turns the per-resource state table into a point-in-time
snapshot. HealthMonitor samples that snapshot periodically, keeps a short
history and logs a one-line summary. Neither ever mutates resource state.
"""
import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from src.config import RecoveryConfig, get_recovery_config
from src.tiles.state import ResourceState

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Overall tile service status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ServiceHealth:
    """Counts of tracked resources by health."""
    total_resources: int = 0
    healthy_resources: int = 0
    retrying_resources: int = 0
    problematic_resources: int = 0
    exhausted_resources: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy_percent(self) -> int:
        if self.total_resources == 0:
            return 100
        return round(self.healthy_resources / self.total_resources * 100)

    @property
    def status(self) -> HealthStatus:
        if self.exhausted_resources > 0:
            return HealthStatus.UNHEALTHY
        if self.problematic_resources > 0 or self.retrying_resources > 0:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["healthy_percent"] = self.healthy_percent
        data["status"] = self.status.value
        return data


class HealthReporter:
    """
    Stateless query over resource states.

    Each resource lands in exactly one bucket:
        exhausted    recovery_attempts == -1
        problematic  consecutive_errors > problematic_after (3)
        retrying     0 < consecutive_errors <= problematic_after
        healthy      consecutive_errors == 0
    """

    def __init__(self, config: Optional[RecoveryConfig] = None):
        self.config = config or get_recovery_config()

    def snapshot(self, states: Iterable[ResourceState]) -> ServiceHealth:
        health = ServiceHealth()
        for state in states:
            health.total_resources += 1
            if state.is_exhausted:
                health.exhausted_resources += 1
            elif state.consecutive_errors > self.config.problematic_after:
                health.problematic_resources += 1
            elif state.consecutive_errors > 0:
                health.retrying_resources += 1
            else:
                health.healthy_resources += 1
        return health


def summarize(health: ServiceHealth) -> str:
    """One-line summary for logs."""
    if health.total_resources == 0:
        return "No tile layers currently being monitored"
    pct = health.healthy_percent
    if health.exhausted_resources > 0:
        return (
            f"Tile loading health: {pct}% healthy "
            f"({health.exhausted_resources} failed, {health.problematic_resources} problematic)"
        )
    if health.problematic_resources > 0:
        return f"Tile loading health: {pct}% healthy ({health.problematic_resources} problematic)"
    return f"Tile loading health: {pct}% healthy (all layers loading normally)"


class HealthMonitor:
    """
    Periodically samples service health into a bounded history.

    Usage:
        monitor = HealthMonitor(service.get_service_health, interval_s=30)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        snapshot: Callable[[], ServiceHealth],
        interval_s: float = 30.0,
        history_size: int = 20,
    ):
        self._snapshot = snapshot
        self.interval_s = interval_s
        self._history: Deque[ServiceHealth] = deque(maxlen=history_size)
        self._task: Optional[asyncio.Task] = None

    @property
    def history(self) -> List[ServiceHealth]:
        return list(self._history)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self) -> ServiceHealth:
        """Take one sample, record it and log the summary."""
        health = self._snapshot()
        self._history.append(health)
        message = summarize(health)
        if health.status is HealthStatus.HEALTHY:
            logger.info(message)
        else:
            logger.warning(message)
        return health

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                self.sample()
            except Exception:
                logger.exception("Tile health sample failed")

    def start(self):
        if self.running:
            return
        logger.info(f"Starting tile health monitoring every {self.interval_s}s")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Tile health monitoring stopped")
