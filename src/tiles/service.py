"""
Tile recovery service.

Owns the per-resource state table and wires the classifier, scheduler,
strategy ladder, notification gate and health reporter together:

    report_failure -> classify -> update state -> notification gate
                   -> schedule delay -> ladder attempt
                   -> success: reset state, hand payload to on_recovered
                   -> failure: back through the failure handler
                   -> budget spent: exhausted, one final notification

Every state mutation goes through _on_failure or _on_success. Retries for a
resource run sequentially in a single task; different resources are
independent. Resetting a resource cancels its task, and a later task waits
for the cancelled one to unwind before fetching. Results that arrive after
the resource has been reset are discarded.
"""
import asyncio
import dataclasses
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from src.config import RecoveryConfig, get_recovery_config
from src.tiles import locator as locators
from src.tiles.errors import (
    ErrorCategory,
    FailureObservation,
    ResourceClass,
    classify_error,
    parse_resource_class,
    resource_class_for_layer,
)
from src.tiles.health import HealthMonitor, HealthReporter, ServiceHealth
from src.tiles.ladder import LadderOutcome, StrategyLadder
from src.tiles.notifications import NotificationGate, NotificationSink
from src.tiles.scheduler import RecoveryScheduler
from src.tiles.state import ResourceState
from src.tiles.transports import TilePayload

logger = logging.getLogger(__name__)

RecoveredCallback = Callable[[str, TilePayload], Any]


class TileRecoveryService:
    """
    Tile-fetch resilience engine for one host application.

    Usage:
        service = TileRecoveryService(sink=toasts, on_recovered=swap_tile)
        await service.start()

        service.initialize_resource("hs-layer", "hs")
        await service.report_failure("hs-layer", FailureObservation(
            status_code=None, incomplete=True, locator=tile_url))
        ...
        service.report_success("hs-layer")
        await service.aclose()
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        ladder: Optional[StrategyLadder] = None,
        scheduler: Optional[RecoveryScheduler] = None,
        sink: Optional[NotificationSink] = None,
        on_recovered: Optional[RecoveredCallback] = None,
        monitor_interval_s: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or get_recovery_config()
        self.scheduler = scheduler or RecoveryScheduler(self.config)
        self.gate = NotificationGate(sink, self.config)
        self.reporter = HealthReporter(self.config)
        self.on_recovered = on_recovered
        self.monitor = (
            HealthMonitor(self.get_service_health, interval_s=monitor_interval_s)
            if monitor_interval_s
            else None
        )

        self._ladder = ladder
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: Dict[str, ResourceState] = {}
        self._tasks: Dict[str, Tuple[int, asyncio.Task]] = {}
        self._retiring: Dict[str, Set[asyncio.Task]] = {}
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def ladder(self) -> StrategyLadder:
        if self._ladder is None:
            self._ladder = StrategyLadder(config=self.config)
        return self._ladder

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> "TileRecoveryService":
        """Once-only initialisation. Repeated calls are no-ops."""
        if self._started:
            return self
        self._ladder = self.ladder
        if self.monitor is not None:
            self.monitor.start()
        self._started = True
        logger.info("Tile recovery service started")
        return self

    async def aclose(self):
        """Cancel outstanding recoveries and release HTTP clients."""
        tasks = self._outstanding()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._retiring.clear()

        if self.monitor is not None:
            await self.monitor.stop()
        if self._ladder is not None:
            await self._ladder.aclose()
        self._started = False

    async def __aenter__(self) -> "TileRecoveryService":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def join(self):
        """Wait until no recovery task is outstanding."""
        while True:
            pending = self._outstanding()
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def initialize_resource(
        self,
        resource_id: str,
        resource_name: Optional[str] = None,
        resource_class: Union[ResourceClass, str, None] = None,
        locator: Optional[str] = None,
    ) -> ResourceState:
        """
        Register a resource, or clear the history of an existing one.

        The class defaults to one derived from the layer name. Reinitialising
        is the only way out of the exhausted state.
        """
        name = resource_name or resource_id
        if resource_class is None:
            rclass = resource_class_for_layer(name)
        else:
            rclass = parse_resource_class(resource_class)

        previous = self._states.get(resource_id)
        state = ResourceState(
            resource_id=resource_id,
            resource_name=name,
            resource_class=rclass,
            original_locator=locator if locators.is_fetchable(locator) else None,
        )
        if previous is not None:
            state.episode = previous.episode + 1
            self._cancel_recovery(resource_id)
            if state.original_locator is None:
                state.original_locator = previous.original_locator
            logger.info(f"Reinitialised tile resource {resource_id}")
        else:
            logger.debug(f"Tracking tile resource {resource_id} ({rclass.value})")

        self._states[resource_id] = state
        self.gate.reset(resource_id)
        return dataclasses.replace(state)

    async def report_failure(
        self,
        resource_id: str,
        observation: Optional[FailureObservation] = None,
    ) -> Optional[asyncio.Task]:
        """
        A tile of this resource failed to load.

        Never raises. Returns the recovery task if one was scheduled.
        """
        observation = observation or FailureObservation()
        if resource_id not in self._states:
            self.initialize_resource(resource_id, locator=observation.locator)

        state = self._states[resource_id]
        if state.original_locator is None and locators.is_fetchable(observation.locator):
            state.original_locator = observation.locator

        self._on_failure(state, observation)
        return self._schedule_recovery(state)

    def report_success(self, resource_id: str) -> bool:
        """
        A tile of this resource loaded.

        Returns True if state was reset. Exhausted resources stay exhausted
        until reinitialised.
        """
        state = self._states.get(resource_id)
        if state is None:
            logger.debug(f"Success reported for untracked resource {resource_id}")
            return False
        if state.is_exhausted:
            logger.debug(f"{state.resource_name}: success ignored, resource is exhausted")
            return False
        self._cancel_recovery(resource_id)
        self._on_success(state)
        return True

    def get_resource_state(self, resource_id: str) -> Optional[ResourceState]:
        """Copy of a resource's state, or None if untracked."""
        state = self._states.get(resource_id)
        return dataclasses.replace(state) if state is not None else None

    def resources(self) -> List[ResourceState]:
        return [dataclasses.replace(state) for state in self._states.values()]

    def get_service_health(self) -> ServiceHealth:
        return self.reporter.snapshot(self._states.values())

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _on_failure(
        self,
        state: ResourceState,
        observation: FailureObservation,
        attempt: Optional[int] = None,
    ) -> ErrorCategory:
        """The single failure handler."""
        category = classify_error(state.resource_class, observation)
        if attempt is not None:
            state.recovery_attempts = attempt
        state.record_failure(category, self._clock())
        self._log_failure(state, category)

        if not state.is_exhausted:
            self.gate.on_failure(state)
        return category

    def _on_success(self, state: ResourceState) -> bool:
        """The single success handler. Returns True if the resource was unhealthy."""
        was_unhealthy = state.consecutive_errors > 0
        state.reset()
        self.gate.reset(state.resource_id)
        if was_unhealthy:
            logger.info(f"{state.resource_name}: tile loading healthy again")
        return was_unhealthy

    def _exhaust(self, state: ResourceState):
        state.mark_exhausted()
        logger.error(
            f"{state.resource_name}: failed to load tile after "
            f"{self.config.max_retries} recovery attempts"
        )
        self.gate.on_exhausted(state)

    def _log_failure(self, state: ResourceState, category: ErrorCategory):
        name = state.resource_name
        count = state.consecutive_errors

        if state.is_exhausted:
            logger.debug(f"{name}: failure on exhausted resource ({category.value})")
        elif category is ErrorCategory.EXPECTED_DATA_GAP:
            if count <= 2:
                logger.info(
                    f"{name}: data not available for current time "
                    "(normal for limited temporal coverage)"
                )
        elif category is ErrorCategory.CONFIGURATION_ISSUE:
            if count <= 2:
                logger.warning(f"{name}: configuration issue detected, check layer parameters")
        elif count <= 3:
            logger.warning(f"{name}: tile load failed ({category.value}), recovering")

    # ------------------------------------------------------------------
    # Recovery loop
    # ------------------------------------------------------------------

    def _is_current(self, state: Optional[ResourceState], episode: int) -> bool:
        return state is not None and state.episode == episode and not state.is_exhausted

    def _schedule_recovery(self, state: ResourceState) -> Optional[asyncio.Task]:
        if state.is_exhausted:
            return None
        if state.error_category is None or not state.error_category.retryable:
            return None
        if not locators.is_fetchable(state.original_locator):
            logger.warning(f"{state.resource_name}: cannot recover tile, no valid WMS URL")
            return None

        rid = state.resource_id
        current = self._tasks.get(rid)
        if current is not None and not current[1].done():
            if current[0] == state.episode:
                return None
            self._cancel_recovery(rid)

        previous = list(self._retiring.get(rid, ()))
        task = asyncio.get_running_loop().create_task(
            self._recover(rid, state.episode, previous), name=f"tile-recovery-{rid}"
        )
        self._tasks[rid] = (state.episode, task)
        task.add_done_callback(lambda t, rid=rid: self._forget(rid, t))
        return task

    def _forget(self, resource_id: str, task: asyncio.Task):
        current = self._tasks.get(resource_id)
        if current is not None and current[1] is task:
            del self._tasks[resource_id]

    def _cancel_recovery(self, resource_id: str):
        """Cancel the resource's recovery task. It stays tracked until it has unwound."""
        current = self._tasks.pop(resource_id, None)
        if current is None or current[1].done():
            return
        task = current[1]
        task.cancel()
        self._retiring.setdefault(resource_id, set()).add(task)
        task.add_done_callback(lambda t, rid=resource_id: self._retired(rid, t))

    def _retired(self, resource_id: str, task: asyncio.Task):
        retiring = self._retiring.get(resource_id)
        if retiring is None:
            return
        retiring.discard(task)
        if not retiring:
            del self._retiring[resource_id]

    def _outstanding(self) -> List[asyncio.Task]:
        tasks = [task for _, task in self._tasks.values()]
        for retiring in self._retiring.values():
            tasks.extend(retiring)
        return [task for task in tasks if not task.done()]

    async def _recover(self, resource_id: str, episode: int, previous: Iterable[asyncio.Task] = ()):
        previous = [task for task in previous if not task.done()]
        if previous:
            # a cancelled fetch for this resource may still be in flight
            await asyncio.wait(previous)

        while True:
            state = self._states.get(resource_id)
            if not self._is_current(state, episode):
                return

            attempt = state.recovery_attempts + 1
            if attempt > self.config.max_retries:
                self._exhaust(state)
                return

            category = state.error_category
            await self.scheduler.wait(category, attempt)

            state = self._states.get(resource_id)
            if not self._is_current(state, episode):
                logger.debug(f"{resource_id}: recovered before attempt {attempt}, skipping")
                return

            outcome = await self.ladder.run(state.original_locator, attempt, category)

            state = self._states.get(resource_id)
            if not self._is_current(state, episode):
                logger.debug(f"{resource_id}: late result of attempt {attempt} discarded")
                return

            if outcome.succeeded:
                await self._recovered(state, attempt, outcome)
                return

            logger.warning(f"{state.resource_name}: retry attempt {attempt} failed")
            observation = outcome.observation or FailureObservation(incomplete=True)
            category = self._on_failure(state, observation, attempt=attempt)
            if not category.retryable:
                return

    async def _recovered(self, state: ResourceState, attempt: int, outcome: LadderOutcome):
        self._on_success(state)
        logger.info(
            f"{state.resource_name}: tile recovery successful after {attempt} attempts "
            f"({outcome.strategy})"
        )
        if outcome.substituted_transport:
            self.gate.on_transport_recovery(state)

        if self.on_recovered is None:
            return
        try:
            result = self.on_recovered(state.resource_id, outcome.payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Recovered-tile callback failed for {state.resource_id}")
