"""
Strategy ladder for tile recovery.

For a given attempt number the ladder builds an ordered list of steps and
runs them until one yields an image:

    attempt 1    original locator + cache buster          (primary transport)
    attempt 2    simplified format, errors in image       (primary transport)
    attempt 3    styling stripped, version pinned         (primary transport)
    attempt 4+   minimal parameter set                    (primary transport)

Protocol errors that are still failing once the same-transport attempts are
used up switch transport instead:

    1. alternate request API  (httpx, HTTP/1.1 no-cache headers)
    2. different client       (requests in a worker thread)
    3. minimal-protocol variant
    4. alternate upstream path

Steps only share the original locator. Each step has its own timeout.
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import List, Optional

from src.config import RecoveryConfig, get_recovery_config
from src.tiles import locator as locators
from src.tiles.errors import ErrorCategory, FailureObservation, TileFetchError
from src.tiles.transports import (
    HTTP1_HEADERS,
    HttpxTransport,
    RequestsTransport,
    TilePayload,
    TileTransport,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LadderStep:
    """One fetch to try: which transport, which locator."""
    name: str
    transport: TileTransport
    locator: str
    substitutes_transport: bool = False


@dataclass
class LadderOutcome:
    """Result of running the ladder for one attempt."""
    payload: Optional[TilePayload] = None
    observation: Optional[FailureObservation] = None
    strategy: Optional[str] = None
    substituted_transport: bool = False
    steps_tried: int = 0

    @property
    def succeeded(self) -> bool:
        return self.payload is not None


class StrategyLadder:
    """
    Builds and runs the fetch steps for a retry attempt.

    Usage:
        ladder = StrategyLadder()
        outcome = await ladder.run(original_url, attempt=2,
                                   category=ErrorCategory.SERVER_ERROR)
        if outcome.succeeded:
            display(outcome.payload)
    """

    def __init__(
        self,
        primary: Optional[TileTransport] = None,
        alternate: Optional[TileTransport] = None,
        fallback: Optional[TileTransport] = None,
        config: Optional[RecoveryConfig] = None,
    ):
        self.config = config or get_recovery_config()
        agent = self.config.user_agent
        self.primary = primary or HttpxTransport(name="primary", user_agent=agent)
        self.alternate = alternate or HttpxTransport(
            headers=HTTP1_HEADERS, name="http1-no-cache", user_agent=agent
        )
        self.fallback = fallback or RequestsTransport(
            headers=HTTP1_HEADERS, name="requests", user_agent=agent
        )

    def steps_for(self, original: str, attempt: int, category: ErrorCategory) -> List[LadderStep]:
        """Ordered steps for an attempt. Pure apart from the cache-buster timestamp."""
        switch_at = self.config.transport_switch_attempt
        if category is ErrorCategory.PROTOCOL_ERROR and attempt >= switch_at:
            return [
                LadderStep(
                    "alternate-request-api",
                    self.alternate,
                    locators.with_cache_buster(original, attempt),
                    substitutes_transport=True,
                ),
                LadderStep(
                    "alternate-client",
                    self.fallback,
                    locators.with_cache_buster(original, attempt),
                    substitutes_transport=True,
                ),
                LadderStep(
                    "minimal-protocol",
                    self.alternate,
                    locators.minimal_parameters(original),
                    substitutes_transport=True,
                ),
                LadderStep(
                    "alternate-endpoint",
                    self.alternate,
                    locators.alternate_endpoint(original, self.config.alternate_base_url),
                    substitutes_transport=True,
                ),
            ]

        return [
            LadderStep(
                f"retry-{attempt}",
                self.primary,
                locators.retry_locator(original, attempt),
            )
        ]

    async def _run_step(self, step: LadderStep, timeout: float) -> TilePayload:
        try:
            payload = await asyncio.wait_for(step.transport.fetch(step.locator, timeout), timeout)
        except asyncio.TimeoutError:
            raise TileFetchError(f"{step.name}: no response within {timeout}s", incomplete=True)
        return dataclasses.replace(payload, strategy=step.name)

    async def run(self, original: str, attempt: int, category: ErrorCategory) -> LadderOutcome:
        """
        Run the steps for an attempt, stopping at the first usable image.

        Never raises for fetch failures; the outcome carries the observation
        of the last failed step instead.
        """
        timeout = self.config.timeout_for(category is ErrorCategory.PROTOCOL_ERROR)
        outcome = LadderOutcome()

        for step in self.steps_for(original, attempt, category):
            outcome.steps_tried += 1
            try:
                payload = await self._run_step(step, timeout)
            except TileFetchError as e:
                logger.debug(f"Ladder step {step.name} failed: {e}")
                outcome.observation = e.to_observation(step.locator)
                continue
            except Exception as e:
                logger.warning(f"Ladder step {step.name} raised {type(e).__name__}: {e}")
                outcome.observation = FailureObservation(locator=step.locator)
                continue

            outcome.payload = payload
            outcome.observation = None
            outcome.strategy = step.name
            outcome.substituted_transport = step.substitutes_transport
            if step.substitutes_transport:
                logger.info(f"Transport substitution '{step.name}' recovered tile")
            return outcome

        return outcome

    async def aclose(self):
        for transport in (self.primary, self.alternate, self.fallback):
            await transport.aclose()
