"""
Tests for the tile recovery service.

Sleeps are recorded rather than awaited, transports are scripted, and
jitter is off, so every recovery run is deterministic.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from src.config import RecoveryConfig
from src.tiles.errors import ErrorCategory, FailureObservation, ResourceClass
from src.tiles.health import HealthStatus
from src.tiles.ladder import StrategyLadder
from src.tiles.scheduler import RecoveryScheduler
from src.tiles.service import TileRecoveryService
from src.tiles.state import EXHAUSTED
from src.tiles.transports import TileTransport, build_payload

FIXED = datetime(2025, 9, 11, 6, 0, tzinfo=timezone.utc)

PROTOCOL = FailureObservation(status_code=None, incomplete=True)
SERVER = FailureObservation(status_code=503)


@pytest.fixture
def recovered():
    return []


@pytest.fixture
def make_service(config, scheduler, sink, recovered, transport_factory, protocol_failure):
    def _make(primary=None, alternate=None, fallback=None, service_config=None):
        cfg = service_config or config
        ladder = StrategyLadder(
            primary=primary or transport_factory("primary", [protocol_failure]),
            alternate=alternate or transport_factory("alternate", [protocol_failure]),
            fallback=fallback or transport_factory("fallback", [protocol_failure]),
            config=cfg,
        )
        return TileRecoveryService(
            config=cfg,
            ladder=ladder,
            scheduler=scheduler if service_config is None else RecoveryScheduler(cfg, sleep=scheduler._sleep),
            sink=sink,
            on_recovered=lambda rid, payload: recovered.append((rid, payload)),
            clock=lambda: FIXED,
        )
    return _make


# ============================================================================
# Protocol error walkthrough
# ============================================================================

class TestProtocolErrorRecovery:
    """One reported protocol failure, recovered on the sixth attempt."""

    def test_full_recovery_sequence(
        self, make_service, transport_factory, protocol_failure, png_bytes,
        sleep_recorder, sink, recovered, wms_url,
    ):
        primary = transport_factory("primary", [protocol_failure])
        alternate = transport_factory("alternate", [protocol_failure] * 3 + [png_bytes])
        fallback = transport_factory("fallback", [protocol_failure])
        service = make_service(primary, alternate, fallback)

        consecutive_at_sleep = []

        async def run():
            service.initialize_resource("tpeak-layer", "tpeak", ResourceClass.CONTINUOUS_FORECAST)
            sleep_recorder._on_sleep = lambda _: consecutive_at_sleep.append(
                service.get_resource_state("tpeak-layer").consecutive_errors
            )
            task = await service.report_failure(
                "tpeak-layer",
                FailureObservation(status_code=None, incomplete=True, locator=wms_url),
            )
            assert task is not None
            await service.join()

        asyncio.run(run())

        assert sleep_recorder.delays_ms == [500, 700, 900, 1100, 1300, 1500]
        assert consecutive_at_sleep == [1, 2, 3, 4, 5, 6]

        # attempts 1-4 on the primary transport, 5-6 substituted
        assert len(primary.calls) == 4
        assert len(fallback.calls) == 1
        assert len(alternate.calls) == 4

        state = service.get_resource_state("tpeak-layer")
        assert state.consecutive_errors == 0
        assert state.recovery_attempts == 0
        assert state.total_errors == 6
        assert state.error_category is ErrorCategory.PROTOCOL_ERROR

        severities = [(e["severity"], e["duration_ms"]) for e in sink.entries]
        assert severities == [("info", 2000), ("warning", 4000), ("success", 3000)]

        flags = service.gate.state_for("tpeak-layer")
        assert not flags.protocol_notice_notified
        assert not flags.protocol_warning_notified

        assert len(recovered) == 1
        rid, payload = recovered[0]
        assert rid == "tpeak-layer"
        assert payload.strategy == "alternate-request-api"

    def test_reported_failures_drive_tiers(self, make_service, sink):
        service = make_service()

        async def run():
            for _ in range(5):
                await service.report_failure("tpeak-layer", PROTOCOL)

        asyncio.run(run())
        state = service.get_resource_state("tpeak-layer")
        assert state.consecutive_errors == 5
        assert state.error_category is ErrorCategory.PROTOCOL_ERROR
        assert [e["severity"] for e in sink.entries] == ["info", "warning"]

        assert service.report_success("tpeak-layer") is True
        state = service.get_resource_state("tpeak-layer")
        assert state.consecutive_errors == 0
        assert state.recovery_attempts == 0
        flags = service.gate.state_for("tpeak-layer")
        assert not flags.protocol_notice_notified
        assert not flags.protocol_warning_notified

    def test_early_success_on_primary(self, make_service, transport_factory, png_bytes, sink, recovered, wms_url):
        service = make_service(primary=transport_factory("primary", [png_bytes]))

        async def run():
            await service.report_failure("hs", FailureObservation(incomplete=True, locator=wms_url))
            await service.join()

        asyncio.run(run())
        state = service.get_resource_state("hs")
        assert state.consecutive_errors == 0
        assert state.total_errors == 1
        assert sink.entries == []
        assert recovered[0][1].strategy == "retry-1"


# ============================================================================
# Exhaustion
# ============================================================================

class TestExhaustion:

    def _exhaust(self, service, wms_url, rid="hs-layer", name="hs"):
        async def run():
            service.initialize_resource(rid, name, locator=wms_url)
            await service.report_failure(rid, SERVER)
            await service.join()
        asyncio.run(run())

    def test_server_errors_exhaust_budget(
        self, make_service, transport_factory, server_failure, sleep_recorder, sink, recovered, wms_url,
    ):
        primary = transport_factory("primary", [server_failure])
        service = make_service(primary=primary)
        self._exhaust(service, wms_url)

        state = service.get_resource_state("hs-layer")
        assert state.recovery_attempts == EXHAUSTED
        assert state.total_errors == 7
        assert len(primary.calls) == 6
        assert sleep_recorder.delays_ms == [1000, 1500, 2250, 3375, 5062, 7593]
        assert recovered == []

        entries = sink.entries
        assert [(e["severity"], e["duration_ms"]) for e in entries] == [("warning", 5000), ("error", 8000)]
        assert entries[-1]["message"] == (
            "Wave Height temporarily unavailable. The system is working to restore the connection."
        )

    def test_exhausted_is_terminal(self, make_service, transport_factory, server_failure, sink, wms_url):
        service = make_service(primary=transport_factory("primary", [server_failure]))
        self._exhaust(service, wms_url)
        before = len(sink.entries)

        async def more_failures():
            tasks = [await service.report_failure("hs-layer", SERVER) for _ in range(3)]
            return tasks

        assert asyncio.run(more_failures()) == [None, None, None]
        assert service.report_success("hs-layer") is False
        assert service.get_resource_state("hs-layer").recovery_attempts == EXHAUSTED
        assert len(sink.entries) == before

        health = service.get_service_health()
        assert health.exhausted_resources == 1
        assert health.status is HealthStatus.UNHEALTHY

    def test_reinitialise_leaves_exhausted(
        self, make_service, transport_factory, server_failure, png_bytes, wms_url, recovered,
    ):
        primary = transport_factory("primary", [server_failure] * 6 + [png_bytes])
        service = make_service(primary=primary)
        self._exhaust(service, wms_url)

        state = service.initialize_resource("hs-layer", "hs")
        assert state.recovery_attempts == 0
        assert state.total_errors == 0
        assert state.original_locator == wms_url

        async def run():
            task = await service.report_failure("hs-layer", SERVER)
            assert task is not None
            await service.join()

        asyncio.run(run())
        assert service.get_resource_state("hs-layer").is_healthy
        assert len(recovered) == 1

    def test_smaller_budget(self, make_service, transport_factory, server_failure, wms_url):
        config = RecoveryConfig(jitter_ratio=0.0, max_retries=2)
        primary = transport_factory("primary", [server_failure])
        service = make_service(primary=primary, service_config=config)
        self._exhaust(service, wms_url)
        assert len(primary.calls) == 2
        assert service.get_resource_state("hs-layer").is_exhausted


# ============================================================================
# Stale results
# ============================================================================

class GatedTransport(TileTransport):
    """Blocks each fetch until released; tracks how many fetches overlap."""

    name = "gated"

    def __init__(self, content: bytes):
        self.content = content
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = None
        self.release = None

    async def fetch(self, locator, timeout):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.started.set()
            await self.release.wait()
            return build_payload(self.content, "image/png", locator, self.name)
        finally:
            self.in_flight -= 1


class TestStaleResults:

    def test_success_during_retry_discards_result(self, make_service, png_bytes, sink, recovered, wms_url):
        gated = GatedTransport(png_bytes)
        service = make_service(primary=gated)

        async def run():
            gated.started = asyncio.Event()
            gated.release = asyncio.Event()
            await service.report_failure("hs", FailureObservation(status_code=503, locator=wms_url))
            await gated.started.wait()

            assert service.report_success("hs") is True
            gated.release.set()
            await service.join()

        asyncio.run(run())
        state = service.get_resource_state("hs")
        assert state.consecutive_errors == 0
        assert state.total_errors == 1
        assert recovered == []
        assert sink.entries == []

    def test_new_episode_waits_for_cancelled_fetch(self, make_service, png_bytes, recovered, wms_url):
        gated = GatedTransport(png_bytes)
        service = make_service(primary=gated)

        async def run():
            gated.started = asyncio.Event()
            gated.release = asyncio.Event()
            stale = await service.report_failure("hs", FailureObservation(status_code=503, locator=wms_url))
            await gated.started.wait()
            service.report_success("hs")

            gated.started.clear()
            fresh = await service.report_failure("hs", FailureObservation(status_code=503))
            assert fresh is not None
            await gated.started.wait()
            gated.release.set()
            await service.join()
            return stale, fresh

        stale, fresh = asyncio.run(run())
        assert stale.cancelled()
        assert fresh.done() and not fresh.cancelled()
        assert gated.max_in_flight == 1
        assert gated.calls == 2
        assert len(recovered) == 1
        assert service.get_resource_state("hs").is_healthy

    def test_aclose_leaves_no_task_pending(self, make_service, png_bytes, wms_url):
        gated = GatedTransport(png_bytes)
        service = make_service(primary=gated)

        async def run():
            gated.started = asyncio.Event()
            gated.release = asyncio.Event()
            stale = await service.report_failure("hs", FailureObservation(status_code=503, locator=wms_url))
            await gated.started.wait()
            service.initialize_resource("hs")
            fresh = await service.report_failure("hs", FailureObservation(status_code=503))
            await service.aclose()
            return stale, fresh

        stale, fresh = asyncio.run(run())
        assert stale.done()
        assert fresh.done()
        assert gated.max_in_flight == 1
        assert gated.calls == 1


# ============================================================================
# Sequencing and independence
# ============================================================================

class TestSequencing:

    def test_one_recovery_task_per_resource(self, make_service, transport_factory, png_bytes, wms_url):
        primary = transport_factory("primary", [png_bytes])
        service = make_service(primary=primary)

        async def run():
            first = await service.report_failure("hs", FailureObservation(status_code=503, locator=wms_url))
            second = await service.report_failure("hs", FailureObservation(status_code=503))
            third = await service.report_failure("hs", FailureObservation(status_code=503))
            await service.join()
            return first, second, third

        first, second, third = asyncio.run(run())
        assert first is not None
        assert second is None and third is None
        assert len(primary.calls) == 1
        assert service.get_resource_state("hs").total_errors == 3

    def test_resources_are_independent(self, config, sink):
        def drive(service, steps):
            for rid, outcome in steps:
                if outcome is None:
                    service.report_success(rid)
                else:
                    asyncio.run(service.report_failure(rid, outcome))

        a_steps = [("a", SERVER), ("a", SERVER), ("a", None), ("a", PROTOCOL)]
        b_steps = [("b", FailureObservation(status_code=404))] * 4
        interleaved = [step for pair in zip(a_steps, b_steps) for step in pair]

        def fresh():
            return TileRecoveryService(config=config, sink=sink, clock=lambda: FIXED)

        together = fresh()
        drive(together, interleaved)
        alone_a, alone_b = fresh(), fresh()
        drive(alone_a, a_steps)
        drive(alone_b, b_steps)

        assert together.get_resource_state("a").to_dict() == alone_a.get_resource_state("a").to_dict()
        assert together.get_resource_state("b").to_dict() == alone_b.get_resource_state("b").to_dict()

    def test_limited_temporal_never_retried_or_notified(self, make_service, transport_factory, png_bytes, sink, wms_url):
        primary = transport_factory("primary", [png_bytes])
        service = make_service(primary=primary)

        async def run():
            service.initialize_resource("waves", "hs", ResourceClass.LIMITED_TEMPORAL, locator=wms_url)
            return [await service.report_failure("waves", SERVER) for _ in range(10)]

        assert asyncio.run(run()) == [None] * 10
        state = service.get_resource_state("waves")
        assert state.error_category is ErrorCategory.EXPECTED_DATA_GAP
        assert state.consecutive_errors == 10
        assert state.total_errors == 10
        assert not state.is_exhausted
        assert primary.calls == []
        assert sink.entries == []

    def test_static_layer_is_configuration_issue(self, make_service, wms_url):
        service = make_service()

        async def run():
            return await service.report_failure(
                "inun", FailureObservation(status_code=500, locator=wms_url)
            )

        assert asyncio.run(run()) is None
        state = service.get_resource_state("inun")
        assert state.resource_class is ResourceClass.STATIC
        assert state.error_category is ErrorCategory.CONFIGURATION_ISSUE

    def test_unfetchable_locator_is_tracked_but_not_retried(self, make_service):
        service = make_service()

        async def run():
            return await service.report_failure(
                "hs", FailureObservation(status_code=503, locator="data:image/png;base64,AAAA")
            )

        assert asyncio.run(run()) is None
        assert service.get_resource_state("hs").consecutive_errors == 1


# ============================================================================
# Entry points and lifecycle
# ============================================================================

class TestEntryPoints:

    def test_success_on_untracked_resource(self, make_service):
        assert make_service().report_success("nope") is False

    def test_state_is_a_copy(self, make_service):
        service = make_service()
        state = service.initialize_resource("hs")
        state.consecutive_errors = 99
        assert service.get_resource_state("hs").consecutive_errors == 0
        assert service.get_resource_state("missing") is None

    def test_initialize_derives_class_from_name(self, make_service):
        service = make_service()
        assert service.initialize_resource("x", "inundation").resource_class is ResourceClass.STATIC
        assert service.initialize_resource("y", "hs").resource_class is ResourceClass.CONTINUOUS_FORECAST

    def test_reinitialise_clears_history(self, make_service):
        service = make_service()

        async def run():
            await service.report_failure("hs", SERVER)
            await service.report_failure("hs", SERVER)

        asyncio.run(run())
        state = service.initialize_resource("hs")
        assert state.total_errors == 0
        assert state.consecutive_errors == 0

    def test_health_snapshot(self, make_service):
        service = make_service()
        service.initialize_resource("a")

        async def run():
            await service.report_failure("b", SERVER)

        asyncio.run(run())
        health = service.get_service_health()
        assert health.total_resources == 2
        assert health.healthy_resources == 1
        assert health.retrying_resources == 1
        assert len(service.resources()) == 2

    def test_start_is_idempotent_and_aclose_releases_transports(self, make_service):
        service = make_service()

        async def run():
            async with service:
                assert service.started
                await service.start()
                assert service.started
            return service

        asyncio.run(run())
        assert not service.started
        assert service.ladder.primary.closed
        assert service.ladder.fallback.closed

    def test_async_recovered_callback_is_awaited(self, make_service, transport_factory, png_bytes, wms_url):
        service = make_service(primary=transport_factory("primary", [png_bytes]))
        received = []

        async def on_recovered(rid, payload):
            await asyncio.sleep(0)
            received.append(rid)

        service.on_recovered = on_recovered

        async def run():
            await service.report_failure("hs", FailureObservation(status_code=503, locator=wms_url))
            await service.join()

        asyncio.run(run())
        assert received == ["hs"]

    def test_failing_callback_does_not_break_recovery(self, make_service, transport_factory, png_bytes, wms_url):
        service = make_service(primary=transport_factory("primary", [png_bytes]))

        def on_recovered(rid, payload):
            raise RuntimeError("display gone")

        service.on_recovered = on_recovered

        async def run():
            await service.report_failure("hs", FailureObservation(status_code=503, locator=wms_url))
            await service.join()

        asyncio.run(run())
        assert service.get_resource_state("hs").is_healthy
