"""Tests for tile service health reporting."""
import asyncio
import logging
from datetime import datetime, timezone

import pytest

from src.config import RecoveryConfig
from src.tiles.errors import ErrorCategory, ResourceClass
from src.tiles.health import HealthMonitor, HealthReporter, HealthStatus, ServiceHealth, summarize
from src.tiles.state import ResourceState

WHEN = datetime(2025, 9, 11, tzinfo=timezone.utc)


def _state(rid: str, errors: int = 0, exhausted: bool = False) -> ResourceState:
    state = ResourceState(rid, rid, ResourceClass.CONTINUOUS_FORECAST)
    for _ in range(errors):
        state.record_failure(ErrorCategory.SERVER_ERROR, WHEN)
    if exhausted:
        state.mark_exhausted()
    return state


@pytest.fixture
def reporter(config):
    return HealthReporter(config)


class TestHealthReporter:

    def test_empty(self, reporter):
        health = reporter.snapshot([])
        assert health.total_resources == 0
        assert health.healthy_percent == 100
        assert health.status is HealthStatus.HEALTHY

    def test_buckets_are_disjoint(self, reporter):
        states = [
            _state("a"),
            _state("b", errors=1),
            _state("c", errors=3),
            _state("d", errors=4),
            _state("e", errors=9, exhausted=True),
        ]
        health = reporter.snapshot(states)
        assert health.total_resources == 5
        assert health.healthy_resources == 1
        assert health.retrying_resources == 2
        assert health.problematic_resources == 1
        assert health.exhausted_resources == 1
        assert (
            health.healthy_resources + health.retrying_resources
            + health.problematic_resources + health.exhausted_resources
        ) == health.total_resources

    def test_problematic_threshold_configurable(self):
        reporter = HealthReporter(RecoveryConfig(jitter_ratio=0.0, problematic_after=1))
        health = reporter.snapshot([_state("a", errors=2)])
        assert health.problematic_resources == 1

    def test_status(self, reporter):
        assert reporter.snapshot([_state("a", errors=1)]).status is HealthStatus.DEGRADED
        assert reporter.snapshot([_state("a", exhausted=True)]).status is HealthStatus.UNHEALTHY

    def test_to_dict(self, reporter):
        data = reporter.snapshot([_state("a"), _state("b", errors=5)]).to_dict()
        assert data["healthy_percent"] == 50
        assert data["status"] == "degraded"
        assert isinstance(data["timestamp"], str)


class TestSummarize:

    def test_no_resources(self):
        assert summarize(ServiceHealth()) == "No tile layers currently being monitored"

    def test_all_healthy(self):
        text = summarize(ServiceHealth(total_resources=2, healthy_resources=2))
        assert text == "Tile loading health: 100% healthy (all layers loading normally)"

    def test_problematic(self):
        text = summarize(ServiceHealth(total_resources=4, healthy_resources=3, problematic_resources=1))
        assert text == "Tile loading health: 75% healthy (1 problematic)"

    def test_exhausted(self):
        text = summarize(ServiceHealth(total_resources=2, healthy_resources=1, exhausted_resources=1))
        assert "1 failed" in text


class TestHealthMonitor:

    def test_history_is_bounded(self):
        monitor = HealthMonitor(lambda: ServiceHealth(), history_size=20)
        for _ in range(25):
            monitor.sample()
        assert len(monitor.history) == 20

    def test_sample_never_mutates_state(self, reporter):
        states = [_state("a", errors=2)]
        monitor = HealthMonitor(lambda: reporter.snapshot(states))
        monitor.sample()
        assert states[0].consecutive_errors == 2

    def test_start_and_stop(self):
        async def run():
            monitor = HealthMonitor(lambda: ServiceHealth(), interval_s=0.01)
            monitor.start()
            monitor.start()
            assert monitor.running
            await asyncio.sleep(0.05)
            await monitor.stop()
            assert not monitor.running
            return monitor

        monitor = asyncio.run(run())
        assert len(monitor.history) >= 1

    def test_failed_sample_does_not_stop_monitoring(self, caplog):
        calls = []

        def snapshot():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("state table unavailable")
            return ServiceHealth()

        async def run():
            monitor = HealthMonitor(snapshot, interval_s=0.01)
            monitor.start()
            await asyncio.sleep(0.08)
            still_running = monitor.running
            await monitor.stop()
            return monitor, still_running

        with caplog.at_level(logging.ERROR, logger="src.tiles.health"):
            monitor, still_running = asyncio.run(run())
        assert still_running
        assert len(calls) >= 2
        assert len(monitor.history) == len(calls) - 1
        assert "Tile health sample failed" in caplog.text
