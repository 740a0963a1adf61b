"""
Shared pytest fixtures for TILEGUARD tests.

Engine tests never touch the network: transports are scripted, sleeps are
recorded instead of awaited, and jitter is disabled unless a test turns it
on explicitly.
"""

import io
import os
from typing import List

import pytest
from PIL import Image

# ---------------------------------------------------------------------------
# Section 1: Environment setup (before ANY api.* imports)
# ---------------------------------------------------------------------------
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("HEALTH_MONITOR_INTERVAL", "0")

from src.config import RecoveryConfig  # noqa: E402
from src.tiles.errors import TileFetchError  # noqa: E402
from src.tiles.notifications import CollectingNotificationSink  # noqa: E402
from src.tiles.scheduler import RecoveryScheduler  # noqa: E402
from src.tiles.transports import TileTransport, build_payload  # noqa: E402

WMS_URL = (
    "https://ocean.example.org/ncWMS/wms?SERVICE=WMS&REQUEST=GetMap&VERSION=1.3.0"
    "&LAYERS=cook_forecast/tpeak&STYLES=default-scalar/x-Rainbow&FORMAT=image/png"
    "&TRANSPARENT=true&CRS=EPSG:3857&BBOX=-17811118,-2504688,-17732846,-2426417"
    "&WIDTH=256&HEIGHT=256&TIME=2025-09-11T06:00:00Z&COLORSCALERANGE=0,20"
    "&NUMCOLORBANDS=250&ABOVEMAXCOLOR=extend&BELOWMINCOLOR=transparent"
)


def _png_bytes(size: int = 256) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (size, size), (0, 90, 160, 255)).save(buf, format="PNG")
    return buf.getvalue()


PNG = _png_bytes()


# ---------------------------------------------------------------------------
# Section 2: Test doubles
# ---------------------------------------------------------------------------


class ScriptedTransport(TileTransport):
    """Returns scripted outcomes in order; the last one repeats."""

    def __init__(self, name: str, outcomes: list):
        self.name = name
        self._outcomes = list(outcomes)
        self.calls: List[str] = []
        self.closed = False

    async def fetch(self, locator: str, timeout: float):
        self.calls.append(locator)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return build_payload(outcome, "image/png", locator, self.name)

    async def aclose(self):
        self.closed = True


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays in seconds."""

    def __init__(self, on_sleep=None):
        self.delays: List[float] = []
        self._on_sleep = on_sleep

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        if self._on_sleep is not None:
            self._on_sleep(seconds)

    @property
    def delays_ms(self) -> List[int]:
        return [round(d * 1000) for d in self.delays]


# ---------------------------------------------------------------------------
# Section 3: Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def png_bytes():
    return PNG


@pytest.fixture
def wms_url():
    return WMS_URL


@pytest.fixture
def config():
    """Default tuning with jitter disabled."""
    return RecoveryConfig(jitter_ratio=0.0)


@pytest.fixture
def transport_factory():
    return ScriptedTransport


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def scheduler(config, sleep_recorder):
    return RecoveryScheduler(config, sleep=sleep_recorder)


@pytest.fixture
def sink():
    return CollectingNotificationSink()


@pytest.fixture
def protocol_failure():
    return TileFetchError("stream reset", incomplete=True)


@pytest.fixture
def server_failure():
    return TileFetchError("HTTP 503", status_code=503)


@pytest.fixture
def app_factory(config, protocol_failure):
    """Builds an API app whose engine runs on scripted transports."""
    from api.config import Settings
    from api.main import create_app
    from src.tiles.ladder import StrategyLadder
    from src.tiles.service import TileRecoveryService

    def _build(primary_outcomes=None):
        primary = ScriptedTransport("primary", primary_outcomes or [PNG])
        ladder = StrategyLadder(
            primary=primary,
            alternate=ScriptedTransport("alternate", [protocol_failure]),
            fallback=ScriptedTransport("fallback", [protocol_failure]),
            config=config,
        )
        service = TileRecoveryService(
            config=config,
            ladder=ladder,
            scheduler=RecoveryScheduler(config, sleep=SleepRecorder()),
        )
        settings = Settings(health_monitor_interval=0, environment="development")
        return create_app(settings=settings, recovery_config=config, service=service)

    return _build


@pytest.fixture
def client(app_factory):
    """API test client; recoveries succeed on the first attempt."""
    from fastapi.testclient import TestClient

    with TestClient(app_factory()) as test_client:
        yield test_client
