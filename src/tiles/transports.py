"""
Tile transports.

A transport fetches one locator and returns a TilePayload, or raises
TileFetchError carrying what a failure observation needs (HTTP status, or
the fact that the request never completed). A payload is only returned when
Pillow can open and verify the body as an image.
"""
import asyncio
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx
import requests
from PIL import Image

from src.tiles.errors import TileFetchError

logger = logging.getLogger(__name__)

# HTTP/1.1-style request that defeats intermediaries' caches
HTTP1_HEADERS = {
    "Connection": "close",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


@dataclass(frozen=True)
class TilePayload:
    """A displayable tile image."""
    content: bytes
    content_type: str
    locator: str
    strategy: str
    width: int
    height: int


def inspect_image(content: bytes) -> Tuple[int, int]:
    """
    Check that content is a decodable image.

    Returns:
        (width, height) of the image

    Raises:
        TileFetchError if Pillow cannot identify or verify the data
    """
    if not content:
        raise TileFetchError("empty response body")
    try:
        with Image.open(io.BytesIO(content)) as img:
            size = img.size
            img.verify()
    except (OSError, SyntaxError, ValueError) as e:
        raise TileFetchError(f"response is not a usable image: {e}")
    return size


def build_payload(
    content: bytes,
    content_type: Optional[str],
    locator: str,
    strategy: str,
    status_code: Optional[int] = None,
) -> TilePayload:
    try:
        width, height = inspect_image(content)
    except TileFetchError as e:
        # A 200 carrying an XML service exception is still a failed request
        e.status_code = status_code
        raise
    return TilePayload(
        content=content,
        content_type=content_type or "image/png",
        locator=locator,
        strategy=strategy,
        width=width,
        height=height,
    )


class TileTransport(ABC):
    """Fetches a single locator."""

    name: str = "transport"

    @abstractmethod
    async def fetch(self, locator: str, timeout: float) -> TilePayload:
        """Fetch locator within timeout seconds."""

    async def aclose(self):
        """Release any underlying connections."""


class HttpxTransport(TileTransport):
    """
    Async transport on httpx.

    Usage:
        transport = HttpxTransport(name="primary")
        payload = await transport.fetch(url, timeout=12.0)
        await transport.aclose()
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        name: str = "httpx",
        user_agent: Optional[str] = None,
    ):
        self.name = name
        self.headers = dict(headers or {})
        if user_agent:
            self.headers.setdefault("User-Agent", user_agent)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def fetch(self, locator: str, timeout: float) -> TilePayload:
        try:
            response = await self._client.get(locator, headers=self.headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TileFetchError(f"{self.name}: timed out: {e}", incomplete=True)
        except httpx.TransportError as e:
            raise TileFetchError(f"{self.name}: transport error: {e}", incomplete=True)

        if not response.is_success:
            raise TileFetchError(
                f"{self.name}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return build_payload(
            response.content,
            response.headers.get("content-type"),
            locator,
            self.name,
            status_code=response.status_code,
        )

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


class RequestsTransport(TileTransport):
    """
    Blocking requests session run in a worker thread.

    Shares no connection pool or protocol negotiation with the httpx
    transports, which is the point of using it as a fallback.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
        name: str = "requests",
        user_agent: Optional[str] = None,
    ):
        self.name = name
        self.headers = dict(headers or {})
        if user_agent:
            self.headers.setdefault("User-Agent", user_agent)
        self._owns_session = session is None
        self._session = session or requests.Session()

    def _get(self, locator: str, timeout: float) -> TilePayload:
        try:
            response = self._session.get(locator, headers=self.headers, timeout=timeout)
        except requests.Timeout as e:
            raise TileFetchError(f"{self.name}: timed out: {e}", incomplete=True)
        except requests.RequestException as e:
            raise TileFetchError(f"{self.name}: request failed: {e}", incomplete=True)

        if not 200 <= response.status_code < 300:
            raise TileFetchError(
                f"{self.name}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return build_payload(
            response.content,
            response.headers.get("content-type"),
            locator,
            self.name,
            status_code=response.status_code,
        )

    async def fetch(self, locator: str, timeout: float) -> TilePayload:
        return await asyncio.to_thread(self._get, locator, timeout)

    async def aclose(self):
        if self._owns_session:
            self._session.close()
