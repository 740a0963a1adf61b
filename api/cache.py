"""
Recovered-tile store for the TILEGUARD API.

The engine hands every successfully recovered tile to ``store`` (its
on_recovered callback). Clients poll for the latest image per resource and
swap it into the map without reloading the layer. Only the newest tile per
resource is kept; the store is a bounded LRU with an optional TTL and is
safe to call from the engine's event loop and from request threads.
"""
import logging
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from src.tiles.transports import TilePayload

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RecoveredTile:
    payload: TilePayload
    stored_at: datetime
    expires_at: Optional[datetime]
    served: int = 0

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at


class RecoveredTileCache:
    """
    Newest recovered tile per resource id.

    Usage:
        cache = RecoveredTileCache(max_size=500, default_ttl_seconds=900)
        service = TileRecoveryService(on_recovered=cache.store)
        payload = cache.get("hs-layer")
    """

    def __init__(
        self,
        max_size: int = 500,
        default_ttl_seconds: Optional[int] = 900,
        name: str = "recovered_tiles",
    ):
        self.max_size = max_size
        self.default_ttl_seconds = default_ttl_seconds
        self.name = name

        self._tiles: "OrderedDict[str, RecoveredTile]" = OrderedDict()
        self._lock = threading.RLock()

        self._stored = 0
        self._served = 0
        self._misses = 0
        self._evicted = 0
        self._expired = 0
        self._by_strategy: Counter = Counter()

    def store(self, resource_id: str, payload: TilePayload) -> None:
        """Keep payload as the newest tile for resource_id."""
        now = _utcnow()
        ttl = self.default_ttl_seconds
        tile = RecoveredTile(
            payload=payload,
            stored_at=now,
            expires_at=now + timedelta(seconds=ttl) if ttl else None,
        )
        with self._lock:
            self._tiles.pop(resource_id, None)
            while len(self._tiles) >= self.max_size:
                dropped, _ = self._tiles.popitem(last=False)
                self._evicted += 1
                logger.debug(f"Recovered tile for {dropped} evicted from '{self.name}'")
            self._tiles[resource_id] = tile
            self._stored += 1
            self._by_strategy[payload.strategy] += 1

    def _live(self, resource_id: str) -> Optional[RecoveredTile]:
        """Entry if present and fresh; expired entries are dropped (caller holds the lock)."""
        tile = self._tiles.get(resource_id)
        if tile is not None and tile.expired(_utcnow()):
            del self._tiles[resource_id]
            self._expired += 1
            return None
        return tile

    def get(self, resource_id: str) -> Optional[TilePayload]:
        """Newest recovered payload, or None if there is none or it expired."""
        with self._lock:
            tile = self._live(resource_id)
            if tile is None:
                self._misses += 1
                return None
            tile.served += 1
            self._served += 1
            self._tiles.move_to_end(resource_id)
            return tile.payload

    def discard(self, resource_id: str) -> bool:
        with self._lock:
            return self._tiles.pop(resource_id, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._tiles)
            self._tiles.clear()
        logger.info(f"Recovered tile store '{self.name}' cleared ({count} tiles)")
        return count

    def resources(self) -> List[str]:
        with self._lock:
            return [rid for rid in list(self._tiles) if self._live(rid) is not None]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "size": len(self._tiles),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl_seconds,
                "stored": self._stored,
                "served": self._served,
                "misses": self._misses,
                "evicted": self._evicted,
                "expired": self._expired,
                "by_strategy": dict(self._by_strategy),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._tiles)

    def __contains__(self, resource_id: str) -> bool:
        with self._lock:
            return self._live(resource_id) is not None
