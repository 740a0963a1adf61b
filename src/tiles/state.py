"""
Per-resource failure bookkeeping.

One ResourceState and one NotificationState exist per tracked resource id.
Both are plain records; all mutation goes through TileRecoveryService's
failure and success handlers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from src.tiles.errors import ErrorCategory, ResourceClass

# recovery_attempts value for a resource whose retry budget is spent
EXHAUSTED = -1


class ResourcePhase(Enum):
    """Derived health phase of a resource."""
    HEALTHY = "healthy"
    RETRYING = "retrying"
    ESCALATING = "escalating"
    EXHAUSTED = "exhausted"


@dataclass
class NotificationState:
    """Which escalation tiers have already been shown this episode."""
    server_error_notified: bool = False
    protocol_notice_notified: bool = False
    protocol_warning_notified: bool = False
    exhausted_notified: bool = False
    last_notification: Optional[datetime] = None

    def clear(self):
        self.server_error_notified = False
        self.protocol_notice_notified = False
        self.protocol_warning_notified = False
        self.exhausted_notified = False


@dataclass
class ResourceState:
    """Failure counters for one tracked resource."""
    resource_id: str
    resource_name: str
    resource_class: ResourceClass
    consecutive_errors: int = 0
    total_errors: int = 0
    last_error_timestamp: Optional[datetime] = None
    recovery_attempts: int = 0
    error_category: Optional[ErrorCategory] = None
    original_locator: Optional[str] = None

    # Bumped on every reset; recovery tasks from an older episode are stale
    episode: int = field(default=0, repr=False)

    @property
    def is_exhausted(self) -> bool:
        return self.recovery_attempts == EXHAUSTED

    @property
    def is_healthy(self) -> bool:
        return self.consecutive_errors == 0 and not self.is_exhausted

    def phase(self, max_retries: int) -> ResourcePhase:
        """Phase derived from the counters for a given retry budget."""
        if self.is_exhausted:
            return ResourcePhase.EXHAUSTED
        if self.consecutive_errors == 0:
            return ResourcePhase.HEALTHY
        if self.consecutive_errors > max_retries / 2:
            return ResourcePhase.ESCALATING
        return ResourcePhase.RETRYING

    def record_failure(self, category: ErrorCategory, when: datetime):
        self.consecutive_errors += 1
        self.total_errors += 1
        self.last_error_timestamp = when
        self.error_category = category

    def reset(self):
        """Back to healthy. total_errors is never reset."""
        self.consecutive_errors = 0
        self.recovery_attempts = 0
        self.episode += 1

    def mark_exhausted(self):
        self.recovery_attempts = EXHAUSTED

    def to_dict(self, max_retries: Optional[int] = None) -> Dict[str, Any]:
        data = {
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "resource_class": self.resource_class.value,
            "consecutive_errors": self.consecutive_errors,
            "total_errors": self.total_errors,
            "last_error_timestamp": (
                self.last_error_timestamp.isoformat() if self.last_error_timestamp else None
            ),
            "recovery_attempts": self.recovery_attempts,
            "error_category": self.error_category.value if self.error_category else None,
        }
        if max_retries is not None:
            data["phase"] = self.phase(max_retries).value
        return data
