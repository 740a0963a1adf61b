"""
User-facing notifications for failing tile layers.

The gate decides whether a failure deserves a toast and makes sure each
escalation tier is shown at most once per unhealthy episode. Rendering is
left to a NotificationSink supplied by the host application.
"""
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional, Protocol

from src.config import RecoveryConfig, get_recovery_config
from src.tiles.errors import ErrorCategory, ResourceClass
from src.tiles.state import NotificationState, ResourceState

logger = logging.getLogger(__name__)


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class NotificationSink(Protocol):
    """Anything that can show a toast."""

    def notify(self, severity: Severity, message: str, duration_ms: int) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes notifications to the log."""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.SUCCESS: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.ERROR: logging.ERROR,
    }

    def notify(self, severity: Severity, message: str, duration_ms: int) -> None:
        logger.log(self._LEVELS[severity], f"[{severity.value.upper()}] {message}")


class CollectingNotificationSink:
    """Keeps the most recent notifications in memory."""

    def __init__(self, max_entries: int = 100):
        self._entries: Deque[dict] = deque(maxlen=max_entries)

    def notify(self, severity: Severity, message: str, duration_ms: int) -> None:
        self._entries.append({
            "severity": severity.value,
            "message": message,
            "duration_ms": duration_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @property
    def entries(self) -> List[dict]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()


FRIENDLY_NAMES: Dict[str, str] = {
    "dirm": "Wave Direction",
    "hs": "Wave Height",
    "tm02": "Wave Period",
    "tpeak": "Peak Wave Period",
    "cook_forecast": "Cook Islands Forecast",
}


def display_name(resource_name: str) -> str:
    """Human-readable layer name, 'Marine Data' when unknown."""
    key = resource_name.lower()
    if key in FRIENDLY_NAMES:
        return FRIENDLY_NAMES[key]
    for name, label in FRIENDLY_NAMES.items():
        if key.startswith(f"{name}-") or key.startswith(f"{name}_"):
            return label
    return "Marine Data"


def exhausted_message(state: ResourceState) -> str:
    """Final message once a resource's retry budget is spent."""
    label = display_name(state.resource_name)
    if state.resource_class is ResourceClass.LIMITED_TEMPORAL:
        return f"{label} is not available for the selected time."
    if state.resource_class is ResourceClass.STATIC:
        return f"{label} could not be loaded. The layer configuration may need attention."
    return (
        f"{label} temporarily unavailable. "
        "The system is working to restore the connection."
    )


PROTOCOL_NOTICE = (Severity.INFO, "Optimizing marine data connection. Please wait...", 2000)
PROTOCOL_WARNING = (
    Severity.WARNING,
    "Marine data connection unstable. Using emergency protocols...",
    4000,
)
SERVER_ERROR_WARNING = (
    Severity.WARNING,
    "Marine data server experiencing connectivity issues. Retrying automatically...",
    5000,
)
TRANSPORT_RECOVERED = (
    Severity.SUCCESS,
    "Marine data connection restored using alternative protocol",
    3000,
)
EXHAUSTED_DURATION_MS = 8000


class NotificationGate:
    """
    Per-resource notification deduplication.

    Tiers:
        protocol-error notice   consecutive_errors == protocol_notice_at (2)
        protocol-error warning  consecutive_errors >= protocol_warning_at (4)
        server-error warning    consecutive_errors >= server_error_notify_at (5)
        exhausted               once, with a class-aware message
    """

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        config: Optional[RecoveryConfig] = None,
    ):
        self.sink = sink or LoggingNotificationSink()
        self.config = config or get_recovery_config()
        self._states: Dict[str, NotificationState] = {}

    def state_for(self, resource_id: str) -> NotificationState:
        if resource_id not in self._states:
            self._states[resource_id] = NotificationState()
        return self._states[resource_id]

    def reset(self, resource_id: str):
        """Clear all tier flags (resource recovered or reinitialised)."""
        self.state_for(resource_id).clear()

    def _emit(self, state: ResourceState, severity: Severity, message: str, duration_ms: int):
        flags = self.state_for(state.resource_id)
        flags.last_notification = datetime.now(timezone.utc)
        try:
            self.sink.notify(severity, message, duration_ms)
        except Exception:
            logger.exception(f"Notification sink failed for {state.resource_id}")

    def on_failure(self, state: ResourceState) -> Optional[Severity]:
        """
        Surface at most one notice for this failure.

        Returns the severity emitted, or None.
        """
        category = state.error_category
        if category is None or not category.notifiable or state.is_exhausted:
            return None

        flags = self.state_for(state.resource_id)
        count = state.consecutive_errors

        if category is ErrorCategory.PROTOCOL_ERROR:
            if count >= self.config.protocol_warning_at and not flags.protocol_warning_notified:
                flags.protocol_warning_notified = True
                logger.warning(
                    f"{state.resource_name}: protocol failures persist, using emergency fallback"
                )
                self._emit(state, *PROTOCOL_WARNING)
                return PROTOCOL_WARNING[0]
            if count == self.config.protocol_notice_at and not flags.protocol_notice_notified:
                flags.protocol_notice_notified = True
                logger.warning(
                    f"{state.resource_name}: protocol errors persist, "
                    "activating enhanced connection strategy"
                )
                self._emit(state, *PROTOCOL_NOTICE)
                return PROTOCOL_NOTICE[0]
            return None

        if category is ErrorCategory.SERVER_ERROR:
            if count >= self.config.server_error_notify_at and not flags.server_error_notified:
                flags.server_error_notified = True
                logger.warning(f"{state.resource_name}: server connectivity issues detected")
                self._emit(state, *SERVER_ERROR_WARNING)
                return SERVER_ERROR_WARNING[0]

        return None

    def on_exhausted(self, state: ResourceState) -> bool:
        """Fire the terminal notification once. Returns True if it fired."""
        flags = self.state_for(state.resource_id)
        if flags.exhausted_notified:
            return False
        flags.exhausted_notified = True
        self._emit(state, Severity.ERROR, exhausted_message(state), EXHAUSTED_DURATION_MS)
        return True

    def on_transport_recovery(self, state: ResourceState):
        """Recovery that needed a substituted transport is worth telling the user."""
        self._emit(state, *TRANSPORT_RECOVERED)
