"""
Operator notification de-duplication.

A scanner held over the wrong product, or a scale dropping out, would flood
the operator with identical alerts. NotificationGate lets one alert per
semantic key through per cooldown window and never shows an alert while an
identical one is still on screen.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from logger import get_logger

logger = get_logger(__name__)

DEFAULT_COOLDOWN_MS = 3000
DEFAULT_TIMEOUT_MS = 3000
# An alert counts as active for its timeout plus this margin
ACTIVE_MARGIN_MS = 1000


class Severity(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    """
    Alert for the operator.

    Attributes:
        title: Short headline
        description: Details
        severity: Visual severity
        timeout_ms: How long the alert stays visible
        dedupe_key: Identity of the condition (e.g. "wrong-box-product_1_3");
                    defaults to title + description
    """
    title: str
    description: str = ""
    severity: Severity = Severity.INFO
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    dedupe_key: Optional[str] = None

    @property
    def key(self) -> str:
        return self.dedupe_key or f"{self.title}|{self.description}"


class NotificationGate:
    """
    Session-scoped filter in front of a notification sink.

    Args:
        sink: Callable receiving every Notification that passes the gate
        cooldown_ms: Minimum time between two alerts with the same key
        debug_mode: Skip the cooldown (active duplicates are still blocked)
        clock: Time source in seconds
    """

    def __init__(self, sink: Callable[[Notification], None], cooldown_ms: int = DEFAULT_COOLDOWN_MS,
                 debug_mode: bool = False, clock: Callable[[], float] = time.monotonic):
        self.sink = sink
        self.cooldown_ms = cooldown_ms
        self.debug_mode = debug_mode
        self._clock = clock
        self._last_shown: Dict[str, float] = {}
        self._active_until: Dict[str, float] = {}

    def notify(self, notification: Notification) -> bool:
        """
        Deliver the notification unless it is a duplicate.

        Returns:
            True if delivered to the sink, False if suppressed
        """
        now = self._clock()
        key = notification.key
        self._prune(now)

        active_until = self._active_until.get(key)
        if active_until is not None and now < active_until:
            logger.debug(f"Notification suppressed (still active): {key}")
            return False

        last = self._last_shown.get(key)
        if not self.debug_mode and last is not None and (now - last) * 1000 < self.cooldown_ms:
            logger.debug(f"Notification suppressed (cooldown): {key}")
            return False

        self._last_shown[key] = now
        self._active_until[key] = now + (notification.timeout_ms + ACTIVE_MARGIN_MS) / 1000
        self.sink(notification)
        return True

    def _prune(self, now: float):
        """Drop keys whose cooldown and active window have both passed."""
        cooldown = 0.0 if self.debug_mode else self.cooldown_ms / 1000
        expired = [key for key, shown in self._last_shown.items()
                   if now - shown >= cooldown and now >= self._active_until.get(key, 0.0)]
        for key in expired:
            del self._last_shown[key]
            self._active_until.pop(key, None)

    @property
    def tracked_keys(self) -> int:
        """Number of keys still able to suppress an alert."""
        return len(self._last_shown)

    def reset(self):
        """Forget every shown alert."""
        self._last_shown.clear()
        self._active_until.clear()
