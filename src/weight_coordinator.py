"""
Weight Acquisition Coordinator - decides how often the scale is read.

Polling modes:
    IDLE     no polling (assembly view closed, hardware failed)
    RESERVE  slow background polling while nothing is being verified
    ACTIVE   fast polling while an item is pending, for a bounded time
    AUTO     slow polling that promotes itself to ACTIVE as soon as the
             weight on the scale changes noticeably

The coordinator is the only writer of the live reading. Everybody else reads
`last_reading` or listens to `reading_received`.
"""

import time
from enum import Enum
from typing import Callable, Optional

from PySide6.QtCore import QObject, Signal

from equipment import EquipmentInterface, ScaleReading
from exceptions import HardwareUnavailableError
from scoped_timers import PollingTimer, TimerScope
from settings_manager import ScaleSettings
from logger import get_logger

logger = get_logger(__name__)


class PollingMode(Enum):
    IDLE = "idle"
    RESERVE = "reserve"
    ACTIVE = "active"
    AUTO = "auto"


class WeightAcquisitionCoordinator(QObject):
    """
    Owns the polling cadence of the scale.

    Signals:
        reading_received(ScaleReading): A new (non-identical) reading arrived
        mode_changed(str): Polling mode value after a change
        hardware_unavailable(HardwareUnavailableError): Error budget exhausted,
            polling stopped

    Attributes:
        mode: Current PollingMode
        last_reading: Most recent reading, None after reset
        baseline: Weight (kg) used to detect changes in RESERVE/AUTO mode
        activated_at: Epoch seconds of the last switch to ACTIVE
    """

    reading_received = Signal(object)
    mode_changed = Signal(str)
    hardware_unavailable = Signal(object)

    def __init__(self, equipment: EquipmentInterface, settings: Optional[ScaleSettings] = None,
                 clock: Callable[[], float] = time.time, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.equipment = equipment
        self.settings = settings or ScaleSettings()
        self._clock = clock

        self.mode = PollingMode.IDLE
        self.last_reading: Optional[ScaleReading] = None
        self.baseline = 0.0
        self.activated_at: Optional[float] = None
        self.consecutive_errors = 0

        # Mode to return to when active polling ends
        self._fallback_mode = PollingMode.RESERVE

        self._poller = PollingTimer(self.poll_once, name="scale", parent=self)
        self._timers = TimerScope(name="weight", parent=self)

    # ------------------------------------------------------------------
    # Mode control
    # ------------------------------------------------------------------

    def _set_mode(self, mode: PollingMode):
        if mode != self.mode:
            logger.info(f"Scale polling: {self.mode.value} -> {mode.value}")
            self.mode = mode
            self.mode_changed.emit(mode.value)

    def start_reserve(self, auto: bool = False):
        """
        Poll slowly in the background.

        Args:
            auto: Use AUTO mode (same cadence, also the mode active polling returns to)
        """
        self._timers.cancel_all()
        self._fallback_mode = PollingMode.AUTO if auto else PollingMode.RESERVE
        if self.last_reading is not None:
            self.baseline = self.last_reading.weight
        self.equipment.start_reserve_polling()
        self._poller.start(self.settings.reserve_polling_interval_ms)
        self._set_mode(self._fallback_mode)

    def activate(self):
        """
        Switch to fast polling, called whenever an item becomes pending.

        Active polling ends by itself after ActivePollingDurationMs; calling
        activate() again restarts that window.
        """
        self.activated_at = self._clock()
        self.consecutive_errors = 0
        self.equipment.start_active_polling()
        self._poller.start(self.settings.active_polling_interval_ms)
        self._timers.cancel_all()
        self._timers.call_later(self.settings.active_polling_duration_ms, self._on_active_timeout)
        self._set_mode(PollingMode.ACTIVE)

    def _on_active_timeout(self):
        if self.mode == PollingMode.ACTIVE:
            logger.debug("Active polling window elapsed")
            self._stop_active()

    def _stop_active(self):
        self.equipment.stop_active_polling()
        self.start_reserve(auto=self._fallback_mode == PollingMode.AUTO)

    def on_verification_success(self, has_pending: bool):
        """
        A weighing succeeded. Active polling stops unless another item is
        already pending.
        """
        if has_pending:
            logger.debug("Verification succeeded, next item already pending: staying active")
            return
        if self.mode == PollingMode.ACTIVE:
            self._stop_active()

    def release(self):
        """Stop all polling and timers (leaving the assembly view)."""
        self._poller.stop()
        self._timers.cancel_all()
        if self.mode != PollingMode.IDLE:
            self.equipment.stop_active_polling()
        self._set_mode(PollingMode.IDLE)

    def reset_baseline(self):
        """Forget every reading of the previous order."""
        self.baseline = 0.0
        self.last_reading = None
        self.consecutive_errors = 0

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def poll_once(self) -> Optional[ScaleReading]:
        """
        Read the scale once.

        Failed reads count against MaxPollingErrors. When the budget is
        exhausted polling stops and hardware_unavailable is emitted.

        Returns:
            The reading, or None if the scale did not answer
        """
        try:
            reading = self.equipment.get_current_weight()
        except HardwareUnavailableError as e:
            self.consecutive_errors += 1
            logger.warning(f"Scale read failed ({self.consecutive_errors}/{self.settings.max_polling_errors}): {e}")

            if self.consecutive_errors >= self.settings.max_polling_errors:
                error = HardwareUnavailableError(
                    f"Scale unavailable after {self.consecutive_errors} failed reads",
                    consecutive_errors=self.consecutive_errors,
                )
                logger.error(str(error))
                self.release()
                self.hardware_unavailable.emit(error)
            return None

        self.consecutive_errors = 0
        self.push_reading(reading)
        return reading

    def push_reading(self, reading: ScaleReading):
        """
        Accept a reading. Identical repeats (same weight, stability and
        timestamp) are ignored.
        """
        if reading == self.last_reading:
            return

        self.last_reading = reading

        if self.mode in (PollingMode.RESERVE, PollingMode.AUTO):
            if abs(reading.weight - self.baseline) > self.settings.weight_threshold_for_active:
                logger.info(f"Weight changed {self.baseline:.3f} -> {reading.weight:.3f} kg, activating")
                self.baseline = reading.weight
                self.activate()

        self.reading_received.emit(reading)

    def reading_age_ms(self) -> Optional[float]:
        if self.last_reading is None:
            return None
        return (self._clock() - self.last_reading.timestamp) * 1000

    def ensure_fresh_reading(self) -> Optional[ScaleReading]:
        """
        Return the last reading if it is fresh, otherwise read the scale.

        Returns:
            A reading not older than FreshnessThresholdMs, or None when the
            scale did not answer
        """
        age = self.reading_age_ms()
        if age is not None and age <= self.settings.freshness_threshold_ms:
            return self.last_reading

        logger.debug(f"Last reading stale ({age} ms), requesting a new one")
        return self.poll_once()
