"""
Owned Qt timers with guaranteed cancellation.

Every deferred action of the assembly engine (settle delays, polling ticks,
active-mode timeouts) runs on a QTimer owned by a TimerScope or PollingTimer.
Cancelling the owner cancels everything it started, which is what makes an
order switch safe: no timer created for the previous order survives it.

Both classes need a running Qt event loop (QCoreApplication or QApplication).
"""

from typing import Callable, List, Optional

from PySide6.QtCore import QObject, QTimer

from logger import get_logger

logger = get_logger(__name__)


class TimerScope(QObject):
    """
    Group of single-shot timers that can be cancelled together.

    Usage:
        scope = TimerScope()
        scope.call_later(1500, lambda: ...)
        scope.cancel_all()   # nothing scheduled above will fire
    """

    def __init__(self, name: str = "timers", parent: Optional[QObject] = None):
        super().__init__(parent)
        self.name = name
        self._timers: List[QTimer] = []

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> QTimer:
        """
        Run callback once after delay_ms.

        Returns:
            The owned QTimer (already started)
        """
        timer = QTimer(self)
        timer.setSingleShot(True)

        def fire():
            self._discard(timer)
            callback()

        timer.timeout.connect(fire)
        self._timers.append(timer)
        timer.start(max(int(delay_ms), 0))
        return timer

    def cancel(self, timer: QTimer):
        if timer in self._timers:
            timer.stop()
            self._discard(timer)

    def cancel_all(self):
        """Stop every timer of this scope that has not fired yet."""
        if self._timers:
            logger.debug(f"Cancelling {len(self._timers)} pending timers in scope '{self.name}'")
        for timer in list(self._timers):
            timer.stop()
            self._discard(timer)

    @property
    def active_count(self) -> int:
        return len(self._timers)

    def _discard(self, timer: QTimer):
        if timer in self._timers:
            self._timers.remove(timer)
            timer.deleteLater()


class PollingTimer(QObject):
    """
    Repeating timer with an explicit start/stop/on_tick discipline.

    Args:
        on_tick: Called on every tick
        name: Used in log messages
    """

    def __init__(self, on_tick: Callable[[], None], name: str = "polling",
                 parent: Optional[QObject] = None):
        super().__init__(parent)
        self.name = name
        self.on_tick = on_tick
        self._timer = QTimer(self)
        self._timer.timeout.connect(self._tick)

    def start(self, interval_ms: int):
        """Start ticking, or change the interval of a running timer."""
        self._timer.start(max(int(interval_ms), 1))
        logger.debug(f"Polling timer '{self.name}' started: every {interval_ms} ms")

    def stop(self):
        if self._timer.isActive():
            self._timer.stop()
            logger.debug(f"Polling timer '{self.name}' stopped")

    @property
    def is_active(self) -> bool:
        return self._timer.isActive()

    @property
    def interval_ms(self) -> int:
        return self._timer.interval()

    def _tick(self):
        self.on_tick()
