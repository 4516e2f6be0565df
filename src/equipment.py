"""
Hardware layer used by the assembly engine: scale and barcode scanner.

EquipmentInterface is the contract the engine depends on. Real drivers (serial
scales, HID scanners) live outside this package; SimulatedEquipment implements
the contract in memory for tests and for the `simulate` command.
"""

import time
from dataclasses import dataclass
from typing import Optional

from PySide6.QtCore import QObject, Signal

from exceptions import HardwareUnavailableError
from logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScaleReading:
    """
    One scale measurement.

    Attributes:
        weight: Weight in kilograms
        is_stable: Scale reported a settled value
        timestamp: Epoch seconds when the value was read
    """
    weight: float
    is_stable: bool
    timestamp: float


class EquipmentInterface(QObject):
    """
    Contract for the scale/scanner hardware.

    Signals:
        barcode_scanned(str): Raw code read by the scanner
    """

    barcode_scanned = Signal(str)

    def get_current_weight(self) -> ScaleReading:
        """
        Read the scale once.

        Raises:
            HardwareUnavailableError: Scale did not answer
        """
        raise NotImplementedError

    def start_active_polling(self):
        """Switch the scale connection to fast reporting."""
        raise NotImplementedError

    def start_reserve_polling(self):
        """Switch the scale connection to slow background reporting."""
        raise NotImplementedError

    def stop_active_polling(self):
        raise NotImplementedError


class SimulatedEquipment(EquipmentInterface):
    """
    In-memory scale and scanner.

    The scale returns whatever weight was last put on it. Failures can be
    injected with fail_next() to exercise the polling error budget.

    Attributes:
        mode: Last requested cadence ("idle", "reserve" or "active")
        read_count: Number of get_current_weight() calls
    """

    def __init__(self, weight: float = 0.0, is_stable: bool = True, parent: Optional[QObject] = None):
        super().__init__(parent)
        self._weight = weight
        self._is_stable = is_stable
        self._failures_left = 0
        self.mode = "idle"
        self.read_count = 0

    def set_weight(self, weight: float, is_stable: bool = True):
        """Put a weight on the simulated scale."""
        self._weight = weight
        self._is_stable = is_stable

    def fail_next(self, count: int = 1):
        """Make the next `count` reads raise HardwareUnavailableError."""
        self._failures_left = count

    def scan(self, code: str):
        """Simulate a scanner read."""
        logger.debug(f"Simulated scan: {code}")
        self.barcode_scanned.emit(code)

    def get_current_weight(self) -> ScaleReading:
        self.read_count += 1
        if self._failures_left > 0:
            self._failures_left -= 1
            raise HardwareUnavailableError("Simulated scale did not respond")
        return ScaleReading(weight=self._weight, is_stable=self._is_stable, timestamp=time.time())

    def start_active_polling(self):
        self.mode = "active"

    def start_reserve_polling(self):
        self.mode = "reserve"

    def stop_active_polling(self):
        self.mode = "idle"
