"""
Custom exceptions for the Order Assembly Tool.

This module defines application-specific exceptions for the order assembly
engine. Using custom exceptions allows the engine to:
- Keep a failed event from mutating the checklist
- Carry context (unallocated items, order id) to the notification layer
- Give operators a short, readable message instead of a traceback

A weight mismatch is NOT an exception: it is the regular ``error`` status of a
checklist item and is recovered by weighing again.

Exception hierarchy:
    OrderAssemblyError (base)
    ├── ValidationError (malformed policy, catalog or order data)
    ├── CatalogError (product catalog unavailable or unreadable)
    ├── HardwareUnavailableError (scale did not deliver a usable reading)
    ├── AllocationOverflowError (selected boxes cannot hold the order)
    └── StaleOrderContextError (deferred callback belongs to a previous order)
"""

from typing import List, Optional, Tuple


class OrderAssemblyError(Exception):
    """
    Base exception for all Order Assembly Tool errors.

    All application-specific exceptions inherit from this class, so event
    handlers can catch every engine error with a single except clause:
        try:
            engine.handle_barcode(code)
        except OrderAssemblyError as e:
            logger.error(f"Assembly error: {e}")

    Note: This does NOT inherit from built-in errors like ValueError, IOError
    to keep application and system errors apart.
    """
    pass


class ValidationError(OrderAssemblyError):
    """
    Raised when input data fails validation.

    Typical sources:
    - Tolerance settings with negative or non-numeric values
    - Packing list rows without SKU or with a non-positive quantity
    - Catalog rows with an unreadable weight

    Callers usually log this and fall back to documented defaults.
    """
    pass


class CatalogError(OrderAssemblyError):
    """
    Raised when the product catalog cannot be loaded at all.

    The engine reacts by disabling automatic weighing: the checklist stays in
    its last consistent state and the operator is told why.
    """
    pass


class HardwareUnavailableError(OrderAssemblyError):
    """
    Raised when the scale cannot provide a usable reading.

    Common scenarios:
    - Scale is disconnected or powered off
    - Serial port is busy or returns garbage
    - Too many consecutive polling errors

    Attributes:
        consecutive_errors (int): Number of failed polls in a row when raised
    """

    def __init__(self, message: str, consecutive_errors: int = 0):
        super().__init__(message)
        self.consecutive_errors = consecutive_errors


class AllocationOverflowError(OrderAssemblyError):
    """
    Raised when the selected boxes cannot hold every portion of the order.

    Overflow is never fatal: the planner reports it and the engine blocks the
    "ready" action until the box configuration changes.

    Attributes:
        unallocated_portions (int): Portions that did not fit into any box
        unallocated_items (List[Tuple[str, int]]): (item name, quantity) pairs
    """

    def __init__(
        self,
        message: str,
        unallocated_portions: int = 0,
        unallocated_items: Optional[List[Tuple[str, int]]] = None,
    ):
        super().__init__(message)
        self.unallocated_portions = unallocated_portions
        self.unallocated_items = unallocated_items or []

    def get_display_message(self) -> str:
        """
        Get an operator-facing message listing what does not fit.

        Example output:
            "5 portions do not fit into the selected boxes:

            • Borscht × 3
            • Pilaf × 2

            Choose a larger box or add another box."
        """
        if not self.unallocated_items:
            return str(self)

        lines = "\n".join(f"• {name} × {qty}" for name, qty in self.unallocated_items)
        return (
            f"{self.unallocated_portions} portions do not fit into the selected boxes:\n\n"
            f"{lines}\n\n"
            f"Choose a larger box or add another box."
        )


class StaleOrderContextError(OrderAssemblyError):
    """
    Raised when a deferred callback fires for an order that is no longer loaded.

    Settle timers and polling callbacks capture the order generation they were
    scheduled for. If the operator switched orders in the meantime, applying
    the callback would corrupt the new order's checklist.

    Attributes:
        expected_generation (int): Generation the callback was scheduled for
        current_generation (int): Generation of the currently loaded order
    """

    def __init__(self, message: str, expected_generation: int = 0, current_generation: int = 0):
        super().__init__(message)
        self.expected_generation = expected_generation
        self.current_generation = current_generation
