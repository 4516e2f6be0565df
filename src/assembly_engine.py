"""
Order assembly engine - wires scans, scale readings and timers to the checklist.

The engine owns everything that belongs to the order currently being packed:
the checklist, the box plan, the active box, settle timers, the barcode
matcher's scan memory and the notification gate. All checklist changes go
through verification_reducer.reduce(); the engine only decides which event to
feed it and what to do afterwards (start polling, schedule a settle delay,
notify the operator).

Everything runs on the Qt event loop. Deferred callbacks capture the order
generation they were created for; after an order switch they are dropped.
"""

import time
from typing import Callable, List, Optional, Sequence, Tuple

from PySide6.QtCore import QObject, Signal

from barcode_matcher import (
    BOX_NOT_CONFIRMED,
    DUPLICATE_SCAN,
    ITEM_DONE,
    MATCHED,
    NOT_FOUND,
    WRONG_BOX,
    BarcodeMatcher,
    normalize_code,
)
from box_planner import BoxPackingPlanner, BoxPlan
from checklist_model import (
    BoxSettings,
    ChecklistItem,
    combine,
    find_item,
    is_order_complete,
    pending_items,
    sort_checklist_items,
)
from equipment import EquipmentInterface, ScaleReading
from exceptions import (
    AllocationOverflowError,
    CatalogError,
    HardwareUnavailableError,
    StaleOrderContextError,
    ValidationError,
)
from notification_gate import Notification, NotificationGate, Severity
from order_loader import OrderData
from product_catalog import ProductCatalog
from scoped_timers import TimerScope
from settings_manager import AssemblySettings, NotificationSettings, ScaleSettings, SettingsManager
from tolerance_calculator import WeightTolerancePolicy, validate_policy
from verification_reducer import (
    ConfirmBox,
    ForceComplete,
    ReduceResult,
    SelectItem,
    SettleElapsed,
    WeighFailed,
    WeighSucceeded,
    evaluate_weight,
    pending_violations,
    reduce as reduce_checklist,
)
from weight_coordinator import WeightAcquisitionCoordinator
from logger import clear_logging_context, get_logger, set_box_context, set_order_context

logger = get_logger(__name__)

SUCCESS_TOAST_MS = 3000
ERROR_TOAST_MS = 5000


def _same_weight(a: float, b: float) -> bool:
    return abs(a - b) < 1e-9


class AssemblyEngine(QObject):
    """
    Verification engine for one packing station.

    Signals:
        checklist_changed(list): New checklist after any transition
        item_status_changed(str, str): item_id, new status value
        active_box_changed(int): Operator switched the active box
        order_completed(str): Every item of the order is verified
        ready_state_changed(bool): Availability of the "ready" action
        weighing_disabled(str): Automatic weighing was turned off, with reason
        order_ready(str): Operator confirmed the order as packed

    Attributes:
        order: Order being packed, None before the first load
        items: Current checklist
        plan: Box plan of the current order
        active_box_index: Box currently on the scale (changed only by the operator)
        generation: Incremented on every order switch and view exit
    """

    checklist_changed = Signal(list)
    item_status_changed = Signal(str, str)
    active_box_changed = Signal(int)
    order_completed = Signal(str)
    ready_state_changed = Signal(bool)
    weighing_disabled = Signal(str)
    order_ready = Signal(str)

    def __init__(self, equipment: EquipmentInterface,
                 catalog: Optional[ProductCatalog] = None,
                 tolerance_policy: Optional[WeightTolerancePolicy] = None,
                 assembly_settings: Optional[AssemblySettings] = None,
                 scale_settings: Optional[ScaleSettings] = None,
                 notification_settings: Optional[NotificationSettings] = None,
                 notification_sink: Optional[Callable[[Notification], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 parent: Optional[QObject] = None):
        super().__init__(parent)

        self.equipment = equipment
        self.catalog = catalog
        self.tolerance_policy = validate_policy(tolerance_policy)
        self.settings = assembly_settings or AssemblySettings()
        notification_settings = notification_settings or NotificationSettings()

        self.planner = BoxPackingPlanner(self.settings.packing_mode)
        self.matcher = BarcodeMatcher(
            cooldown_ms=self.settings.scan_cooldown_ms,
            debug_mode=self.settings.debug_mode,
            clock=clock,
        )
        self.gate = NotificationGate(
            sink=notification_sink or self._log_notification,
            cooldown_ms=notification_settings.cooldown_ms,
            debug_mode=self.settings.debug_mode,
            clock=clock,
        )

        self.coordinator = WeightAcquisitionCoordinator(equipment, scale_settings, parent=self)
        self.coordinator.reading_received.connect(self.handle_reading)
        self.coordinator.hardware_unavailable.connect(self._on_hardware_unavailable)
        equipment.barcode_scanned.connect(self.handle_barcode)

        self._timers = TimerScope(name="settle", parent=self)

        self.generation = 0
        self.order: Optional[OrderData] = None
        self.items: List[ChecklistItem] = []
        self.plan: Optional[BoxPlan] = None
        self.active_box_index = 0
        self.weighing_enabled = True
        self.weighing_disabled_reason: Optional[str] = None
        self._weighing_paused = False
        self._completed = False
        self._view_active = False
        # Scale weight at the last successful verification
        self._settled_weight: Optional[float] = None
        # (item_id, weight) of the last mismatch
        self._last_mismatch: Optional[Tuple[str, float]] = None

    @classmethod
    def from_settings(cls, equipment: EquipmentInterface, settings: SettingsManager,
                      catalog: Optional[ProductCatalog] = None,
                      notification_sink: Optional[Callable[[Notification], None]] = None) -> 'AssemblyEngine':
        """Build an engine configured from config.ini."""
        return cls(
            equipment,
            catalog=catalog,
            tolerance_policy=settings.load_tolerance_policy(),
            assembly_settings=settings.load_assembly_settings(),
            scale_settings=settings.load_scale_settings(),
            notification_settings=settings.load_notification_settings(),
            notification_sink=notification_sink,
        )

    # ------------------------------------------------------------------
    # Order lifecycle
    # ------------------------------------------------------------------

    def _reset_order_state(self):
        """Cancel every timer and forget everything derived from the previous order."""
        self.generation += 1
        self._timers.cancel_all()
        self.coordinator.release()
        self.coordinator.reset_baseline()
        self.matcher.reset()
        self.gate.reset()
        self.items = []
        self.plan = None
        self.order = None
        self.active_box_index = 0
        self._weighing_paused = False
        self._completed = False
        self._settled_weight = None
        self._last_mismatch = None
        self.weighing_enabled = True
        self.weighing_disabled_reason = None
        clear_logging_context()

    def load_order(self, order: OrderData, boxes: Sequence[BoxSettings] = ()) -> List[ChecklistItem]:
        """
        Load an order and build its checklist.

        Steps:
        1. Drop all state of the previous order (timers, baseline, scan memory)
        2. Expand order lines through the catalog
        3. Plan the portions into the selected boxes
        4. Build the checklist; pre-completed orders skip verification

        Args:
            order: Order to pack
            boxes: Boxes selected for the order, in packing order

        Returns:
            The new checklist
        """
        previous = self.order.order_id if self.order else None
        self._reset_order_state()

        self.order = order
        self._view_active = True
        set_order_context(order.order_id)
        set_box_context(0)
        if previous and previous != order.order_id:
            logger.info(f"Switched order {previous} -> {order.order_id}")

        products = self._expand(order)

        self.plan = self.planner.plan(products, list(boxes))
        try:
            self.plan.raise_for_overflow()
        except AllocationOverflowError as e:
            logger.warning(f"Order {order.order_id} does not fit into its boxes: {e}")
            self._notify("Boxes too small", e.get_display_message(), Severity.WARNING,
                         ERROR_TOAST_MS, f"overflow-{order.order_id}")

        self.items = sort_checklist_items(combine(self.plan.boxes, products, order.is_ready))

        if order.is_ready:
            logger.info(f"Order {order.order_id} already completed upstream, verification skipped")
            self._weighing_paused = True
            self._completed = True
        elif self.weighing_enabled:
            self.coordinator.start_reserve(auto=True)

        logger.info(f"Order {order.order_id} loaded: {len(self.items)} checklist items, "
                    f"{len(self.plan.boxes)} boxes")

        self.checklist_changed.emit(list(self.items))
        self.ready_state_changed.emit(self.is_ready_available())
        return self.items

    def switch_order(self, order: OrderData, boxes: Sequence[BoxSettings] = ()) -> List[ChecklistItem]:
        """Switch to another order; nothing of the current one survives."""
        return self.load_order(order, boxes)

    def _expand(self, order: OrderData) -> List[ChecklistItem]:
        catalog = self.catalog if self.catalog is not None else ProductCatalog({})
        try:
            return catalog.expand_order_items(order.lines)
        except CatalogError as e:
            logger.error(f"Catalog unavailable for order {order.order_id}: {e}", exc_info=True)
            self.disable_weighing(f"Product catalog unavailable: {e}")
            return ProductCatalog({}).expand_order_items(order.lines)

    def leave_view(self):
        """
        Operator left the assembly view: stop polling, drop pending callbacks
        and ignore scans and readings until the next load_order().
        """
        self._view_active = False
        self.generation += 1
        self._timers.cancel_all()
        self.coordinator.release()
        logger.info("Assembly view left, polling stopped")

    def disable_weighing(self, reason: str):
        """Turn off automatic weighing; the checklist keeps its current state."""
        self.weighing_enabled = False
        self.weighing_disabled_reason = reason
        self.coordinator.release()
        logger.error(f"Automatic weighing disabled: {reason}")
        self._notify("Weighing disabled", reason, Severity.ERROR, ERROR_TOAST_MS, "weighing-disabled")
        self.weighing_disabled.emit(reason)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    @property
    def box_count(self) -> int:
        return len(self.plan.boxes) if self.plan else 0

    def set_active_box(self, box_index: int):
        """
        Make another box the active one. Only the operator does this; scans
        never change the active box.

        Raises:
            ValidationError: No such box
        """
        if box_index < 0 or box_index >= max(self.box_count, 1):
            raise ValidationError(f"Box {box_index + 1} does not exist (order has {self.box_count} boxes)")
        if box_index == self.active_box_index:
            return
        self.active_box_index = box_index
        set_box_context(box_index)
        logger.info(f"Active box: {box_index + 1}")
        self.active_box_changed.emit(box_index)

    def select_item(self, item_id: str) -> bool:
        """
        Operator clicked an item.

        Returns:
            True if the item is now pending
        """
        if not self._view_active:
            logger.debug(f"Selection of {item_id} ignored, assembly view not active")
            return False
        result = self._dispatch(SelectItem(item_id, self.active_box_index))
        if result.rejected:
            item = find_item(self.items, item_id)
            self._notify_rejection(result.rejected, item, item_id)
            return False
        return True

    def handle_barcode(self, code: str) -> str:
        """
        Process one scanner read.

        Returns:
            Match status (see barcode_matcher)
        """
        if self.order is None or not self._view_active:
            logger.debug(f"Scan ignored, no order in the assembly view: {code}")
            return NOT_FOUND

        item, status = self.matcher.match(code, self.items, self.active_box_index)

        if status == MATCHED:
            result = self._dispatch(SelectItem(item.id, self.active_box_index))
            if result.rejected:
                self._notify_rejection(result.rejected, item, item.id)
            return status

        if status == DUPLICATE_SCAN:
            return status

        if status == NOT_FOUND:
            self._notify("Item not in order", f"Scanned code {code} is not part of this order",
                         Severity.WARNING, ERROR_TOAST_MS, f"item-not-found-{normalize_code(code)}")
        else:
            self._notify_rejection(status, item, item.id)
        return status

    def confirm_box(self, box_index: Optional[int] = None) -> bool:
        """Confirm a box without weighing it (operator override)."""
        if not self._view_active:
            return False
        index = self.active_box_index if box_index is None else box_index
        result = self._dispatch(ConfirmBox(index, self.active_box_index))
        if result.rejected:
            logger.info(f"Box {index + 1} cannot be confirmed: {result.rejected}")
            return False
        return True

    def reset_scan_state(self):
        """Forget the last scanned code so the same code can be scanned again at once."""
        self.matcher.reset()
        logger.debug("Scan state reset")

    def is_ready_available(self) -> bool:
        """The "ready" action: every item verified and no unallocated portions."""
        if self.order is None or self.plan is None or self.plan.has_overflow:
            return False
        return is_order_complete(self.items)

    def mark_ready(self):
        """
        Operator confirms the order as packed.

        Raises:
            AllocationOverflowError: Some portions have no box
            ValidationError: Items are still unverified
        """
        if self.order is None:
            raise ValidationError("No order loaded")
        if self.plan is not None:
            self.plan.raise_for_overflow()
        if not is_order_complete(self.items):
            raise ValidationError(f"Order {self.order.order_id} still has unverified items")

        logger.info(f"Order {self.order.order_id} marked ready")
        self.coordinator.release()
        self.order_ready.emit(self.order.order_id)

    def force_complete(self):
        """Mark every product done and every box confirmed (order finished elsewhere)."""
        self._dispatch(ForceComplete())

    # ------------------------------------------------------------------
    # Weighing
    # ------------------------------------------------------------------

    def handle_reading(self, reading: ScaleReading):
        """
        Evaluate a scale reading against the item under verification.

        Readings are skipped when weighing is off or paused, after the operator
        left the view, when the scale is not stable and when the weight is zero.
        A mismatch is not reported when the scale still shows the weight of the
        last verification (nothing placed yet) or the weight that already
        failed for the same item.
        """
        if self.order is None or not self._view_active:
            return
        if not self.weighing_enabled or self._weighing_paused:
            return
        if not reading.is_stable or reading.weight <= 0:
            return

        evaluation = evaluate_weight(self.items, self.active_box_index, reading.weight, self.tolerance_policy)
        if evaluation is None:
            return

        item = evaluation.item
        if evaluation.within_tolerance:
            self._settled_weight = reading.weight
            self._last_mismatch = None
            logger.info(f"Item {item.id} verified: {reading.weight:.3f} kg "
                        f"(expected {evaluation.expected:.3f} ± {evaluation.tolerance:.3f})")
            self._dispatch(WeighSucceeded(item.id))
            self._notify("Weight OK", f"{item.name}: {reading.weight:.3f} kg (expected {evaluation.expected:.3f} kg)",
                         Severity.SUCCESS, SUCCESS_TOAST_MS, f"weigh-success-{item.id}")
            self._schedule_settle(item.id, self.settings.success_settle_ms)
            self.coordinator.on_verification_success(bool(pending_items(self.items)))
        else:
            if self._is_unchanged(item.id, reading.weight):
                logger.debug(f"Weight {reading.weight:.3f} kg unchanged, {item.id} not re-evaluated")
                return
            self._last_mismatch = (item.id, reading.weight)
            logger.info(f"Item {item.id} weight mismatch: {reading.weight:.3f} kg "
                        f"(expected {evaluation.expected:.3f} ± {evaluation.tolerance:.3f})")
            self._dispatch(WeighFailed(item.id))
            self._notify("Weight mismatch",
                         f"{item.name}: {reading.weight:.3f} kg (expected {evaluation.expected:.3f} "
                         f"± {evaluation.tolerance * 1000:.0f} g)",
                         Severity.ERROR, ERROR_TOAST_MS, f"weigh-error-{item.id}")
            self._schedule_settle(item.id, self.settings.error_settle_ms)

    def _is_unchanged(self, item_id: str, weight: float) -> bool:
        if self._settled_weight is not None and _same_weight(weight, self._settled_weight):
            return True
        return (self._last_mismatch is not None and self._last_mismatch[0] == item_id
                and _same_weight(weight, self._last_mismatch[1]))

    def _on_hardware_unavailable(self, error: HardwareUnavailableError):
        logger.error(f"Scale unavailable: {error}")
        self._notify("Scale not responding", f"{error} Check the scale connection.",
                     Severity.ERROR, ERROR_TOAST_MS, "scale-unavailable")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_generation(self, generation: int):
        if generation != self.generation:
            raise StaleOrderContextError(
                f"Callback scheduled for generation {generation}, current is {self.generation}",
                expected_generation=generation,
                current_generation=self.generation,
            )

    def _schedule_settle(self, item_id: str, delay_ms: int):
        generation = self.generation

        def settle():
            try:
                self._check_generation(generation)
            except StaleOrderContextError as e:
                logger.warning(f"Stale settle callback for {item_id} suppressed: {e}")
                return
            self._dispatch(SettleElapsed(item_id, self.active_box_index))

        self._timers.call_later(delay_ms, settle)

    def _dispatch(self, event) -> ReduceResult:
        """Run one event through the reducer and react to the result."""
        result = reduce_checklist(self.items, event)

        if result.rejected:
            logger.debug(f"{type(event).__name__} rejected: {result.rejected}")
            return result
        if not result.changed:
            return result

        self.items = result.items

        violations = pending_violations(self.items)
        if violations:
            logger.error(f"More than one pending item in boxes {violations}")

        for transition in result.transitions:
            logger.debug(f"{transition.item_id}: {transition.from_status.value} -> {transition.to_status.value}")
            self.item_status_changed.emit(transition.item_id, transition.to_status.value)

        if result.entered_pending and self.weighing_enabled and not self._weighing_paused:
            self.coordinator.activate()
            reading = self.coordinator.ensure_fresh_reading()
            if reading is not None:
                self.handle_reading(reading)

        self.checklist_changed.emit(list(self.items))
        self._check_completion()
        return result

    def _check_completion(self):
        complete = is_order_complete(self.items)
        if complete and not self._completed:
            self._completed = True
            self._weighing_paused = True
            self.coordinator.release()
            logger.info(f"Order {self.order.order_id if self.order else '?'} complete")
            if self.order is not None:
                self.order_completed.emit(self.order.order_id)
            self.ready_state_changed.emit(self.is_ready_available())

    def _notify(self, title: str, description: str, severity: Severity, timeout_ms: int, dedupe_key: str) -> bool:
        return self.gate.notify(Notification(title, description, severity, timeout_ms, dedupe_key))

    def _notify_rejection(self, reason: str, item: Optional[ChecklistItem], item_id: str):
        name = item.name if item else item_id
        if reason == WRONG_BOX:
            box = item.box_index + 1 if item else '?'
            self._notify("Wrong box", f"{name} belongs to box {box}, active box is {self.active_box_index + 1}",
                         Severity.WARNING, ERROR_TOAST_MS, f"wrong-box-{item_id}")
        elif reason == BOX_NOT_CONFIRMED:
            self._notify("Box not confirmed", f"Weigh or confirm the box before adding {name}",
                         Severity.WARNING, ERROR_TOAST_MS, f"scan-forbidden-{item_id}")
        elif reason == ITEM_DONE:
            self._notify("Already packed", f"{name} is already verified", Severity.INFO,
                         SUCCESS_TOAST_MS, f"item-done-{item_id}")
        else:
            logger.debug(f"Selection of {item_id} rejected: {reason}")

    @staticmethod
    def _log_notification(notification: Notification):
        logger.info(f"[{notification.severity.value}] {notification.title}: {notification.description}")


