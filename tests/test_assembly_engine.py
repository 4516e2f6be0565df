"""
Integration tests for AssemblyEngine.

The engine runs against SimulatedEquipment on the Qt event loop. Settle delays
are shortened so the scenarios complete in milliseconds; scan and notification
cooldowns use the manually advanced clock from conftest.
"""

import pytest

from assembly_engine import AssemblyEngine
from barcode_matcher import BOX_NOT_CONFIRMED, DUPLICATE_SCAN, MATCHED, NOT_FOUND, WRONG_BOX
from checklist_model import ItemStatus, find_item
from equipment import SimulatedEquipment
from exceptions import AllocationOverflowError, StaleOrderContextError, ValidationError
from order_loader import OrderData, OrderLine
from product_catalog import Product, ProductCatalog
from settings_manager import AssemblySettings, ScaleSettings
from tolerance_calculator import ToleranceType, WeightTolerancePolicy
from weight_coordinator import PollingMode

BOX = "box_1"
A = "product_0_1"
B = "product_0_2"


@pytest.fixture
def catalog():
    return ProductCatalog({
        'SKU-A': Product('SKU-A', 'Item A', weight_grams=330),
        'SKU-B': Product('SKU-B', 'Item B', weight_grams=420),
    })


@pytest.fixture
def equipment(qtbot):
    return SimulatedEquipment()


@pytest.fixture
def notes():
    return []


@pytest.fixture
def engine(equipment, catalog, notes, clock):
    engine = AssemblyEngine(
        equipment,
        catalog=catalog,
        tolerance_policy=WeightTolerancePolicy(tolerance_type=ToleranceType.ABSOLUTE, absolute_grams=20.0),
        assembly_settings=AssemblySettings(success_settle_ms=50, error_settle_ms=30),
        scale_settings=ScaleSettings(max_polling_errors=2),
        notification_sink=notes.append,
        clock=clock,
    )
    yield engine
    engine.leave_view()


def make_order(order_id="SO-1", status="", *lines):
    lines = lines or (("SKU-A", "Item A", 2), ("SKU-B", "Item B", 1))
    return OrderData(
        order_id=order_id,
        lines=[OrderLine(sku, name, qty) for sku, name, qty in lines],
        status=status,
        is_ready=status == "ready",
    )


def weigh(engine, equipment, weight):
    """Put a stable weight on the scale and read it once."""
    equipment.set_weight(weight)
    engine.coordinator.poll_once()


def status(engine, item_id):
    return find_item(engine.items, item_id).status


def titles(notes):
    return [n.title for n in notes]


# ============================================================================
# Loading
# ============================================================================

class TestLoadOrder:

    def test_checklist_built(self, engine, box_m):
        items = engine.load_order(make_order(), [box_m])

        assert [i.id for i in items] == [BOX, A, B]
        assert status(engine, BOX) == ItemStatus.AWAITING_CONFIRMATION
        assert find_item(items, A).expected_weight == pytest.approx(0.66)
        assert find_item(items, B).expected_weight == pytest.approx(0.42)
        assert engine.coordinator.mode == PollingMode.AUTO
        assert not engine.is_ready_available()

    def test_checklist_changed_emitted(self, engine, box_m, qtbot):
        with qtbot.waitSignal(engine.checklist_changed, timeout=1000) as blocker:
            engine.load_order(make_order(), [box_m])
        assert len(blocker.args[0]) == 3

    def test_pre_completed_order(self, engine, equipment, box_m):
        engine.load_order(make_order("SO-2", "ready"), [box_m])

        assert status(engine, BOX) == ItemStatus.CONFIRMED
        assert status(engine, A) == ItemStatus.DONE
        assert status(engine, B) == ItemStatus.DONE
        assert engine.is_ready_available()
        assert engine.coordinator.mode == PollingMode.IDLE

        weigh(engine, equipment, 0.5)
        assert status(engine, A) == ItemStatus.DONE

    def test_unloaded_catalog_disables_weighing(self, equipment, notes, box_m, qtbot):
        engine = AssemblyEngine(equipment, catalog=ProductCatalog(), notification_sink=notes.append)
        with qtbot.waitSignal(engine.weighing_disabled, timeout=1000):
            engine.load_order(make_order(), [box_m])

        assert not engine.weighing_enabled
        assert "Weighing disabled" in titles(notes)
        assert find_item(engine.items, A).expected_weight == pytest.approx(0.66)
        assert engine.coordinator.mode == PollingMode.IDLE
        engine.leave_view()


# ============================================================================
# Weighing flow
# ============================================================================

class TestWeighingFlow:

    def test_happy_path(self, engine, equipment, box_m, qtbot, notes):
        engine.load_order(make_order(), [box_m])

        weigh(engine, equipment, 0.20)
        assert status(engine, BOX) == ItemStatus.SUCCESS
        qtbot.waitUntil(lambda: status(engine, A) == ItemStatus.PENDING, timeout=1000)
        assert status(engine, BOX) == ItemStatus.CONFIRMED

        weigh(engine, equipment, 0.86)
        assert status(engine, A) == ItemStatus.SUCCESS
        qtbot.waitUntil(lambda: status(engine, B) == ItemStatus.PENDING, timeout=1000)
        assert status(engine, A) == ItemStatus.DONE

        with qtbot.waitSignal(engine.order_completed, timeout=1000) as blocker:
            weigh(engine, equipment, 1.28)
        assert blocker.args == ["SO-1"]

        qtbot.waitUntil(lambda: status(engine, BOX) == ItemStatus.DONE, timeout=1000)
        assert status(engine, B) == ItemStatus.DONE
        assert engine.is_ready_available()
        assert engine.coordinator.mode == PollingMode.IDLE
        assert titles(notes).count("Weight OK") == 3

    def test_weight_mismatch_recovers(self, engine, equipment, box_m, qtbot, notes):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        assert status(engine, A) == ItemStatus.PENDING

        weigh(engine, equipment, 0.95)
        assert status(engine, A) == ItemStatus.ERROR
        assert "Weight mismatch" in titles(notes)

        qtbot.waitUntil(lambda: status(engine, A) == ItemStatus.PENDING, timeout=1000)

        weigh(engine, equipment, 0.86)
        assert status(engine, A) == ItemStatus.SUCCESS

    def test_unstable_and_zero_readings_ignored(self, engine, equipment, box_m):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()

        equipment.set_weight(0.86, is_stable=False)
        engine.coordinator.poll_once()
        assert status(engine, A) == ItemStatus.PENDING

        weigh(engine, equipment, 0.0)
        assert status(engine, A) == ItemStatus.PENDING

    def test_same_wrong_weight_not_reported_again(self, engine, equipment, box_m, notes, qtbot):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()

        weigh(engine, equipment, 0.95)
        qtbot.waitUntil(lambda: status(engine, A) == ItemStatus.PENDING, timeout=1000)
        weigh(engine, equipment, 0.95)

        assert status(engine, A) == ItemStatus.PENDING
        assert titles(notes).count("Weight mismatch") == 1

    def test_next_item_placed_during_settle(self, engine, equipment, box_m, qtbot, notes):
        engine.load_order(make_order(), [box_m])
        weigh(engine, equipment, 0.20)
        qtbot.waitUntil(lambda: status(engine, A) == ItemStatus.PENDING, timeout=1000)
        weigh(engine, equipment, 0.86)
        assert status(engine, A) == ItemStatus.SUCCESS

        # B goes on the scale before A has settled; nothing is pending yet
        weigh(engine, equipment, 1.28)
        assert status(engine, B) == ItemStatus.DEFAULT

        # auto-selected B is checked against the reading already on the scale
        qtbot.waitUntil(lambda: status(engine, B) in (ItemStatus.SUCCESS, ItemStatus.DONE), timeout=1000)
        assert "Weight mismatch" not in titles(notes)

    def test_scanning_item_already_on_scale(self, engine, equipment, box_m, notes):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()

        # B was put on instead of A: 0.20 box + 0.42
        weigh(engine, equipment, 0.62)
        assert status(engine, A) == ItemStatus.ERROR

        assert engine.handle_barcode("SKU-B") == MATCHED
        assert status(engine, B) in (ItemStatus.SUCCESS, ItemStatus.DONE)
        assert status(engine, A) == ItemStatus.DEFAULT
        assert titles(notes).count("Weight OK") == 1

    def test_unchanged_scale_does_not_fail_next_item(self, engine, equipment, box_m, qtbot, notes):
        engine.load_order(make_order(), [box_m])
        weigh(engine, equipment, 0.20)
        qtbot.waitUntil(lambda: status(engine, A) == ItemStatus.PENDING, timeout=1000)
        qtbot.wait(60)

        assert status(engine, A) == ItemStatus.PENDING
        assert "Weight mismatch" not in titles(notes)

    def test_hardware_unavailable(self, engine, equipment, box_m, notes):
        engine.load_order(make_order(), [box_m])
        equipment.fail_next(2)
        engine.coordinator.poll_once()
        engine.coordinator.poll_once()

        assert "Scale not responding" in titles(notes)
        assert engine.coordinator.mode == PollingMode.IDLE


# ============================================================================
# Scanning
# ============================================================================

class TestScanning:

    def test_scan_blocked_until_box_confirmed(self, engine, box_m, notes):
        engine.load_order(make_order(), [box_m])

        assert engine.handle_barcode("SKU-A") == BOX_NOT_CONFIRMED
        assert "Box not confirmed" in titles(notes)
        assert status(engine, A) == ItemStatus.DEFAULT

    def test_scan_selects_item(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()

        assert engine.handle_barcode("sku-b") == MATCHED
        assert status(engine, B) == ItemStatus.PENDING
        assert status(engine, A) == ItemStatus.DEFAULT

    def test_scanner_signal_is_handled(self, engine, equipment, box_m):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        equipment.scan("SKU-B")
        assert status(engine, B) == ItemStatus.PENDING

    def test_unknown_code(self, engine, box_m, notes):
        engine.load_order(make_order(), [box_m])
        assert engine.handle_barcode("XYZ") == NOT_FOUND
        assert "Item not in order" in titles(notes)

    def test_wrong_box_notifies_once(self, engine, box_m, notes, clock):
        order = make_order("SO-3", "", ("SKU-A", "Item A", 12), ("SKU-B", "Item B", 3))
        engine.load_order(order, [box_m, box_m])

        assert engine.handle_barcode("SKU-B") == WRONG_BOX
        clock.advance_ms(500)
        assert engine.handle_barcode("SKU-B") == DUPLICATE_SCAN
        clock.advance_ms(2000)
        assert engine.handle_barcode("SKU-B") == WRONG_BOX

        assert titles(notes).count("Wrong box") == 1
        assert engine.active_box_index == 0
        assert status(engine, "product_1_2") == ItemStatus.DEFAULT

    def test_switching_active_box(self, engine, box_m, qtbot):
        order = make_order("SO-3", "", ("SKU-A", "Item A", 12), ("SKU-B", "Item B", 3))
        engine.load_order(order, [box_m, box_m])

        with qtbot.waitSignal(engine.active_box_changed, timeout=1000) as blocker:
            engine.set_active_box(1)
        assert blocker.args == [1]

        engine.confirm_box()
        assert engine.handle_barcode("SKU-B") == MATCHED
        assert status(engine, "product_1_2") == ItemStatus.PENDING

    def test_invalid_active_box(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        with pytest.raises(ValidationError):
            engine.set_active_box(3)

    def test_reset_scan_state(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        engine.handle_barcode("SKU-B")
        engine.reset_scan_state()
        assert engine.handle_barcode("SKU-B") == MATCHED

    def test_scan_done_item(self, engine, box_m, notes):
        engine.load_order(make_order(), [box_m])
        engine.force_complete()
        engine.handle_barcode("SKU-A")
        assert "Already packed" in titles(notes)

    def test_repeated_scan_selects_once(self, engine, box_m, clock):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        changes = []
        engine.item_status_changed.connect(lambda item_id, value: changes.append((item_id, value)))

        assert engine.handle_barcode("SKU-B") == MATCHED
        clock.advance_ms(500)
        assert engine.handle_barcode("SKU-B") == DUPLICATE_SCAN

        assert changes.count((B, ItemStatus.PENDING.value)) == 1
        assert status(engine, B) == ItemStatus.PENDING


# ============================================================================
# Overflow and completion
# ============================================================================

class TestOverflow:

    def test_overflow_blocks_ready(self, engine, box_m, notes):
        order = make_order("SO-4", "", ("SKU-A", "Item A", 15), ("SKU-B", "Item B", 10))
        engine.load_order(order, [box_m, box_m])

        assert engine.plan.unallocated_portions == 5
        overflow = [n for n in notes if n.title == "Boxes too small"]
        assert len(overflow) == 1
        assert "Item B × 5" in overflow[0].description

        engine.force_complete()
        assert not engine.is_ready_available()
        with pytest.raises(AllocationOverflowError):
            engine.mark_ready()

    def test_mark_ready_requires_verification(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        with pytest.raises(ValidationError):
            engine.mark_ready()

    def test_mark_ready(self, engine, box_m, qtbot):
        engine.load_order(make_order("SO-5", "ready"), [box_m])
        with qtbot.waitSignal(engine.order_ready, timeout=1000) as blocker:
            engine.mark_ready()
        assert blocker.args == ["SO-5"]


# ============================================================================
# Order switching
# ============================================================================

class TestOrderSwitch:

    def test_pending_settle_dropped_on_switch(self, engine, equipment, box_m, qtbot):
        engine.load_order(make_order(), [box_m])
        weigh(engine, equipment, 0.20)
        assert status(engine, BOX) == ItemStatus.SUCCESS
        generation = engine.generation

        engine.switch_order(make_order("SO-6"), [box_m])
        qtbot.wait(120)

        assert engine.generation == generation + 1
        assert engine.order.order_id == "SO-6"
        assert status(engine, BOX) == ItemStatus.AWAITING_CONFIRMATION
        assert status(engine, A) == ItemStatus.DEFAULT

    def test_switch_resets_scale_and_scan_state(self, engine, equipment, box_m):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        engine.handle_barcode("SKU-B")
        weigh(engine, equipment, 0.20)

        engine.switch_order(make_order("SO-7"), [box_m])

        assert engine.coordinator.last_reading is None
        assert engine.coordinator.baseline == 0.0
        assert engine.active_box_index == 0
        equipment.set_weight(0.0)
        engine.confirm_box()
        assert engine.handle_barcode("SKU-B") == MATCHED

    def test_alerts_not_carried_over(self, engine, equipment, box_m, notes):
        engine.load_order(make_order(), [box_m])
        weigh(engine, equipment, 0.20)
        engine.switch_order(make_order("SO-8"), [box_m])
        weigh(engine, equipment, 0.20)

        assert status(engine, BOX) == ItemStatus.SUCCESS
        assert titles(notes).count("Weight OK") == 2

    def test_stale_generation_detected(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        old = engine.generation
        engine.leave_view()
        with pytest.raises(StaleOrderContextError) as exc_info:
            engine._check_generation(old)
        assert exc_info.value.current_generation == old + 1


# ============================================================================
# Leaving the view
# ============================================================================

class TestLeaveView:

    def test_scans_ignored_after_leaving(self, engine, equipment, box_m):
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        engine.select_item(B)
        engine.leave_view()
        assert engine.coordinator.mode == PollingMode.IDLE

        equipment.scan("SKU-A")

        assert status(engine, A) == ItemStatus.DEFAULT
        assert status(engine, B) == ItemStatus.PENDING
        assert engine.coordinator.mode == PollingMode.IDLE

    def test_operator_actions_ignored_after_leaving(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        engine.leave_view()

        assert not engine.confirm_box()
        assert not engine.select_item(A)
        assert status(engine, BOX) == ItemStatus.AWAITING_CONFIRMATION
        assert engine.coordinator.mode == PollingMode.IDLE

    def test_readings_ignored_after_leaving(self, engine, equipment, box_m):
        engine.load_order(make_order(), [box_m])
        engine.leave_view()
        weigh(engine, equipment, 0.20)
        assert status(engine, BOX) == ItemStatus.AWAITING_CONFIRMATION

    def test_next_load_reenters_view(self, engine, box_m):
        engine.load_order(make_order(), [box_m])
        engine.leave_view()
        engine.load_order(make_order(), [box_m])
        engine.confirm_box()
        assert engine.handle_barcode("SKU-B") == MATCHED
