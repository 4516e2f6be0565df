"""
Verification state machine for checklist items.

Every change to the checklist goes through reduce(items, event). The reducer
is pure: it never touches hardware, timers or notifications, it only returns
the new item list plus a description of what changed (or why the event was
rejected). The engine decides what to do with the result.

Product lifecycle:
    default -> pending -> success -> done
                       -> error   -> pending (after the error settle delay)

Box lifecycle:
    awaiting_confirmation -> success -> confirmed -> done
                          -> error   -> awaiting_confirmation
    A confirmed box becomes done once every product inside it is done.

At most one item per box is pending at any time.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple

from checklist_model import (
    BOX_READY_STATUSES,
    WEIGHED_STATUSES,
    ChecklistItem,
    ItemStatus,
    find_box,
    find_item,
    is_box_ready,
    items_in_box,
    sort_checklist_items,
)
from tolerance_calculator import (
    WeightTolerancePolicy,
    calculate_box_tolerance,
    calculate_tolerance,
    is_within_tolerance,
)
from logger import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    SELECT_ITEM = "select_item"
    WEIGH_SUCCEEDED = "weigh_succeeded"
    WEIGH_FAILED = "weigh_failed"
    SETTLE_ELAPSED = "settle_elapsed"
    CONFIRM_BOX = "confirm_box"
    FORCE_COMPLETE = "force_complete"


# Rejection reasons
REJECT_NOT_FOUND = "ITEM_NOT_FOUND"
REJECT_ITEM_DONE = "ITEM_DONE"
REJECT_WRONG_BOX = "WRONG_BOX"
REJECT_BOX_NOT_CONFIRMED = "BOX_NOT_CONFIRMED"
REJECT_NO_TRANSITION = "NO_TRANSITION"


@dataclass(frozen=True)
class SelectItem:
    """Operator scanned or clicked an item. active_box_index enables the cross-box guard."""
    item_id: str
    active_box_index: Optional[int] = None
    event_type: ClassVar[EventType] = EventType.SELECT_ITEM


@dataclass(frozen=True)
class WeighSucceeded:
    item_id: str
    event_type: ClassVar[EventType] = EventType.WEIGH_SUCCEEDED


@dataclass(frozen=True)
class WeighFailed:
    item_id: str
    event_type: ClassVar[EventType] = EventType.WEIGH_FAILED


@dataclass(frozen=True)
class SettleElapsed:
    """Settle delay after success/error expired. Auto-selection happens only in the active box."""
    item_id: str
    active_box_index: Optional[int] = None
    event_type: ClassVar[EventType] = EventType.SETTLE_ELAPSED


@dataclass(frozen=True)
class ConfirmBox:
    """Operator confirmed a box manually (without weighing it)."""
    box_index: int
    active_box_index: Optional[int] = None
    event_type: ClassVar[EventType] = EventType.CONFIRM_BOX


@dataclass(frozen=True)
class ForceComplete:
    """Order was completed upstream: products done, boxes confirmed."""
    event_type: ClassVar[EventType] = EventType.FORCE_COMPLETE


# (status, event) -> status, for product items
TRANSITIONS: Dict[Tuple[ItemStatus, EventType], ItemStatus] = {
    (ItemStatus.DEFAULT, EventType.SELECT_ITEM): ItemStatus.PENDING,
    (ItemStatus.ERROR, EventType.SELECT_ITEM): ItemStatus.PENDING,
    (ItemStatus.PENDING, EventType.SELECT_ITEM): ItemStatus.PENDING,
    (ItemStatus.PENDING, EventType.WEIGH_SUCCEEDED): ItemStatus.SUCCESS,
    (ItemStatus.PENDING, EventType.WEIGH_FAILED): ItemStatus.ERROR,
    (ItemStatus.SUCCESS, EventType.SETTLE_ELAPSED): ItemStatus.DONE,
    (ItemStatus.ERROR, EventType.SETTLE_ELAPSED): ItemStatus.PENDING,
}

# (status, event) -> status, for box items
BOX_TRANSITIONS: Dict[Tuple[ItemStatus, EventType], ItemStatus] = {
    (ItemStatus.AWAITING_CONFIRMATION, EventType.WEIGH_SUCCEEDED): ItemStatus.SUCCESS,
    (ItemStatus.AWAITING_CONFIRMATION, EventType.WEIGH_FAILED): ItemStatus.ERROR,
    (ItemStatus.AWAITING_CONFIRMATION, EventType.CONFIRM_BOX): ItemStatus.CONFIRMED,
    (ItemStatus.ERROR, EventType.CONFIRM_BOX): ItemStatus.CONFIRMED,
    (ItemStatus.SUCCESS, EventType.SETTLE_ELAPSED): ItemStatus.CONFIRMED,
    (ItemStatus.ERROR, EventType.SETTLE_ELAPSED): ItemStatus.AWAITING_CONFIRMATION,
}


@dataclass(frozen=True)
class Transition:
    item_id: str
    from_status: ItemStatus
    to_status: ItemStatus


@dataclass
class ReduceResult:
    """
    Outcome of one reduce() call.

    Attributes:
        items: Checklist after the event (the input list when nothing changed)
        transitions: Status changes applied, in order
        rejected: Rejection reason, None when the event was accepted
    """
    items: List[ChecklistItem]
    transitions: List[Transition] = field(default_factory=list)
    rejected: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.transitions)

    @property
    def entered_pending(self) -> List[str]:
        """Ids of items that became pending during this event."""
        return [t.item_id for t in self.transitions if t.to_status == ItemStatus.PENDING]


@dataclass(frozen=True)
class WeightEvaluation:
    """Comparison of one scale reading against the item being verified."""
    item: ChecklistItem
    actual: float
    expected: float
    tolerance: float

    @property
    def within_tolerance(self) -> bool:
        return is_within_tolerance(self.actual, self.expected, self.tolerance)

    @property
    def deviation(self) -> float:
        return self.actual - self.expected


def next_status(item: ChecklistItem, event_type: EventType) -> Optional[ItemStatus]:
    """Look up the transition table for the item's type; None if not allowed."""
    table = BOX_TRANSITIONS if item.is_box else TRANSITIONS
    return table.get((item.status, event_type))


def pending_violations(items: Sequence[ChecklistItem]) -> List[int]:
    """Box indices holding more than one pending item (empty when the invariant holds)."""
    counts: Dict[int, int] = {}
    for item in items:
        if item.status == ItemStatus.PENDING:
            counts[item.box_index] = counts.get(item.box_index, 0) + 1
    return sorted(index for index, count in counts.items() if count > 1)


def next_default_item(items: Sequence[ChecklistItem], box_index: int) -> Optional[ChecklistItem]:
    """First product still in DEFAULT status in the box, in checklist sort order."""
    for item in sort_checklist_items(items_in_box(items, box_index)):
        if item.is_product and item.status == ItemStatus.DEFAULT:
            return item
    return None


def _apply(items: List[ChecklistItem], item: ChecklistItem, status: ItemStatus,
           transitions: List[Transition]) -> List[ChecklistItem]:
    transitions.append(Transition(item.id, item.status, status))
    return [i.with_status(status) if i.id == item.id else i for i in items]


def _release_others(items: List[ChecklistItem], target: ChecklistItem,
                    transitions: List[Transition]) -> List[ChecklistItem]:
    """Revert every other pending or errored product in the target's box to default."""
    for other in list(items):
        if (other.id != target.id and other.is_product and other.box_index == target.box_index
                and other.status in (ItemStatus.PENDING, ItemStatus.ERROR)):
            items = _apply(items, other, ItemStatus.DEFAULT, transitions)
    return items


def _complete_boxes(items: List[ChecklistItem], transitions: List[Transition]) -> List[ChecklistItem]:
    """Confirmed boxes whose products are all done become done."""
    for box in [i for i in items if i.is_box and i.status == ItemStatus.CONFIRMED]:
        products = [i for i in items_in_box(items, box.box_index) if i.is_product]
        if products and all(p.status == ItemStatus.DONE for p in products):
            items = _apply(items, box, ItemStatus.DONE, transitions)
    return items


def _auto_select(items: List[ChecklistItem], box_index: int,
                 transitions: List[Transition]) -> List[ChecklistItem]:
    """Select the next default product of the box unless something is already pending there."""
    if any(i.status == ItemStatus.PENDING and i.box_index == box_index for i in items):
        return items
    if not is_box_ready(items, box_index):
        return items
    candidate = next_default_item(items, box_index)
    if candidate is not None:
        items = _apply(items, candidate, ItemStatus.PENDING, transitions)
    return items


def _force_complete(items: List[ChecklistItem]) -> ReduceResult:
    transitions: List[Transition] = []
    for item in list(items):
        if item.is_box:
            if item.status not in BOX_READY_STATUSES:
                items = _apply(items, item, ItemStatus.CONFIRMED, transitions)
        elif item.status != ItemStatus.DONE:
            items = _apply(items, item, ItemStatus.DONE, transitions)
    return ReduceResult(items=items, transitions=transitions)


def reduce(items: Sequence[ChecklistItem], event) -> ReduceResult:
    """
    Apply one event to the checklist.

    Guards (the event is rejected and the checklist returned unchanged):
    - unknown item id or box index
    - selecting a done item (done is terminal)
    - selecting an item outside event.active_box_index
    - selecting a product whose box is not confirmed yet
    - any (status, event) pair missing from the transition table

    Side transitions applied within the same event:
    - selecting an item reverts the other pending/errored products of its box
    - an errored item settling while another item of its box is pending goes
      back to default instead of pending
    - after a success settles, the next default product of the active box is
      selected automatically
    - confirmed boxes with all products done become done

    Args:
        items: Current checklist
        event: One of SelectItem, WeighSucceeded, WeighFailed, SettleElapsed,
               ConfirmBox, ForceComplete

    Returns:
        ReduceResult with the new items and applied transitions
    """
    items = list(items)
    event_type = event.event_type

    if event_type == EventType.FORCE_COMPLETE:
        return _force_complete(items)

    transitions: List[Transition] = []

    if event_type == EventType.CONFIRM_BOX:
        target = find_box(items, event.box_index)
    else:
        target = find_item(items, event.item_id)

    if target is None:
        return ReduceResult(items=items, rejected=REJECT_NOT_FOUND)

    if event_type == EventType.SELECT_ITEM:
        if target.status == ItemStatus.DONE:
            return ReduceResult(items=items, rejected=REJECT_ITEM_DONE)
        if event.active_box_index is not None and target.box_index != event.active_box_index:
            return ReduceResult(items=items, rejected=REJECT_WRONG_BOX)
        if target.is_product and not is_box_ready(items, target.box_index):
            return ReduceResult(items=items, rejected=REJECT_BOX_NOT_CONFIRMED)

    new_status = next_status(target, event_type)
    if new_status is None:
        return ReduceResult(items=items, rejected=REJECT_NO_TRANSITION)

    if new_status == target.status:
        # Re-selecting the pending item
        return ReduceResult(items=items)

    if event_type == EventType.SELECT_ITEM:
        items = _release_others(items, target, transitions)
    elif (new_status == ItemStatus.PENDING
          and any(i.status == ItemStatus.PENDING and i.box_index == target.box_index for i in items)):
        new_status = ItemStatus.DEFAULT

    items = _apply(items, target, new_status, transitions)
    items = _complete_boxes(items, transitions)

    active_box = getattr(event, 'active_box_index', None)
    if new_status in (ItemStatus.DONE, ItemStatus.CONFIRMED) and active_box == target.box_index:
        items = _auto_select(items, target.box_index, transitions)

    return ReduceResult(items=items, transitions=transitions)


def evaluate_weight(items: Sequence[ChecklistItem], active_box_index: int, reading_weight: float,
                    policy: Optional[WeightTolerancePolicy] = None) -> Optional[WeightEvaluation]:
    """
    Compare a scale reading with the expected cumulative weight of the active box.

    The item under verification is the pending product of the active box, or
    the box itself while it awaits confirmation. Expected weight:
        box own weight (if the box is confirmed/done)
        + expected weight of products already on the scale (done/success)
        + expected weight of the pending product
    For a box under verification the expected weight is its own weight alone
    and the box tolerance (10%, at least 10 g) applies.

    Args:
        items: Current checklist
        active_box_index: Box on the scale
        reading_weight: Scale reading in kg
        policy: Tolerance policy for products

    Returns:
        WeightEvaluation, or None when nothing in the box awaits verification
    """
    box_items = items_in_box(items, active_box_index)
    box = find_box(box_items, active_box_index)

    pending = next((i for i in box_items if i.is_product and i.status == ItemStatus.PENDING), None)

    if pending is None:
        if box is not None and box.status == ItemStatus.AWAITING_CONFIRMATION:
            expected = box.expected_weight
            return WeightEvaluation(box, reading_weight, expected, calculate_box_tolerance(expected))
        return None

    expected = 0.0
    if box is not None and box.status in BOX_READY_STATUSES:
        expected += box.expected_weight
    expected += sum(i.expected_weight for i in box_items
                    if i.is_product and i.id != pending.id and i.status in WEIGHED_STATUSES)
    expected += pending.expected_weight

    tolerance = calculate_tolerance(pending.expected_weight, policy, portions=pending.quantity)
    return WeightEvaluation(pending, reading_weight, expected, tolerance)
