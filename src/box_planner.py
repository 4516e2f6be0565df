"""
Box packing planner.

Decides how the portions of an order are spread over the boxes selected for it
and what each box should weigh when fully packed. Two steps:

1. recommend_boxes() - choose box types for a portion count (spacious or
   economical strategy), used when the operator has not picked boxes yet.
2. BoxPackingPlanner.plan() - deterministic greedy bin-fill of the order's
   products into the chosen boxes, splitting a product across boxes when a box
   runs full.

Overflow is never silent: portions that do not fit are reported in
BoxPlan.unallocated_items together with the product names.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from checklist_model import BoxSettings, ChecklistItem
from exceptions import AllocationOverflowError
from logger import get_logger

logger = get_logger(__name__)


class PackingMode(Enum):
    """
    Box selection strategy.

    SPACIOUS: boxes are never filled above their nominal capacity.
    ECONOMICAL: fewer boxes, each allowed to take its overflow allowance.
    """
    SPACIOUS = "spacious"
    ECONOMICAL = "economical"


@dataclass(frozen=True)
class PlannedPart:
    """A slice of one order product assigned to one box."""
    item: ChecklistItem
    box_index: int
    quantity: int
    expected_weight: float
    part_index: int = 0


@dataclass
class PlannedBox:
    """
    One box of the plan.

    Attributes:
        box_index: Zero-based position of the box in the order
        settings: Box type
        capacity: Effective portion capacity used for filling (0 = unbounded)
        portions_range: (start, end) 1-based portion numbers, (0, 0) when empty
        portions_per_box: Portions assigned to this box
        expected_weight: own_weight + expected weight of assigned portions (kg)
        parts: Product slices assigned to this box
    """
    box_index: int
    settings: BoxSettings
    capacity: int
    portions_range: Tuple[int, int] = (0, 0)
    portions_per_box: int = 0
    expected_weight: float = 0.0
    parts: List[PlannedPart] = field(default_factory=list)


@dataclass
class BoxPlan:
    """
    Result of planning an order into boxes.

    Attributes:
        boxes: Planned boxes in packing order
        mode: Strategy used for effective capacities
        total_portions: Portions demanded by the order
        allocated_portions: Portions placed into boxes
        unallocated_portions: max(0, total - allocated)
        unallocated_items: (product name, quantity) that did not fit
    """
    boxes: List[PlannedBox]
    mode: PackingMode
    total_portions: int = 0
    allocated_portions: int = 0
    unallocated_portions: int = 0
    unallocated_items: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def has_overflow(self) -> bool:
        return self.unallocated_portions > 0

    def raise_for_overflow(self) -> None:
        """Raise AllocationOverflowError when some portions did not fit."""
        if self.has_overflow:
            raise AllocationOverflowError(
                f"{self.unallocated_portions} portions do not fit into {len(self.boxes)} boxes",
                unallocated_portions=self.unallocated_portions,
                unallocated_items=list(self.unallocated_items),
            )


@dataclass
class BoxRecommendation:
    """Box types suggested for a portion count."""
    mode: PackingMode
    total_portions: int
    boxes: List[BoxSettings] = field(default_factory=list)
    portions_per_box: float = 0.0
    total_capacity: int = 0
    details: List[str] = field(default_factory=list)
    has_overflow: bool = False
    overflow_warning: bool = False
    error: Optional[str] = None

    @property
    def box_count(self) -> int:
        return len(self.boxes)


def effective_capacity(box: BoxSettings, mode: PackingMode) -> int:
    """Portions a box may take in the given mode; 0 means unbounded."""
    capacity = max(int(box.capacity or 0), 0)
    if capacity and mode == PackingMode.ECONOMICAL:
        capacity += max(int(box.overflow or 0), 0)
    return capacity


class BoxPackingPlanner:
    """
    Greedy planner that pours order portions into a list of boxes.

    The planner is deterministic: the same items in the same order with the
    same boxes always produce the same plan. It has no side effects and keeps
    no state between calls apart from the default packing mode.
    """

    def __init__(self, mode: PackingMode = PackingMode.SPACIOUS):
        self.mode = mode

    def plan(self, items: Sequence[ChecklistItem], boxes: Sequence[BoxSettings],
             mode: Optional[PackingMode] = None) -> BoxPlan:
        """
        Assign order portions to boxes.

        Algorithm:
        1. Compute each box's effective capacity for the mode
        2. Walk the items in order; put as many portions of the current item
           into the current box as still fit
        3. When the box is full, open the next one; the last box takes whatever
           still fits into it
        4. Portions left after the last box are reported as unallocated

        A single box or a configuration where no box declares a capacity places
        everything into box 0.

        Args:
            items: Order products (stable order), quantity = portions
            boxes: Boxes selected for the order, in packing order
            mode: Overrides the planner's default mode

        Returns:
            BoxPlan with per-box ranges, weights and overflow report
        """
        mode = mode or self.mode
        total_portions = sum(max(int(item.quantity), 0) for item in items)

        planned = [
            PlannedBox(box_index=index, settings=box, capacity=effective_capacity(box, mode))
            for index, box in enumerate(boxes)
        ]

        if not planned:
            logger.debug("No boxes selected, all portions go to box 0 without a box entry")
            return BoxPlan(boxes=[], mode=mode, total_portions=total_portions,
                           allocated_portions=total_portions)

        unbounded = all(box.capacity <= 0 for box in planned)
        unallocated_items: List[Tuple[str, int]] = []

        box_pos = 0
        fill = 0

        for item in items:
            quantity = max(int(item.quantity), 0)
            if quantity == 0:
                continue

            unit_weight = item.expected_weight / quantity
            remaining = quantity
            part_index = 0

            if unbounded:
                planned[0].parts.append(PlannedPart(item, 0, quantity, item.expected_weight, 0))
                continue

            while remaining > 0:
                # Skip full (or zero-capacity) boxes
                while box_pos < len(planned) and fill >= planned[box_pos].capacity:
                    box_pos += 1
                    fill = 0

                if box_pos >= len(planned):
                    break

                take = min(remaining, planned[box_pos].capacity - fill)
                weight = item.expected_weight if take == quantity else unit_weight * take
                planned[box_pos].parts.append(PlannedPart(item, box_pos, take, weight, part_index))

                fill += take
                remaining -= take
                part_index += 1

            if remaining > 0:
                unallocated_items.append((item.name, remaining))

        allocated = 0
        for box in planned:
            box.portions_per_box = sum(part.quantity for part in box.parts)
            if box.portions_per_box:
                box.portions_range = (allocated + 1, allocated + box.portions_per_box)
            allocated += box.portions_per_box
            box.expected_weight = float(box.settings.own_weight) + sum(p.expected_weight for p in box.parts)

        plan = BoxPlan(
            boxes=planned,
            mode=mode,
            total_portions=total_portions,
            allocated_portions=allocated,
            unallocated_portions=max(0, total_portions - allocated),
            unallocated_items=unallocated_items,
        )

        if plan.has_overflow:
            logger.warning(f"Box plan overflow: {plan.unallocated_portions} of {total_portions} portions "
                           f"unallocated ({', '.join(f'{n} x{q}' for n, q in unallocated_items)})")
        else:
            logger.info(f"Box plan: {total_portions} portions in {len(planned)} boxes ({mode.value})")

        return plan


# ---------------------------------------------------------------------------
# Box type recommendation
# ---------------------------------------------------------------------------

def _format_recommendation(mode: PackingMode, total_portions: int, box: Optional[BoxSettings],
                           box_count: int, portions_per_box: float) -> BoxRecommendation:
    if box is None:
        return BoxRecommendation(mode=mode, total_portions=total_portions,
                                 error="No suitable packing solution found.")

    has_overflow = portions_per_box > box.capacity
    details = []
    for _ in range(box_count):
        detail = f"Box {box.marking or box.name}: {portions_per_box:.2f} of {box.capacity} portions"
        if has_overflow:
            detail += (f" (over by {portions_per_box - box.capacity:.2f}, "
                       f"allowed up to {box.overflow or 1})")
        details.append(detail)

    flagged = mode == PackingMode.ECONOMICAL and has_overflow
    return BoxRecommendation(
        mode=mode,
        total_portions=total_portions,
        boxes=[box] * box_count,
        portions_per_box=portions_per_box,
        total_capacity=box_count * box.capacity,
        details=details,
        has_overflow=flagged,
        overflow_warning=flagged,
    )


def _economical_solution(total_portions: int, boxes: List[BoxSettings]):
    best_box, best_count, best_ppb = None, math.inf, 0.0
    for box in boxes:
        allowance = box.capacity + max(box.overflow, 0)
        if allowance <= 0:
            continue
        count = math.ceil(total_portions / allowance)
        if count <= 0:
            continue
        ppb = total_portions / count
        if ppb - box.capacity <= box.overflow:
            if count < best_count or (count == best_count and best_box is not None
                                      and box.capacity < best_box.capacity):
                best_box, best_count, best_ppb = box, count, ppb
    return best_box, best_count, best_ppb


def _uniform_solution(total_portions: int, boxes: List[BoxSettings]):
    best_box, best_count, best_ppb = None, math.inf, 0.0
    for box in boxes:
        if box.capacity <= 0:
            continue
        count = math.ceil(total_portions / box.capacity)
        if count <= 1:
            continue
        ppb = total_portions / count
        if box.min_portions <= ppb <= box.capacity and count < best_count:
            best_box, best_count, best_ppb = box, count, ppb
    return best_box, best_count, best_ppb


def recommend_boxes(total_portions: int, box_types: Sequence[BoxSettings],
                    mode: PackingMode = PackingMode.SPACIOUS) -> BoxRecommendation:
    """
    Suggest box types for an order of `total_portions` portions.

    Spacious: the smallest box whose [min_portions, capacity] range holds the
    whole order; otherwise one large box if any can hold it; otherwise the
    uniform multi-box solution with the fewest boxes.

    Economical: the fewest boxes when each box may exceed its capacity by its
    overflow allowance; ties go to the smaller box.

    Returns:
        BoxRecommendation; `error` is set when nothing fits
    """
    sorted_boxes = sorted(box_types, key=lambda b: b.capacity)

    if mode == PackingMode.ECONOMICAL:
        box, count, ppb = _economical_solution(total_portions, sorted_boxes)
        if box is None:
            logger.warning(f"No economical packing for {total_portions} portions")
            return _format_recommendation(mode, total_portions, None, 0, 0.0)
        return _format_recommendation(mode, total_portions, box, count, ppb)

    for box in sorted_boxes:
        if box.min_portions <= total_portions <= box.capacity:
            return _format_recommendation(mode, total_portions, box, 1, float(total_portions))

    single_large = next((b for b in sorted_boxes if total_portions <= b.capacity), None)
    uniform_box, uniform_count, uniform_ppb = _uniform_solution(total_portions, sorted_boxes)

    if uniform_box is not None and (single_large is None or uniform_count <= 1):
        return _format_recommendation(mode, total_portions, uniform_box, uniform_count, uniform_ppb)
    if single_large is not None:
        return _format_recommendation(mode, total_portions, single_large, 1, float(total_portions))

    logger.warning(f"No spacious packing for {total_portions} portions")
    return _format_recommendation(mode, total_portions, None, 0, 0.0)
