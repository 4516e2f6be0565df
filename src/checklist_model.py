"""
Checklist data model for order assembly.

The checklist is the operator-facing pick list of one order: one entry per box
and one entry per (part of a) product placed in a box. It is rebuilt from
scratch whenever an order is loaded or its box configuration changes, and is
only ever changed through verification_reducer.

Items are immutable; every transition produces new ChecklistItem instances.
"""

from dataclasses import dataclass, field, replace, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from logger import get_logger

logger = get_logger(__name__)

DEFAULT_MANUAL_ORDER = 999


class ItemStatus(Enum):
    """Verification status of a checklist item."""
    DEFAULT = "default"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    DONE = "done"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"


class ItemType(Enum):
    PRODUCT = "product"
    BOX = "box"


# Statuses in which the item's weight is already on the scale
WEIGHED_STATUSES = frozenset({ItemStatus.DONE, ItemStatus.SUCCESS})
BOX_READY_STATUSES = frozenset({ItemStatus.CONFIRMED, ItemStatus.DONE})
COMPLETE_STATUSES = frozenset({ItemStatus.DONE, ItemStatus.SUCCESS})


@dataclass(frozen=True)
class BoxSettings:
    """
    Physical box type as configured in the warehouse.

    Attributes:
        name: Display name (e.g. "Box M")
        marking: Short marking printed on the box
        barcode: Barcode printed on the box marking label
        capacity: Maximum portions per box ("qntTo")
        min_portions: Minimum portions that justify this box ("qntFrom")
        overflow: Extra portions tolerated in economical mode
        width, height, length: Dimensions in cm
        max_load_kg: Load capacity in kg
        own_weight: Empty box weight in kg (explicit default 0.0)
    """
    name: str
    capacity: int = 0
    min_portions: int = 0
    overflow: int = 0
    marking: str = ""
    barcode: str = ""
    width: float = 0.0
    height: float = 0.0
    length: float = 0.0
    max_load_kg: float = 0.0
    own_weight: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoxSettings':
        """Create from a dictionary, ignoring unknown keys."""
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class ChecklistItem:
    """
    One entry of the pick list: a product (part) or a box.

    Attributes:
        id: Unique id within the checklist ("box_1", "product_0_3_part1")
        name: Display name
        quantity: Portions (>= 1)
        expected_weight: Expected weight of this entry in kg (>= 0)
        status: Current verification status
        item_type: Product or box
        box_index: Zero-based index of the box the entry belongs to
        sku: Product SKU (products only)
        barcode: Product barcode (products only)
        box_settings: Box type (boxes only)
        manual_order: Sort key, lower first
        portions_range: (start, end) 1-based portion numbers (boxes only)
        portions_per_box: Portions assigned to the box (boxes only)
    """
    id: str
    name: str
    quantity: int = 1
    expected_weight: float = 0.0
    status: ItemStatus = ItemStatus.DEFAULT
    item_type: ItemType = ItemType.PRODUCT
    box_index: int = 0
    sku: Optional[str] = None
    barcode: Optional[str] = None
    box_settings: Optional[BoxSettings] = None
    manual_order: int = DEFAULT_MANUAL_ORDER
    portions_range: tuple = field(default=(0, 0))
    portions_per_box: int = 0

    @property
    def is_box(self) -> bool:
        return self.item_type == ItemType.BOX

    @property
    def is_product(self) -> bool:
        return self.item_type == ItemType.PRODUCT

    def with_status(self, status: ItemStatus) -> 'ChecklistItem':
        return replace(self, status=status)

    def to_dict(self) -> dict:
        """Flat dictionary for tables and logs."""
        return {
            'id': self.id,
            'name': self.name,
            'type': self.item_type.value,
            'box_index': self.box_index,
            'quantity': self.quantity,
            'expected_weight': round(self.expected_weight, 3),
            'status': self.status.value,
            'sku': self.sku or '',
        }


def make_product(item_id: str, name: str, quantity: int, expected_weight: float,
                 sku: Optional[str] = None, barcode: Optional[str] = None,
                 manual_order: int = DEFAULT_MANUAL_ORDER) -> ChecklistItem:
    """Convenience constructor for a product entry not yet placed in a box."""
    return ChecklistItem(
        id=item_id,
        name=name,
        quantity=quantity,
        expected_weight=expected_weight,
        sku=sku,
        barcode=barcode if barcode is not None else sku,
        manual_order=manual_order,
    )


def sort_checklist_items(items: Iterable[ChecklistItem]) -> List[ChecklistItem]:
    """Sort by manual_order, then boxes before products, then by name."""
    return sorted(items, key=lambda i: (i.manual_order, 0 if i.is_box else 1, i.name))


def items_in_box(items: Iterable[ChecklistItem], box_index: int) -> List[ChecklistItem]:
    return [item for item in items if item.box_index == box_index]


def find_box(items: Iterable[ChecklistItem], box_index: int) -> Optional[ChecklistItem]:
    """Box entry for the given index, or None for orders packed without boxes."""
    for item in items:
        if item.is_box and item.box_index == box_index:
            return item
    return None


def find_item(items: Iterable[ChecklistItem], item_id: str) -> Optional[ChecklistItem]:
    for item in items:
        if item.id == item_id:
            return item
    return None


def pending_items(items: Iterable[ChecklistItem], box_index: Optional[int] = None) -> List[ChecklistItem]:
    return [
        item for item in items
        if item.status == ItemStatus.PENDING and (box_index is None or item.box_index == box_index)
    ]


def is_box_ready(items: Iterable[ChecklistItem], box_index: int) -> bool:
    """A box accepts products once confirmed; orders without box entries always do."""
    box = find_box(items, box_index)
    return box is None or box.status in BOX_READY_STATUSES


def is_order_complete(items: List[ChecklistItem]) -> bool:
    """
    All products done (or succeeded and settling) and all boxes at least confirmed.

    A pre-completed order keeps its boxes CONFIRMED, so confirmed boxes count.
    """
    if not items:
        return False
    for item in items:
        allowed = COMPLETE_STATUSES | BOX_READY_STATUSES if item.is_box else COMPLETE_STATUSES
        if item.status not in allowed:
            return False
    return True


def combine(boxes: List[Any], items: List[ChecklistItem],
            is_order_pre_completed: bool = False) -> List[ChecklistItem]:
    """
    Build the checklist from planned boxes and order products.

    Each planned box (see box_planner.PlannedBox) contributes one box entry plus
    the product parts the planner assigned to it. Portions the planner could not
    allocate are not listed; they are reported by the plan instead. Without any
    planned box every product lands in box 0.

    If the order already carries an upstream "ready" status, every product is
    forced to DONE and every box to CONFIRMED: verification is skipped.

    Args:
        boxes: Planned boxes in box_index order (may be empty)
        items: Order products in stable order
        is_order_pre_completed: Order was fulfilled upstream

    Returns:
        Box entries followed by product entries
    """
    box_status = ItemStatus.CONFIRMED if is_order_pre_completed else ItemStatus.AWAITING_CONFIRMATION
    product_status = ItemStatus.DONE if is_order_pre_completed else ItemStatus.DEFAULT

    box_items = [
        ChecklistItem(
            id=f"box_{index + 1}",
            name=box.settings.name or f"Box {index + 1}",
            quantity=1,
            expected_weight=float(box.settings.own_weight),
            status=box_status,
            item_type=ItemType.BOX,
            box_index=index,
            box_settings=box.settings,
            portions_range=box.portions_range,
            portions_per_box=box.portions_per_box,
        )
        for index, box in enumerate(boxes)
    ]

    planned_parts = [part for box in boxes for part in box.parts]

    product_items: List[ChecklistItem] = []
    if boxes:
        for part in planned_parts:
            product_items.append(replace(
                part.item,
                id=f"product_{part.box_index}_{part.item.id}" + (f"_part{part.part_index}" if part.part_index else ""),
                item_type=ItemType.PRODUCT,
                quantity=part.quantity,
                expected_weight=part.expected_weight,
                box_index=part.box_index,
                status=product_status,
            ))
    else:
        for index, item in enumerate(items):
            product_items.append(replace(
                item,
                id=f"product_{index + 1}",
                item_type=ItemType.PRODUCT,
                box_index=0,
                status=product_status,
            ))

    logger.debug(f"Checklist combined: {len(box_items)} boxes, {len(product_items)} products"
                 f"{' (pre-completed)' if is_order_pre_completed else ''}")
    return box_items + product_items
