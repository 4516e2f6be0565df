"""
Barcode matching and scan de-duplication.

Scanners fire the same code several times when an operator holds a product in
front of them, so identical codes inside a short cooldown window are ignored.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from checklist_model import ChecklistItem, ItemStatus, is_box_ready, sort_checklist_items
from logger import get_logger

logger = get_logger(__name__)

DEFAULT_SCAN_COOLDOWN_MS = 2000

# Match statuses
MATCHED = "MATCHED"
DUPLICATE_SCAN = "DUPLICATE_SCAN"
NOT_FOUND = "NOT_FOUND"
ITEM_DONE = "ITEM_DONE"
WRONG_BOX = "WRONG_BOX"
BOX_NOT_CONFIRMED = "BOX_NOT_CONFIRMED"


def normalize_code(code: Any) -> str:
    """
    Normalize a barcode or SKU for comparison.

    Removes every non-alphanumeric character and lowercases the rest, so codes
    typed by hand, copied from a supplier sheet or read by a scanner with a
    prefix configuration all compare equal.

    Examples:
        "SKU-123-A" -> "sku123a"
        "4820 0012 3456 7" -> "4820001234567"
        12345 -> "12345"
    """
    if code is None:
        return ''
    return ''.join(filter(str.isalnum, str(code))).lower()


class BarcodeMatcher:
    """
    Resolves scanned codes to checklist products of the active box.

    Holds the last processed code and its time: this is session state owned by
    one engine instance, never shared between orders or stations.

    Attributes:
        cooldown_ms: Window in which an identical code is a duplicate
        debug_mode: Disables duplicate suppression
        sku_map: Optional normalized barcode -> SKU translation
    """

    def __init__(self, cooldown_ms: int = DEFAULT_SCAN_COOLDOWN_MS, debug_mode: bool = False,
                 sku_map: Optional[Dict[str, str]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cooldown_ms = cooldown_ms
        self.debug_mode = debug_mode
        self.sku_map = {normalize_code(k): v for k, v in (sku_map or {}).items()}
        self._clock = clock
        self._last_code: Optional[str] = None
        self._last_time: float = 0.0

    def reset(self):
        """Forget the last processed code (order switch, manual reset)."""
        self._last_code = None
        self._last_time = 0.0

    def is_duplicate(self, normalized: str) -> bool:
        if self.debug_mode or self._last_code is None:
            return False
        elapsed_ms = (self._clock() - self._last_time) * 1000
        return normalized == self._last_code and elapsed_ms < self.cooldown_ms

    def _translate(self, normalized: str) -> str:
        return normalize_code(self.sku_map.get(normalized, normalized))

    def match(self, code: Any, items: Sequence[ChecklistItem],
              active_box_index: int) -> Tuple[Optional[ChecklistItem], str]:
        """
        Find the product a scanned code refers to.

        Steps:
        1. Normalize and drop duplicates inside the cooldown window
        2. Translate through the barcode -> SKU map, if one is set
        3. Collect products whose barcode or SKU matches (box entries never match)
        4. Prefer an unfinished product in the active box

        Args:
            code: Raw scanner output
            items: Current checklist
            active_box_index: Box currently being packed

        Returns:
            Tuple[ChecklistItem | None, str]:
                - (item, "MATCHED") - item can be selected
                - (None, "DUPLICATE_SCAN") - same code inside cooldown
                - (None, "NOT_FOUND") - code not in this order
                - (item, "ITEM_DONE") - every matching product already done
                - (item, "WRONG_BOX") - product belongs to another box
                - (item, "BOX_NOT_CONFIRMED") - product's box is not confirmed
        """
        normalized = normalize_code(code)
        if not normalized:
            logger.info(f"Scanned code has no letters or digits: {code!r}")
            return None, NOT_FOUND

        if self.is_duplicate(normalized):
            logger.debug(f"Duplicate scan ignored: {normalized}")
            return None, DUPLICATE_SCAN

        self._last_code = normalized
        self._last_time = self._clock()

        translated = self._translate(normalized)
        if not translated:
            return None, NOT_FOUND
        candidates: List[ChecklistItem] = [
            item for item in sort_checklist_items(items)
            if item.is_product and translated in (normalize_code(item.barcode), normalize_code(item.sku))
        ]

        if not candidates:
            logger.info(f"Scanned code not in order: {code}")
            return None, NOT_FOUND

        in_box = [i for i in candidates if i.box_index == active_box_index]
        open_in_box = [i for i in in_box if i.status != ItemStatus.DONE]

        if open_in_box:
            # Keep scanning the already pending item rather than jumping to its twin
            item = next((i for i in open_in_box if i.status == ItemStatus.PENDING), open_in_box[0])
            if not is_box_ready(items, active_box_index):
                return item, BOX_NOT_CONFIRMED
            return item, MATCHED

        open_elsewhere = [i for i in candidates if i.status != ItemStatus.DONE]
        if open_elsewhere:
            logger.info(f"Scanned item {open_elsewhere[0].id} belongs to box {open_elsewhere[0].box_index + 1}, "
                        f"active box is {active_box_index + 1}")
            return open_elsewhere[0], WRONG_BOX

        return candidates[0], ITEM_DONE
