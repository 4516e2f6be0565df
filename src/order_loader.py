"""
Order loader - reads packing lists and box types from files.

Packing lists come as Excel (one row per order line) or as JSON:

    {
      "list_name": "Morning_Batch",
      "orders": [
        {
          "order_number": "SO-1042",
          "status": "new",
          "items": [
            {"sku": "B-01", "quantity": 2, "product_name": "Borscht"}
          ]
        }
      ]
    }

Both formats are flattened into one DataFrame with REQUIRED_COLUMNS before
orders are built, so validation is shared.
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from checklist_model import BoxSettings
from exceptions import ValidationError
from logger import get_logger

logger = get_logger(__name__)

REQUIRED_COLUMNS = ['Order_Number', 'SKU', 'Product_Name', 'Quantity']
STATUS_COLUMN = 'Status'

# Upstream statuses meaning the order is already packed
READY_STATUSES = frozenset({'ready', 'ready_to_ship', 'shipped', 'completed'})

# Box type file column -> BoxSettings field
BOX_COLUMNS = {
    'Name': 'name',
    'Marking': 'marking',
    'Barcode': 'barcode',
    'QntFrom': 'min_portions',
    'QntTo': 'capacity',
    'Overflow': 'overflow',
    'Width': 'width',
    'Height': 'height',
    'Length': 'length',
    'MaxLoadKg': 'max_load_kg',
    'OwnWeightKg': 'own_weight',
}
BOX_INT_FIELDS = ('min_portions', 'capacity', 'overflow')


@dataclass(frozen=True)
class OrderLine:
    sku: str
    name: str
    quantity: int


@dataclass
class OrderData:
    """
    One order as delivered by the order provider.

    Attributes:
        order_id: Order number
        lines: Order lines in file order
        status: Upstream status text
        is_ready: Order was already packed upstream ("ready to ship")
    """
    order_id: str
    lines: List[OrderLine] = field(default_factory=list)
    status: str = ""
    is_ready: bool = False

    @property
    def total_portions(self) -> int:
        return sum(line.quantity for line in self.lines)


def _parse_quantity(value, order_id: str, sku: str) -> int:
    try:
        quantity = int(float(str(value).strip()))
    except (TypeError, ValueError):
        raise ValidationError(f"Order {order_id}, SKU {sku}: quantity '{value}' is not a number")
    if quantity <= 0:
        raise ValidationError(f"Order {order_id}, SKU {sku}: quantity must be positive, got {quantity}")
    return quantity


class OrderLoader:
    """
    Loads a packing list and exposes its orders by order number.

    Attributes:
        orders: order_id -> OrderData, in file order
        list_name: Name of the loaded packing list
    """

    def __init__(self, column_mapping: Optional[Dict[str, str]] = None):
        """
        Args:
            column_mapping: Maps required column names to the file's own
                            column names, e.g. {'Order_Number': 'Order'}
        """
        self.column_mapping = column_mapping or {}
        self.orders: Dict[str, OrderData] = {}
        self.list_name = ""

    def load(self, path) -> int:
        """
        Load a packing list (.xlsx or .json).

        Returns:
            Number of orders loaded

        Raises:
            ValidationError: File missing, unreadable or malformed
        """
        path = Path(path)
        logger.info(f"Loading packing list from: {path}")

        if not path.exists():
            raise ValidationError(f"Packing list file not found: {path}")

        self.list_name = path.stem
        if path.suffix.lower() == '.json':
            df = self._read_json(path)
        else:
            df = self._read_excel(path)

        self.orders = self._build_orders(df)
        logger.info(f"Packing list '{self.list_name}' loaded: {len(self.orders)} orders")
        return len(self.orders)

    def _read_excel(self, path: Path) -> pd.DataFrame:
        try:
            df = pd.read_excel(path, dtype=str).fillna('')
        except Exception as e:
            logger.error(f"Failed to read Excel file: {e}")
            raise ValidationError(f"Could not read the Excel file: {e}")

        if df.empty:
            raise ValidationError("The file is empty or contains no data.")

        # Rename mapped columns to the internal names
        reverse = {file_col: col for col, file_col in self.column_mapping.items()}
        return df.rename(columns=reverse)

    def _read_json(self, path: Path) -> pd.DataFrame:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in packing list file: {e}")
            raise ValidationError(f"Invalid JSON in packing list file: {e}")

        self.list_name = data.get('list_name', path.stem)

        rows = []
        for order in data.get('orders', []):
            if 'order_number' not in order:
                raise ValidationError("Missing required field in order data: order_number")

            items = order.get('items', [])
            if not items:
                logger.warning(f"Order {order['order_number']} has no items, skipping")
                continue

            for item in items:
                rows.append({
                    'Order_Number': str(order['order_number']),
                    'SKU': str(item.get('sku', '')),
                    'Product_Name': str(item.get('product_name', '')),
                    'Quantity': str(item.get('quantity', 1)),
                    STATUS_COLUMN: str(order.get('status', '')),
                })

        df = pd.DataFrame(rows, columns=REQUIRED_COLUMNS + [STATUS_COLUMN])
        if df.empty:
            raise ValidationError("The packing list contains no order items.")
        return df

    def _build_orders(self, df: pd.DataFrame) -> Dict[str, OrderData]:
        missing_cols = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing_cols:
            logger.error(f"Missing required columns in packing list: {missing_cols}")
            raise ValidationError(f"Missing required columns in packing list: {missing_cols}")

        orders: Dict[str, OrderData] = {}
        for order_id, group in df.groupby('Order_Number', sort=False):
            order_id = str(order_id).strip()
            if not order_id:
                continue

            status = ''
            if STATUS_COLUMN in group.columns:
                status = next((s for s in group[STATUS_COLUMN].astype(str) if s.strip()), '')

            lines = []
            for _, row in group.iterrows():
                sku = str(row['SKU']).strip()
                if not sku:
                    raise ValidationError(f"Order {order_id}: line without SKU")
                lines.append(OrderLine(
                    sku=sku,
                    name=str(row['Product_Name']).strip() or sku,
                    quantity=_parse_quantity(row['Quantity'], order_id, sku),
                ))

            orders[order_id] = OrderData(
                order_id=order_id,
                lines=lines,
                status=status,
                is_ready=status.strip().lower() in READY_STATUSES,
            )

        return orders

    def get_order(self, order_id: str) -> OrderData:
        """
        Raises:
            ValidationError: Unknown order number
        """
        try:
            return self.orders[order_id]
        except KeyError:
            raise ValidationError(f"Order {order_id} is not in packing list '{self.list_name}'")

    @property
    def order_ids(self) -> List[str]:
        return list(self.orders)


def load_box_types(path) -> List[BoxSettings]:
    """
    Load box types from an .xlsx or .json file.

    Columns (see BOX_COLUMNS): Name, Marking, Barcode, QntFrom, QntTo,
    Overflow, Width, Height, Length, MaxLoadKg, OwnWeightKg. Only Name and
    QntTo are required; missing numbers default to 0.

    Returns:
        Box types sorted by capacity

    Raises:
        ValidationError: File missing/unreadable or a value is not a number
    """
    path = Path(path)
    logger.info(f"Loading box types from: {path}")

    try:
        if path.suffix.lower() == '.json':
            df = pd.read_json(path, orient='records', dtype=False)
        else:
            df = pd.read_excel(path)
    except Exception as e:
        logger.error(f"Failed to read box types: {e}")
        raise ValidationError(f"Could not read the box types file: {e}")

    missing_cols = [col for col in ('Name', 'QntTo') if col not in df.columns]
    if missing_cols:
        raise ValidationError(f"Missing required columns in box types: {missing_cols}")

    boxes = []
    for _, row in df.iterrows():
        values = {}
        for column, field_name in BOX_COLUMNS.items():
            if column not in df.columns:
                continue
            value = row[column]
            if value is None or (isinstance(value, float) and math.isnan(value)):
                continue
            if field_name in ('name', 'marking', 'barcode'):
                # Numeric barcodes come back from Excel as floats
                if isinstance(value, float) and value.is_integer():
                    value = int(value)
                values[field_name] = str(value)
                continue
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ValidationError(f"Box {row['Name']}: {column} '{value}' is not a number")
            values[field_name] = int(number) if field_name in BOX_INT_FIELDS else number

        boxes.append(BoxSettings(**values))

    boxes.sort(key=lambda b: b.capacity)
    logger.info(f"Loaded {len(boxes)} box types")
    return boxes
