"""
Product catalog: unit weights and set composition.

The catalog file (Excel, CSV or JSON) has one row per product:

    SKU | Name | Weight | CategoryId | ManualOrder | Set
    --------------------------------------------------------------
    B-01| Borscht | 420 | 1 | 10 |
    P-02| Pilaf   |     | 2 | 20 |
    S-10| Lunch set |   |   |    | [{"id": "B-01", "quantity": 1}, {"id": "P-02", "quantity": 1}]

Weight is the unit weight in grams. Products without a weight fall back to the
category default: 420 g for category 1 (first courses), 330 g otherwise.
Set is a JSON list of components; an order line for a set is replaced by its
components when the checklist is built.
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from checklist_model import DEFAULT_MANUAL_ORDER, ChecklistItem, make_product
from exceptions import CatalogError, ValidationError
from logger import get_logger

logger = get_logger(__name__)

FIRST_COURSE_CATEGORY = 1
FIRST_COURSE_WEIGHT_G = 420
DEFAULT_WEIGHT_G = 330
# Used when the product is not in the catalog at all
UNKNOWN_PORTION_WEIGHT_KG = 0.33

REQUIRED_COLUMNS = ['SKU', 'Name']


@dataclass(frozen=True)
class Product:
    """
    One catalog row.

    Attributes:
        sku: Product SKU (also the scanned code)
        name: Display name
        weight_grams: Unit weight in grams, None when unknown
        category_id: Category used for the default weight
        manual_order: Sort key on the pick list
        set_components: (component SKU, quantity per set) for product sets
    """
    sku: str
    name: str
    weight_grams: Optional[float] = None
    category_id: Optional[int] = None
    manual_order: int = DEFAULT_MANUAL_ORDER
    set_components: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)

    @property
    def is_set(self) -> bool:
        return bool(self.set_components)


def calculate_expected_weight(product: Product, quantity: int) -> float:
    """
    Expected weight of `quantity` units of the product in kilograms.

    Examples:
        weight 500 g, qty 2      -> 1.0
        no weight, category 1    -> 0.42 per unit
        no weight, other category -> 0.33 per unit
    """
    if product.weight_grams and product.weight_grams > 0:
        return product.weight_grams * quantity / 1000

    default_g = FIRST_COURSE_WEIGHT_G if product.category_id == FIRST_COURSE_CATEGORY else DEFAULT_WEIGHT_G
    return default_g * quantity / 1000


def _parse_optional_number(value, column: str, sku: str) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Product {sku}: {column} '{value}' is not a number")
    if math.isnan(number):
        return None
    return number


def _parse_set(value, sku: str) -> Tuple[Tuple[str, int], ...]:
    """Parse the Set column; malformed entries are skipped with a warning."""
    if value is None or (isinstance(value, float) and math.isnan(value)) or not str(value).strip():
        return ()

    try:
        raw = json.loads(value) if isinstance(value, str) else value
    except json.JSONDecodeError as e:
        raise ValidationError(f"Product {sku}: Set is not valid JSON: {e}")

    components = []
    for entry in raw or []:
        if not isinstance(entry, dict) or not entry.get('id') or not entry.get('quantity'):
            logger.warning(f"Set {sku}: skipping invalid component {entry!r}")
            continue
        try:
            components.append((str(entry['id']), int(entry['quantity'])))
        except (TypeError, ValueError):
            logger.warning(f"Set {sku}: skipping component with bad quantity {entry!r}")

    if raw and not components:
        logger.warning(f"Set {sku} has no valid components, treating it as a regular product")
    return tuple(components)


class ProductCatalog:
    """
    SKU -> Product lookup with set expansion.

    A catalog that was never loaded (or failed to load) raises CatalogError on
    every lookup, so callers can tell "unknown product" from "no catalog".
    """

    def __init__(self, products: Optional[Dict[str, Product]] = None):
        self._products: Optional[Dict[str, Product]] = dict(products) if products is not None else None
        self.source: Optional[Path] = None

    @property
    def is_loaded(self) -> bool:
        return self._products is not None

    def __len__(self) -> int:
        return len(self._products or {})

    def load(self, path) -> int:
        """
        Load the catalog from an .xlsx, .csv or .json file.

        Args:
            path: Catalog file

        Returns:
            Number of products loaded

        Raises:
            CatalogError: File missing or unreadable
            ValidationError: Required columns missing or a row is malformed
        """
        path = Path(path)
        logger.info(f"Loading product catalog from: {path}")

        if not path.exists():
            raise CatalogError(f"Catalog file not found: {path}")

        try:
            if path.suffix.lower() == '.json':
                df = pd.read_json(path, orient='records', dtype=False)
            elif path.suffix.lower() == '.csv':
                df = pd.read_csv(path, dtype=str)
            else:
                df = pd.read_excel(path, dtype=str)
        except Exception as e:
            logger.error(f"Failed to read catalog: {e}")
            raise CatalogError(f"Could not read the catalog file: {e}")

        missing_cols = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing_cols:
            raise ValidationError(f"Missing required columns in catalog: {missing_cols}")

        df = df.astype(object).where(pd.notna(df), None)

        products: Dict[str, Product] = {}
        for _, row in df.iterrows():
            sku = str(row['SKU'] or '').strip()
            if not sku:
                logger.warning("Catalog row without SKU skipped")
                continue

            weight = _parse_optional_number(row.get('Weight'), 'Weight', sku)
            category = _parse_optional_number(row.get('CategoryId'), 'CategoryId', sku)
            manual_order = _parse_optional_number(row.get('ManualOrder'), 'ManualOrder', sku)

            products[sku] = Product(
                sku=sku,
                name=str(row['Name'] or sku),
                weight_grams=weight,
                category_id=int(category) if category is not None else None,
                manual_order=int(manual_order) if manual_order is not None else DEFAULT_MANUAL_ORDER,
                set_components=_parse_set(row.get('Set'), sku),
            )

        self._products = products
        self.source = path
        logger.info(f"Product catalog loaded: {len(products)} products")
        return len(products)

    def get(self, sku: str) -> Optional[Product]:
        """
        Look up a product.

        Raises:
            CatalogError: The catalog is not loaded
        """
        if self._products is None:
            raise CatalogError("Product catalog is not loaded")
        return self._products.get(str(sku).strip())

    def expand_order_items(self, lines) -> List[ChecklistItem]:
        """
        Turn order lines into checklist products.

        - Sets are replaced by their components (quantity multiplied)
        - Lines resolving to the same name are merged and their weight recomputed
        - Products missing from the catalog weigh 0.33 kg per portion
        - Components missing from the catalog are named "Unknown product (<sku>)"

        Ids are assigned "1", "2", ... in first-seen order.

        Args:
            lines: Iterable of objects with sku, name and quantity attributes

        Returns:
            Checklist products not yet placed in boxes

        Raises:
            CatalogError: The catalog is not loaded
        """
        merged: Dict[str, dict] = {}

        def add(name: str, sku: str, quantity: int, product: Optional[Product]):
            entry = merged.get(name)
            if entry is None:
                entry = merged[name] = {
                    'sku': sku,
                    'quantity': 0,
                    'product': product,
                    'manual_order': product.manual_order if product else DEFAULT_MANUAL_ORDER,
                }
            entry['quantity'] += quantity

        for line in lines:
            product = self.get(line.sku)

            if product is None:
                logger.warning(f"Product {line.sku} not in catalog, using {UNKNOWN_PORTION_WEIGHT_KG} kg per portion")
                add(line.name, line.sku, line.quantity, None)
                continue

            if not product.is_set:
                add(line.name or product.name, line.sku, line.quantity, product)
                continue

            for component_sku, per_set in product.set_components:
                component = self.get(component_sku)
                name = component.name if component else f"Unknown product ({component_sku})"
                add(name, component_sku, line.quantity * per_set, component)

        items = []
        for index, (name, entry) in enumerate(merged.items()):
            product = entry['product']
            quantity = entry['quantity']
            if product is not None:
                weight = calculate_expected_weight(product, quantity)
            else:
                weight = quantity * UNKNOWN_PORTION_WEIGHT_KG
            items.append(make_product(
                item_id=str(index + 1),
                name=name,
                quantity=quantity,
                expected_weight=weight,
                sku=entry['sku'],
                manual_order=entry['manual_order'],
            ))

        logger.debug(f"Expanded {len(items)} checklist products")
        return items
