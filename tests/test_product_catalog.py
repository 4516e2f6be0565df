"""
Tests for product_catalog: loading, default weights and set expansion.
"""

import json

import pandas as pd
import pytest

from exceptions import CatalogError, ValidationError
from order_loader import OrderLine
from product_catalog import Product, ProductCatalog, calculate_expected_weight


@pytest.fixture
def catalog():
    return ProductCatalog({
        'B-01': Product('B-01', 'Borscht', weight_grams=420, category_id=1, manual_order=10),
        'P-02': Product('P-02', 'Pilaf', category_id=2, manual_order=20),
        'S-10': Product('S-10', 'Lunch set', set_components=(('B-01', 1), ('P-02', 2))),
        'S-11': Product('S-11', 'Mystery set', set_components=(('X-99', 1),)),
    })


class TestExpectedWeight:

    def test_explicit_weight(self):
        assert calculate_expected_weight(Product('A', 'A', weight_grams=500), 2) == pytest.approx(1.0)

    def test_first_course_default(self):
        assert calculate_expected_weight(Product('A', 'A', category_id=1), 1) == pytest.approx(0.42)

    def test_other_category_default(self):
        assert calculate_expected_weight(Product('A', 'A', category_id=3), 2) == pytest.approx(0.66)


class TestExpandOrderItems:

    def test_regular_products(self, catalog):
        items = catalog.expand_order_items([OrderLine('B-01', 'Borscht', 2), OrderLine('P-02', 'Pilaf', 1)])
        assert [(i.id, i.name, i.quantity) for i in items] == [('1', 'Borscht', 2), ('2', 'Pilaf', 1)]
        assert items[0].expected_weight == pytest.approx(0.84)
        assert items[1].expected_weight == pytest.approx(0.33)
        assert items[0].manual_order == 10
        assert items[0].barcode == 'B-01'

    def test_set_expanded_and_merged(self, catalog):
        items = catalog.expand_order_items([OrderLine('B-01', 'Borscht', 1), OrderLine('S-10', 'Lunch set', 2)])
        by_name = {i.name: i for i in items}
        assert set(by_name) == {'Borscht', 'Pilaf'}
        assert by_name['Borscht'].quantity == 3
        assert by_name['Borscht'].expected_weight == pytest.approx(1.26)
        assert by_name['Pilaf'].quantity == 4

    def test_unknown_product(self, catalog):
        items = catalog.expand_order_items([OrderLine('Z-00', 'Compote', 3)])
        assert items[0].expected_weight == pytest.approx(0.99)
        assert items[0].sku == 'Z-00'

    def test_unknown_set_component(self, catalog):
        items = catalog.expand_order_items([OrderLine('S-11', 'Mystery set', 1)])
        assert items[0].name == 'Unknown product (X-99)'
        assert items[0].expected_weight == pytest.approx(0.33)

    def test_not_loaded(self):
        with pytest.raises(CatalogError):
            ProductCatalog().expand_order_items([OrderLine('B-01', 'Borscht', 1)])


class TestLoad:

    def test_load_excel(self, tmp_path):
        path = tmp_path / "catalog.xlsx"
        pd.DataFrame([
            {'SKU': 'B-01', 'Name': 'Borscht', 'Weight': 420, 'CategoryId': 1, 'ManualOrder': 10, 'Set': None},
            {'SKU': 'S-10', 'Name': 'Lunch set', 'Weight': None, 'CategoryId': None, 'ManualOrder': None,
             'Set': json.dumps([{'id': 'B-01', 'quantity': 2}, {'id': '', 'quantity': 1}])},
        ]).to_excel(path, index=False)

        catalog = ProductCatalog()
        assert catalog.load(path) == 2
        assert catalog.is_loaded
        assert len(catalog) == 2

        borscht = catalog.get('B-01')
        assert borscht.weight_grams == pytest.approx(420)
        assert borscht.category_id == 1
        assert borscht.manual_order == 10
        assert not borscht.is_set

        lunch = catalog.get('S-10')
        assert lunch.set_components == (('B-01', 2),)
        assert lunch.manual_order == 999

    def test_load_json(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([{'SKU': 'P-02', 'Name': 'Pilaf', 'CategoryId': 2}]), encoding='utf-8')
        catalog = ProductCatalog()
        catalog.load(path)
        assert catalog.get('P-02').weight_grams is None
        assert catalog.get('missing') is None

    def test_load_csv(self, tmp_path):
        path = tmp_path / "catalog.csv"
        path.write_text("SKU,Name,Weight\nB-01,Borscht,400\n", encoding='utf-8')
        catalog = ProductCatalog()
        catalog.load(path)
        assert catalog.get('B-01').weight_grams == pytest.approx(400)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogError):
            ProductCatalog().load(tmp_path / "nope.xlsx")

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "catalog.csv"
        path.write_text("Code,Weight\nB-01,400\n", encoding='utf-8')
        with pytest.raises(ValidationError):
            ProductCatalog().load(path)

    def test_bad_weight(self, tmp_path):
        path = tmp_path / "catalog.csv"
        path.write_text("SKU,Name,Weight\nB-01,Borscht,heavy\n", encoding='utf-8')
        with pytest.raises(ValidationError, match="not a number"):
            ProductCatalog().load(path)
