# Overview: Pytest coverage for spreadsheet-style product import.

import pytest

from posledger.exceptions import ValidationError
from posledger.models import StockMovement
from posledger.services.import_service import import_products, normalize_import_row, parse_money
from posledger.services.products_service import list_products


class TestNormalizeRow:
    def test_header_aliases(self):
        payload = normalize_import_row({
            " Product Name ": "Masala Chai",
            "MRP": "₹ 1,200.50",
            "Qty": "24",
            "Item Code": "CHAI-500",
            "UOM": "box",
        })
        assert payload["name"] == "Masala Chai"
        assert payload["price"] == 1200.5
        assert payload["stock"] == 24
        assert payload["sku"] == "CHAI-500"
        assert payload["unit"] == "box"
        assert payload["category"] == "Uncategorized"

    def test_punctuated_headers(self):
        payload = normalize_import_row({
            "Product_Name": "Soap",
            "SellingPrice": "₹ 40",
            "Cost-Price": "25",
            "QTY.": 3,
            "item-code": "SOAP-75",
        })
        assert payload["name"] == "Soap"
        assert payload["price"] == 40.0
        assert payload["cost_price"] == 25.0
        assert payload["stock"] == 3
        assert payload["sku"] == "SOAP-75"

    def test_sku_falls_back_to_barcode(self):
        payload = normalize_import_row({"Name": "Soap", "Barcode": "8901030865278"})
        assert payload["sku"] == "8901030865278"

    def test_generated_sku(self):
        payload = normalize_import_row({"Name": "Soap"})
        assert payload["sku"].startswith("GEN-")

    def test_blank_row(self):
        assert normalize_import_row({"Name": "  ", "Price": 10}) is None

    @pytest.mark.parametrize("raw,expected", [("abc", 0), (None, 0), (12, 12), ("INR 45", 45.0)])
    def test_parse_money(self, raw, expected):
        assert parse_money(raw) == expected


class TestImportProducts:
    def test_rows_are_independent(self, db_session, seller_a):
        result = import_products(seller_a.id, [
            {"Name": "Tea 250g", "Price": 95, "Stock": 12, "SKU": "TEA-250"},
            {"Name": "", "Price": 10},
            {"Name": "Tea Duplicate", "Price": 90, "SKU": "TEA-250"},
            {"Name": "Sugar 1kg", "Price": "48", "Stock": "-3"},
            "not a row",
            {"Name": "Salt 1kg", "Price": 20},
        ])

        assert [p["name"] for p in result["created"]] == ["Tea 250g", "Salt 1kg"]
        assert result["skipped"] == [2]
        assert [(f["row"], f["kind"]) for f in result["failed"]] == [
            (3, "DuplicateSku"),
            (4, "ValidationError"),
            (5, "ValidationError"),
        ]
        assert list_products(seller_a.id)["count"] == 2

    def test_opening_stock_movement(self, db_session, seller_a):
        result = import_products(seller_a.id, [
            {"Name": "Tea 250g", "Price": 95, "Stock": 12},
            {"Name": "Salt 1kg", "Price": 20},
        ])

        movements = db_session.query(StockMovement).all()
        assert len(movements) == 1
        assert movements[0].product_id == result["created"][0]["id"]
        assert movements[0].reason == "IMPORT"
        assert movements[0].quantity_delta == 12

    def test_rows_must_be_a_list(self, db_session, seller_a):
        with pytest.raises(ValidationError):
            import_products(seller_a.id, {"Name": "Tea"})
