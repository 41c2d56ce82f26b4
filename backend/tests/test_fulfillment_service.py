# Overview: Pytest coverage for order placement, cancellation and the two fulfillment modes.

"""
Fulfillment Tests

Covers:
- place_order debits every line and snapshots product data
- Availability is checked before anything is written
- atomic mode rolls back the whole order when a debit loses the race
- per_line mode keeps the invoice and flags it for reconciliation
- Cancelling (status or soft delete) restores stock exactly once
- Restoring a deleted invoice debits again
- Estimates never move stock
"""

import logging
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from posledger.exceptions import (
    InsufficientStockError,
    InvalidStatusTransitionError,
    NotFoundError,
    PartialFulfillmentError,
    ValidationError,
)
from posledger.models import Invoice, InvoiceItem, StockMovement
from posledger.services import fulfillment_service, invoice_service
from posledger.services.fulfillment_service import (
    bulk_delete_invoices,
    delete_invoice,
    place_order,
    restore_invoice,
    update_invoice,
)
from posledger.services.inventory_service import adjust_stock, get_available_stock
from posledger.services.products_service import (
    create_product,
    restore_product,
    soft_delete_product,
    update_product,
)

from conftest import order_payload, product_payload


class TestPlaceOrder:
    """Order placement debits stock and keeps an immutable snapshot."""

    def test_place_order_debits_stock(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))

        assert invoice.id is not None
        assert invoice.stock_applied is True
        assert invoice.items[0].stock_applied is True
        assert invoice.items[0].total == Decimal("360")
        assert get_available_stock(seller_a.id, product_a.id) == 7

        movement = db_session.query(StockMovement).filter_by(invoice_id=invoice.id).one()
        assert movement.reason == "SALE"
        assert movement.quantity_delta == -3

    def test_variant_line_debits_variant_and_total(self, db_session, seller_a, variant_product_a):
        large = variant_product_a.variants[1]
        invoice = place_order(seller_a.id, order_payload([(variant_product_a.id, large.id, 2, 549)]))

        item = invoice.items[0]
        assert item.variant_name == "Large"
        assert item.sku == "TSHIRT-L"
        assert item.barcode == "890000000002"
        assert get_available_stock(seller_a.id, variant_product_a.id, large.id) == 1
        assert get_available_stock(seller_a.id, variant_product_a.id) == 6

    def test_snapshot_survives_product_edit(self, db_session, seller_a):
        product = create_product(seller_a.id, product_payload(sku="P", price=50))
        invoice = place_order(seller_a.id, order_payload([(product.id, None, 3, 50)]))

        update_product(seller_a.id, product.id, {"price": 75, "name": "Renamed"})

        reread = invoice_service.get_invoice(seller_a.id, invoice.id).to_dict()
        assert reread["items"][0]["price"] == 50
        assert reread["items"][0]["total"] == 150
        assert reread["items"][0]["name"] == "Basmati Rice 1kg"

    def test_insufficient_stock_writes_nothing(self, db_session, seller_a, product_a):
        with pytest.raises(InsufficientStockError) as exc:
            place_order(seller_a.id, order_payload([(product_a.id, None, 11, 120)]))

        assert exc.value.details["available"] == 10
        assert db_session.query(Invoice).count() == 0
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_same_unit_on_two_lines_is_aggregated(self, db_session, seller_a, product_a):
        with pytest.raises(InsufficientStockError):
            place_order(seller_a.id, order_payload([
                (product_a.id, None, 6, 120),
                (product_a.id, None, 6, 120),
            ]))
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_unknown_product(self, db_session, seller_a):
        with pytest.raises(NotFoundError):
            place_order(seller_a.id, order_payload([(99999, None, 1, 10)]))

    def test_other_sellers_product(self, db_session, seller_b, product_a):
        with pytest.raises(NotFoundError):
            place_order(seller_b.id, order_payload([(product_a.id, None, 1, 10)]))

    def test_deleted_product_cannot_be_sold(self, db_session, seller_a, product_a):
        soft_delete_product(seller_a.id, product_a.id)
        with pytest.raises(NotFoundError):
            place_order(seller_a.id, order_payload([(product_a.id, None, 1, 10)]))

    def test_variant_required_for_variant_product(self, db_session, seller_a, variant_product_a):
        with pytest.raises(ValidationError):
            place_order(seller_a.id, order_payload([(variant_product_a.id, None, 1, 499)]))

    def test_empty_cart(self, db_session, seller_a):
        with pytest.raises(ValidationError):
            place_order(seller_a.id, order_payload([]))

    def test_non_positive_quantity(self, db_session, seller_a, product_a):
        with pytest.raises(ValidationError):
            place_order(seller_a.id, order_payload([(product_a.id, None, 0, 120)]))

    def test_estimate_moves_no_stock(self, db_session, seller_a, product_a):
        invoice = place_order(
            seller_a.id,
            order_payload([(product_a.id, None, 50, 120)], type="Estimate"),
        )

        assert invoice.stock_applied is False
        assert get_available_stock(seller_a.id, product_a.id) == 10

        delete_invoice(seller_a.id, invoice.id)
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_payments_set_status_and_balance(self, db_session, seller_a, product_a):
        invoice = place_order(
            seller_a.id,
            order_payload([(product_a.id, None, 1, 120)], payments=[{"amount": 20}]),
        )
        assert invoice.status == "Partially Paid"
        assert invoice.balance == Decimal("100")


class TestAtomicMode:
    def test_lost_race_rolls_back_whole_order(self, db_session, seller_a, product_a, monkeypatch):
        """A debit failing after the availability check leaves no invoice behind."""
        other = create_product(seller_a.id, product_payload(sku="OTHER", stock=5))

        # Simulate a concurrent sale draining the second line between check and debit
        original = fulfillment_service._check_availability

        def check_then_drain(seller_id, lines):
            original(seller_id, lines)
            adjust_stock(seller_id, other.id, None, -5)

        monkeypatch.setattr(fulfillment_service, "_check_availability", check_then_drain)

        with pytest.raises(InsufficientStockError):
            place_order(seller_a.id, order_payload([
                (product_a.id, None, 2, 120),
                (other.id, None, 1, 120),
            ]))

        assert db_session.query(Invoice).count() == 0
        assert get_available_stock(seller_a.id, product_a.id) == 10
        assert get_available_stock(seller_a.id, other.id) == 0


class TestPerLineMode:
    def test_partial_failure_keeps_invoice_and_flags_it(self, db_session, app, seller_a, product_a, monkeypatch, caplog):
        app.config["ORDER_FULFILLMENT_MODE"] = "per_line"
        other = create_product(seller_a.id, product_payload(sku="OTHER", stock=5))

        original = fulfillment_service._check_availability

        def check_then_drain(seller_id, lines):
            original(seller_id, lines)
            adjust_stock(seller_id, other.id, None, -5)

        monkeypatch.setattr(fulfillment_service, "_check_availability", check_then_drain)

        with caplog.at_level(logging.ERROR, logger=app.logger.name):
            with pytest.raises(PartialFulfillmentError) as exc:
                place_order(seller_a.id, order_payload([
                    (product_a.id, None, 2, 120),
                    (other.id, None, 1, 120),
                ]))

        err = exc.value
        assert err.kind == "PartialFulfillmentInconsistency"
        assert err.status_code == 409
        assert len(err.failed_lines) == 1
        assert err.failed_lines[0]["product_id"] == other.id
        assert err.failed_lines[0]["kind"] == "InsufficientStock"
        assert "Partial fulfillment" in caplog.text

        invoice = db_session.get(Invoice, err.invoice_id)
        assert invoice.needs_reconciliation is True
        assert [i.stock_applied for i in invoice.items] == [True, False]
        assert get_available_stock(seller_a.id, product_a.id) == 8

        flagged = invoice_service.list_invoices_needing_reconciliation(seller_a.id)
        assert [i.id for i in flagged] == [invoice.id]

    def test_cancelling_partial_invoice_credits_only_debited_lines(self, db_session, app, seller_a, product_a, monkeypatch):
        app.config["ORDER_FULFILLMENT_MODE"] = "per_line"
        other = create_product(seller_a.id, product_payload(sku="OTHER", stock=5))

        original = fulfillment_service._check_availability

        def check_then_drain(seller_id, lines):
            original(seller_id, lines)
            adjust_stock(seller_id, other.id, None, -5)

        monkeypatch.setattr(fulfillment_service, "_check_availability", check_then_drain)

        with pytest.raises(PartialFulfillmentError) as exc:
            place_order(seller_a.id, order_payload([
                (product_a.id, None, 2, 120),
                (other.id, None, 1, 120),
            ]))

        delete_invoice(seller_a.id, exc.value.invoice_id)

        assert get_available_stock(seller_a.id, product_a.id) == 10
        assert get_available_stock(seller_a.id, other.id) == 0

    def test_database_error_on_a_line_is_reported(self, db_session, app, seller_a, product_a, monkeypatch):
        app.config["ORDER_FULFILLMENT_MODE"] = "per_line"
        other = create_product(seller_a.id, product_payload(sku="OTHER", stock=5))

        original = fulfillment_service.adjust_stock
        attempts = []

        def locked_for_other(seller_id, product_id, variant_id, delta, **kwargs):
            if product_id == other.id:
                attempts.append(delta)
                raise OperationalError("UPDATE products", {}, Exception("database is locked"))
            return original(seller_id, product_id, variant_id, delta, **kwargs)

        monkeypatch.setattr(fulfillment_service, "adjust_stock", locked_for_other)
        monkeypatch.setattr("posledger.services.concurrency.time.sleep", lambda seconds: None)

        with pytest.raises(PartialFulfillmentError) as exc:
            place_order(seller_a.id, order_payload([
                (product_a.id, None, 2, 120),
                (other.id, None, 1, 120),
            ]))

        failed = exc.value.failed_lines
        assert len(attempts) == 3
        assert [(f["index"], f["product_id"], f["kind"]) for f in failed] == [(1, other.id, "DatabaseError")]
        assert "database is locked" in failed[0]["error"]

        invoice = db_session.get(Invoice, exc.value.invoice_id)
        assert invoice.needs_reconciliation is True
        assert [i.stock_applied for i in invoice.items] == [True, False]
        assert get_available_stock(seller_a.id, product_a.id) == 8
        assert get_available_stock(seller_a.id, other.id) == 5

    def test_clean_order_in_per_line_mode(self, db_session, app, seller_a, product_a):
        app.config["ORDER_FULFILLMENT_MODE"] = "per_line"
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 4, 120)]))

        assert invoice.needs_reconciliation is False
        assert invoice.stock_applied is True
        assert get_available_stock(seller_a.id, product_a.id) == 6


class TestCancellation:
    """Placing then cancelling restores the pre-order stock."""

    def test_delete_restores_stock(self, db_session, seller_a, product_a, variant_product_a):
        small = variant_product_a.variants[0]
        invoice = place_order(seller_a.id, order_payload([
            (product_a.id, None, 3, 120),
            (variant_product_a.id, small.id, 2, 499),
        ]))

        delete_invoice(seller_a.id, invoice.id)

        assert get_available_stock(seller_a.id, product_a.id) == 10
        assert get_available_stock(seller_a.id, variant_product_a.id, small.id) == 5
        assert get_available_stock(seller_a.id, variant_product_a.id) == 8
        assert invoice_service.list_invoices(seller_a.id)["count"] == 0

    def test_cancel_status_restores_stock_once(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))

        update_invoice(seller_a.id, invoice.id, {"status": "Cancelled"})
        assert get_available_stock(seller_a.id, product_a.id) == 10

        # Deleting the cancelled invoice must not credit a second time
        delete_invoice(seller_a.id, invoice.id)
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_refund_restores_stock(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        update_invoice(seller_a.id, invoice.id, {"status": "Refunded"})
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_terminal_status_is_final(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        update_invoice(seller_a.id, invoice.id, {"status": "Voided"})

        with pytest.raises(InvalidStatusTransitionError):
            update_invoice(seller_a.id, invoice.id, {"status": "Paid"})
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_restore_uses_snapshot_after_product_edit(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 4, 120)]))
        update_product(seller_a.id, product_a.id, {"price": 999, "name": "Premium Rice"})

        delete_invoice(seller_a.id, invoice.id)
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_credit_to_deleted_product_is_a_logged_no_op(self, db_session, app, seller_a, product_a, caplog):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 4, 120)]))
        soft_delete_product(seller_a.id, product_a.id)

        with caplog.at_level(logging.WARNING, logger=app.logger.name):
            delete_invoice(seller_a.id, invoice.id)

        assert "Stock credit skipped" in caplog.text
        deleted = invoice_service.get_invoice(seller_a.id, invoice.id, include_deleted=True)
        assert deleted.is_deleted is True
        assert deleted.items[0].stock_reversed is False

    def test_credit_to_removed_variant_is_a_no_op(self, db_session, seller_a, variant_product_a):
        small, large = variant_product_a.variants
        invoice = place_order(seller_a.id, order_payload([(variant_product_a.id, large.id, 1, 549)]))

        update_product(seller_a.id, variant_product_a.id, {
            "variants": [{"id": small.id, "name": "Small", "price": 499, "stock": 5}],
        })

        delete_invoice(seller_a.id, invoice.id)
        assert get_available_stock(seller_a.id, variant_product_a.id) == 5

    def test_credit_after_product_gained_variants_is_a_logged_no_op(self, db_session, app, seller_a, product_a, caplog):
        deleted = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        cancelled = place_order(seller_a.id, order_payload([(product_a.id, None, 2, 120)]))
        update_product(seller_a.id, product_a.id, {
            "variants": [{"name": "Small", "price": 60, "stock": 4}],
        })

        with caplog.at_level(logging.WARNING, logger=app.logger.name):
            delete_invoice(seller_a.id, deleted.id)
            update_invoice(seller_a.id, cancelled.id, {"status": "Cancelled"})

        assert "now has variants" in caplog.text
        assert get_available_stock(seller_a.id, product_a.id) == 4
        assert db_session.query(StockMovement).filter_by(reason="SALE_REVERSAL").count() == 0

        for invoice_id in (deleted.id, cancelled.id):
            invoice = invoice_service.get_invoice(seller_a.id, invoice_id, include_deleted=True)
            assert invoice.items[0].stock_reversed is False
        assert invoice_service.get_invoice(seller_a.id, cancelled.id).status == "Cancelled"

    def test_product_deleted_during_credit_is_a_logged_no_op(
        self, db_session, app, seller_a, product_a, monkeypatch, caplog
    ):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 4, 120)]))
        soft_delete_product(seller_a.id, product_a.id)
        # The existence check ran before the delete landed
        monkeypatch.setattr(fulfillment_service, "_restock_skip_reason", lambda *args: None)

        with caplog.at_level(logging.WARNING, logger=app.logger.name):
            delete_invoice(seller_a.id, invoice.id)

        assert "Stock credit skipped" in caplog.text
        deleted = invoice_service.get_invoice(seller_a.id, invoice.id, include_deleted=True)
        assert deleted.is_deleted is True
        assert deleted.items[0].stock_reversed is False

        restore_product(seller_a.id, product_a.id)
        assert get_available_stock(seller_a.id, product_a.id) == 6

    def test_bulk_delete(self, db_session, seller_a, seller_b, product_a):
        first = place_order(seller_a.id, order_payload([(product_a.id, None, 1, 120)]))
        second = place_order(seller_a.id, order_payload([(product_a.id, None, 2, 120)]))

        result = bulk_delete_invoices(seller_a.id, [first.id, second.id, 424242])

        assert result == {"deleted": [first.id, second.id], "not_found": [424242]}
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_delete_other_sellers_invoice(self, db_session, seller_a, seller_b, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 1, 120)]))
        with pytest.raises(NotFoundError):
            delete_invoice(seller_b.id, invoice.id)
        assert get_available_stock(seller_a.id, product_a.id) == 9


class TestRestoreInvoice:
    def test_restore_debits_again(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        delete_invoice(seller_a.id, invoice.id)

        restored = restore_invoice(seller_a.id, invoice.id)

        assert restored.is_deleted is False
        assert restored.stock_restored_at is None
        assert get_available_stock(seller_a.id, product_a.id) == 7

        # And it can be cancelled again afterwards
        delete_invoice(seller_a.id, invoice.id)
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_restore_without_stock_stays_deleted(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        delete_invoice(seller_a.id, invoice.id)
        adjust_stock(seller_a.id, product_a.id, None, -9)

        with pytest.raises(InsufficientStockError):
            restore_invoice(seller_a.id, invoice.id)

        assert invoice_service.get_invoice(seller_a.id, invoice.id, include_deleted=True).is_deleted is True
        assert get_available_stock(seller_a.id, product_a.id) == 1

    def test_restore_skips_lines_never_credited(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        soft_delete_product(seller_a.id, product_a.id)
        delete_invoice(seller_a.id, invoice.id)

        restore_product(seller_a.id, product_a.id)
        restore_invoice(seller_a.id, invoice.id)

        # The sale's debit was never credited, so nothing is taken twice
        assert get_available_stock(seller_a.id, product_a.id) == 7

    def test_restore_cancelled_invoice_keeps_stock_credited(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        update_invoice(seller_a.id, invoice.id, {"status": "Cancelled"})
        delete_invoice(seller_a.id, invoice.id)

        restore_invoice(seller_a.id, invoice.id)
        assert get_available_stock(seller_a.id, product_a.id) == 10

    def test_restore_live_invoice_is_not_found(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 1, 120)]))
        with pytest.raises(NotFoundError):
            restore_invoice(seller_a.id, invoice.id)


class TestInvoiceItemsAreHistory:
    def test_items_table_untouched_by_cancel(self, db_session, seller_a, product_a):
        invoice = place_order(seller_a.id, order_payload([(product_a.id, None, 3, 120)]))
        delete_invoice(seller_a.id, invoice.id)

        item = db_session.query(InvoiceItem).filter_by(invoice_id=invoice.id).one()
        assert item.quantity == 3
        assert item.price == Decimal("120")
