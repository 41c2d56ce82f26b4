# Overview: Pytest coverage for the Flask CLI command groups.

from sqlalchemy import update

from posledger.models import Invoice, Product, Seller


class TestSellerCommands:
    def test_create_and_list(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["sellers", "create", "--name", "Corner Store"])
        assert "PASS Created seller: Corner Store" in result.output
        assert db_session.query(Seller).filter_by(name="Corner Store").count() == 1

        result = runner.invoke(args=["sellers", "list"])
        assert "Corner Store" in result.output

    def test_blank_name(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["sellers", "create", "--name", "  "])
        assert "FAIL" in result.output
        assert db_session.query(Seller).count() == 0


class TestReconcileCommand:
    def test_clean(self, app, db_session, seller_a, variant_product_a):
        result = app.test_cli_runner().invoke(args=["inventory", "reconcile"])
        assert "PASS No stock drift found" in result.output
        assert "PASS No invoices need reconciliation" in result.output

    def test_fix_drift(self, app, db_session, seller_a, variant_product_a):
        db_session.execute(update(Product).where(Product.id == variant_product_a.id).values(stock=1))
        db_session.commit()

        result = app.test_cli_runner().invoke(
            args=["inventory", "reconcile", "--seller-id", str(seller_a.id), "--fix"]
        )

        assert "WARN 1 product(s)" in result.output
        assert "PASS Fixed 1 product(s)" in result.output
        assert db_session.get(Product, variant_product_a.id).stock == 8

    def test_lists_flagged_invoices(self, app, db_session, seller_a):
        invoice = Invoice(
            seller_id=seller_a.id,
            customer_name="Walk-in Customer",
            subtotal=0,
            total=0,
            needs_reconciliation=True,
        )
        db_session.add(invoice)
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["inventory", "reconcile"])
        assert f"invoice {invoice.id}" in result.output
