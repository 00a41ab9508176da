"""
Purchase booking tests: cart adds, checkout, quick-add and reconciliation.
"""

import pytest
from sqlalchemy.exc import OperationalError

from stockbook.models import (
    CylinderStock,
    ExpenseEntry,
    PriceCatalogEntry,
    PurchaseTransaction,
    PurchaseTransactionItem,
    RegulatorStock,
    StockApplication,
    StoveStock,
)
from stockbook.services import catalog_service, pricing_service, purchase_service
from stockbook.services.cart import PurchaseCart
from stockbook.services.catalog_service import CatalogWriteError, StockWriteError
from stockbook.services.purchase_service import (
    CommitError,
    PurchaseNotFoundError,
    add_to_cart,
    checkout,
    get_purchase,
    list_incomplete_purchases,
    quick_add,
    resume_purchase,
)
from stockbook.services.submissions import PurchaseSubmission
from stockbook.validation import ValidationError


def cylinder_counters(db_session):
    db_session.expire_all()
    return {
        (r.valve_size, r.weight): (r.refill_qty, r.packaged_qty, r.empty_qty)
        for r in db_session.query(CylinderStock).all()
    }


def locked(*args, **kwargs):
    raise OperationalError("INSERT", {}, Exception("database is locked"))


class TestAddToCart:
    def test_acme_cylinder_scenario(self, db_session, cart, acme_cylinders):
        """30 x 22mm + 20 x 20mm for 5000 gives two lines at 100 each."""
        result = add_to_cart(cart, "cylinder", acme_cylinders)

        assert result.unit_cost == 100
        assert [(l.valve_size, l.quantity, l.unit_cost) for l in cart.lines] == [
            ("22mm", 30, 100),
            ("20mm", 20, 100),
        ]
        assert cart.summary().total == 5000
        assert cart.lines[0].details == "12kg • 22mm • Refill"
        assert cart.lines[0].stock_counter == "refill_qty"
        assert db_session.query(CylinderStock).count() == 2

    def test_stock_is_untouched_until_checkout(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)
        assert set(cylinder_counters(db_session).values()) == {(0, 0, 0)}

    def test_syncs_company_cost(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)

        entries = db_session.query(PriceCatalogEntry).order_by(PriceCatalogEntry.id).all()
        # Both valve sizes share the brand's Refill entry
        assert len(entries) == 1
        assert entries[0].company_cost == 100
        assert entries[0].variant_label == "Refill"

    def test_reports_price_change(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)
        result = add_to_cart(cart, "cylinder", {**acme_cylinders, "lump_total": 6000})

        assert result.price_updates[0]["old_cost"] == 100
        assert result.price_updates[0]["new_cost"] == 120

    def test_all_zero_quantities_rejected(self, db_session, cart, acme_cylinders):
        with pytest.raises(ValidationError):
            add_to_cart(cart, "cylinder", {**acme_cylinders, "quantities": {"22mm": 0, "20mm": 0}})

        assert cart.is_empty
        assert db_session.query(CylinderStock).count() == 0

    @pytest.mark.parametrize("change", [
        {"lump_total": 0},
        {"lump_total": None},
        {"brand": "  "},
        {"weight": None},
        {"quantities": {"22mm": -1, "20mm": 5}},
        {"quantities": {"18mm": 5}},
        {"stock_type": "damaged"},
    ])
    def test_invalid_submissions_write_nothing(self, db_session, cart, acme_cylinders, change):
        with pytest.raises(ValidationError):
            add_to_cart(cart, "cylinder", {**acme_cylinders, **change})
        assert cart.is_empty
        assert db_session.query(CylinderStock).count() == 0

    def test_stove_lines(self, db_session, cart):
        add_to_cart(cart, "stove", {
            "brand": "Acme",
            "model": "HotPlate",
            "quantities": {"single": 2, "double": 1},
            "lump_total": 700,
        })

        assert [(l.name, l.details, l.burners, l.unit_cost) for l in cart.lines] == [
            ("Acme HotPlate", "Single Burner", 1, 233),
            ("Acme HotPlate", "Double Burner", 2, 233),
        ]
        names = {e.product_name for e in db_session.query(PriceCatalogEntry).all()}
        assert names == {"Acme HotPlate - Single Burner", "Acme HotPlate - Double Burner"}

    def test_regulator_lines(self, db_session, cart):
        add_to_cart(cart, "regulator", {
            "brand": "Acme",
            "quantities": {"20mm": 4},
            "lump_total": 1000,
        })

        line = cart.lines[0]
        assert (line.name, line.details, line.unit_cost) == ("Acme Regulator", "20mm Valve", 250)
        entry = db_session.query(PriceCatalogEntry).one()
        assert (entry.product_name, entry.variant_label) == ("Acme Regulator - 20mm", "20mm")

    def test_package_cylinders_use_package_counter(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", {**acme_cylinders, "stock_type": "package"})
        assert {l.stock_counter for l in cart.lines} == {"packaged_qty"}
        entry = db_session.query(PriceCatalogEntry).one()
        assert entry.variant_label == "Package"
        assert entry.package_price == 0

    def test_accepts_submission_object(self, db_session, cart):
        submission = PurchaseSubmission(
            category="regulator", brand="Acme", quantities={"22mm": 2}, lump_total=100,
        )
        add_to_cart(cart, "regulator", submission)
        assert cart.summary().total == 100

    def test_failed_sibling_does_not_block_others(self, db_session, cart, acme_cylinders, monkeypatch):
        real_resolve = catalog_service.resolve

        def flaky_resolve(category, attributes):
            if attributes["valve_size"] == "20mm":
                raise CatalogWriteError("write failed", category=category, identity=attributes)
            return real_resolve(category, attributes)

        monkeypatch.setattr(catalog_service, "resolve", flaky_resolve)

        result = add_to_cart(cart, "cylinder", acme_cylinders)

        assert [l.valve_size for l in cart.lines] == ["22mm"]
        assert result.failures[0]["identity"]["valve_size"] == "20mm"
        # Shared unit cost still comes from the whole submission
        assert cart.lines[0].unit_cost == 100

    def test_all_siblings_failing_raises(self, db_session, cart, acme_cylinders, monkeypatch):
        def failing_resolve(category, attributes):
            raise CatalogWriteError("write failed", category=category, identity=attributes)

        monkeypatch.setattr(catalog_service, "resolve", failing_resolve)

        with pytest.raises(CatalogWriteError):
            add_to_cart(cart, "cylinder", acme_cylinders)
        assert cart.is_empty

    def test_price_sync_failure_does_not_block_cart(self, db_session, cart, acme_cylinders, monkeypatch):
        monkeypatch.setattr(pricing_service, "find_entry", locked)

        add_to_cart(cart, "cylinder", acme_cylinders)

        assert cart.summary().total == 5000
        assert db_session.query(PriceCatalogEntry).count() == 0


class TestCheckout:
    def test_acme_checkout_scenario(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)

        result = checkout(cart, "Acme Gas Ltd.", "completed")

        assert result.total == 5000
        purchase = db_session.get(PurchaseTransaction, result.transaction_id)
        assert purchase.transaction_number == result.transaction_number
        assert purchase.supplier_name == "Acme Gas Ltd."
        assert (purchase.subtotal, purchase.total) == (5000, 5000)
        assert purchase.payment_status == "completed"
        assert purchase.payment_method == "cash"
        assert purchase.commit_state == "COMPLETE"
        assert purchase.completed_at is not None

        items = (
            db_session.query(PurchaseTransactionItem)
            .filter_by(transaction_id=purchase.id)
            .order_by(PurchaseTransactionItem.line_index)
            .all()
        )
        assert len(items) == 2
        assert [(i.quantity, i.unit_price, i.total_price) for i in items] == [(30, 100, 3000), (20, 100, 2000)]

        assert cylinder_counters(db_session) == {
            ("22mm", "12kg"): (30, 0, 0),
            ("20mm", "12kg"): (20, 0, 0),
        }

        expense = db_session.query(ExpenseEntry).one()
        assert expense.amount == 5000
        assert expense.category == "LPG Purchase"
        assert expense.transaction_id == purchase.id
        assert expense.description == f"{purchase.transaction_number}: Acme Gas Ltd. - 30× Acme, 20× Acme"

        assert cart.is_empty

    def test_numbers_are_sequential(self, db_session, acme_cylinders):
        numbers = []
        for _ in range(2):
            cart = PurchaseCart()
            add_to_cart(cart, "cylinder", acme_cylinders)
            numbers.append(checkout(cart, "Acme Gas Ltd.", "completed").transaction_number)

        assert numbers[0].startswith("POB-") and numbers[0].endswith("-0001")
        assert numbers[1].endswith("-0002")
        assert numbers[0][:-5] == numbers[1][:-5]

    def test_counters_add_to_existing_stock(self, db_session, cart, acme_cylinders):
        record_id = catalog_service.resolve("cylinder", {"brand": "Acme", "valve_size": "22mm", "weight": "12kg"})
        catalog_service.apply_stock_delta("cylinder", record_id, "refill_qty", 7)

        add_to_cart(cart, "cylinder", acme_cylinders)
        checkout(cart, "Acme Gas Ltd.", "completed")

        assert cylinder_counters(db_session)[("22mm", "12kg")] == (37, 0, 0)

    def test_supplier_falls_back_to_first_line(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)
        result = checkout(cart, "   ", "pending")

        purchase = db_session.get(PurchaseTransaction, result.transaction_id)
        assert purchase.supplier_name == "Acme"
        assert purchase.payment_status == "pending"

    def test_expense_category_majority(self, db_session, cart):
        add_to_cart(cart, "stove", {"brand": "Acme", "model": "X", "quantities": {"single": 1, "double": 1}, "lump_total": 100})
        add_to_cart(cart, "regulator", {"brand": "Acme", "quantities": {"22mm": 1}, "lump_total": 50})
        add_to_cart(cart, "cylinder", {"brand": "Acme", "weight": "12kg", "quantities": {"22mm": 9}, "lump_total": 900})

        checkout(cart, "Mixed Supplier", "completed")
        db_session.expire_all()

        expense = db_session.query(ExpenseEntry).one()
        assert expense.category == "Inventory Purchase"
        assert expense.amount == 100 + 50 + 900
        assert db_session.query(StoveStock).filter_by(qty=1).count() == 2
        assert db_session.query(RegulatorStock).one().qty == 1

    def test_empty_cart_rejected(self, db_session, cart):
        with pytest.raises(ValidationError):
            checkout(cart, "Acme Gas Ltd.", "completed")
        assert db_session.query(PurchaseTransaction).count() == 0

    def test_invalid_payment_status(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)
        with pytest.raises(ValidationError):
            checkout(cart, "Acme Gas Ltd.", "refunded")
        assert db_session.query(PurchaseTransaction).count() == 0
        assert not cart.is_empty

    def test_header_failure_leaves_nothing(self, db_session, cart, acme_cylinders, monkeypatch):
        add_to_cart(cart, "cylinder", acme_cylinders)
        monkeypatch.setattr(purchase_service, "next_daily_number", locked)

        with pytest.raises(CommitError) as exc_info:
            checkout(cart, "Acme Gas Ltd.", "completed")

        assert exc_info.value.step == "header"
        assert exc_info.value.step_index == 2
        assert exc_info.value.recorded is False
        assert db_session.query(PurchaseTransaction).count() == 0
        assert set(cylinder_counters(db_session).values()) == {(0, 0, 0)}
        assert cart.summary().total == 5000

    def test_stock_failure_is_recorded_and_resumable(self, db_session, cart, acme_cylinders, monkeypatch):
        add_to_cart(cart, "cylinder", acme_cylinders)

        real_apply = catalog_service.apply_stock_delta
        calls = []

        def fail_second_line(*args, **kwargs):
            calls.append(kwargs.get("line_index"))
            if kwargs.get("line_index") == 1:
                raise StockWriteError("write failed", category=args[0], record_id=args[1], counter=args[2])
            return real_apply(*args, **kwargs)

        monkeypatch.setattr(catalog_service, "apply_stock_delta", fail_second_line)

        with pytest.raises(CommitError) as exc_info:
            checkout(cart, "Acme Gas Ltd.", "completed")

        error = exc_info.value
        assert (error.step, error.step_index, error.recorded) == ("stock", 4, True)
        assert error.transaction_number.startswith("POB-")

        # Recorded, partially applied, cart kept
        assert not cart.is_empty
        purchase = db_session.get(PurchaseTransaction, error.transaction_id)
        assert purchase.commit_state == "INCOMPLETE"
        assert purchase.failed_step == "stock"
        assert db_session.query(PurchaseTransactionItem).count() == 2
        assert db_session.query(ExpenseEntry).count() == 0
        assert cylinder_counters(db_session) == {("22mm", "12kg"): (30, 0, 0), ("20mm", "12kg"): (0, 0, 0)}
        assert [p.id for p in list_incomplete_purchases()] == [error.transaction_id]

        monkeypatch.undo()
        result = resume_purchase(error.transaction_id)

        assert result.transaction_number == error.transaction_number
        assert cylinder_counters(db_session) == {("22mm", "12kg"): (30, 0, 0), ("20mm", "12kg"): (20, 0, 0)}
        assert db_session.query(StockApplication).count() == 2
        assert db_session.query(ExpenseEntry).count() == 1
        assert db_session.query(PurchaseTransactionItem).count() == 2
        assert list_incomplete_purchases() == []

    def test_expense_failure_then_repeated_checkout(self, db_session, cart, acme_cylinders, monkeypatch):
        """Checking out the same cart again resumes the recorded purchase."""
        add_to_cart(cart, "cylinder", acme_cylinders)
        monkeypatch.setattr(purchase_service, "record_purchase_expense", locked)

        with pytest.raises(CommitError) as exc_info:
            checkout(cart, "Acme Gas Ltd.", "completed")
        assert exc_info.value.step == "expense"
        assert exc_info.value.step_index == 5
        assert cylinder_counters(db_session)[("22mm", "12kg")] == (30, 0, 0)

        monkeypatch.undo()
        result = checkout(cart, "Acme Gas Ltd.", "completed")

        assert result.resumed is True
        assert result.transaction_id == exc_info.value.transaction_id
        assert db_session.query(PurchaseTransaction).count() == 1
        assert db_session.query(ExpenseEntry).count() == 1
        # Stock was applied exactly once across both attempts
        assert cylinder_counters(db_session) == {("22mm", "12kg"): (30, 0, 0), ("20mm", "12kg"): (20, 0, 0)}
        assert cart.is_empty
        assert result.notices == []

    def test_lines_added_after_failure_stay_in_cart(self, db_session, cart, acme_cylinders, monkeypatch):
        add_to_cart(cart, "cylinder", acme_cylinders)
        monkeypatch.setattr(purchase_service, "record_purchase_expense", locked)
        with pytest.raises(CommitError) as exc_info:
            checkout(cart, "Acme Gas Ltd.", "completed")
        monkeypatch.undo()

        add_to_cart(cart, "regulator", {"brand": "Acme", "quantities": {"22mm": 5}, "lump_total": 500})
        resumed = checkout(cart, "Acme Gas Ltd.", "completed")

        assert resumed.resumed is True
        assert resumed.transaction_id == exc_info.value.transaction_id
        assert resumed.total == 5000
        assert resumed.remaining_lines == 1
        assert "1 line(s) added" in resumed.notices[0]
        assert [line.category for line in cart.lines] == ["regulator"]
        db_session.expire_all()
        assert db_session.query(RegulatorStock).one().qty == 0

        # The leftover line books as a new purchase
        booked = checkout(cart, "Acme Gas Ltd.", "completed")

        assert booked.resumed is False
        assert booked.transaction_id != resumed.transaction_id
        assert booked.total == 500
        assert cart.is_empty
        db_session.expire_all()
        assert db_session.query(RegulatorStock).one().qty == 5
        assert db_session.query(PurchaseTransaction).count() == 2
        assert db_session.query(ExpenseEntry).count() == 2
        assert list_incomplete_purchases() == []

    def test_resume_reports_ignored_header_changes(self, db_session, cart, acme_cylinders, monkeypatch):
        add_to_cart(cart, "cylinder", acme_cylinders)
        monkeypatch.setattr(purchase_service, "record_purchase_expense", locked)
        with pytest.raises(CommitError):
            checkout(cart, "Acme Gas Ltd.", "completed")
        monkeypatch.undo()

        result = checkout(cart, "Other Supplier", "pending")

        purchase = db_session.get(PurchaseTransaction, result.transaction_id)
        assert (purchase.supplier_name, purchase.payment_status) == ("Acme Gas Ltd.", "completed")
        assert len(result.notices) == 2
        assert "'Other Supplier' ignored" in result.notices[0]
        assert "'pending' ignored" in result.notices[1]
        assert cart.is_empty

    def test_items_failure(self, db_session, cart, acme_cylinders, monkeypatch):
        add_to_cart(cart, "cylinder", acme_cylinders)

        def broken_items(purchase, lines):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(purchase_service, "_STEPS", (("items", broken_items),) + purchase_service._STEPS[1:])

        with pytest.raises(CommitError) as exc_info:
            checkout(cart, "Acme Gas Ltd.", "completed")

        assert (exc_info.value.step, exc_info.value.step_index) == ("items", 3)
        purchase = db_session.get(PurchaseTransaction, exc_info.value.transaction_id)
        assert purchase.commit_state == "INCOMPLETE"
        assert "disk I/O error" in purchase.last_error
        assert set(cylinder_counters(db_session).values()) == {(0, 0, 0)}

    def test_resume_complete_purchase_changes_nothing(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)
        result = checkout(cart, "Acme Gas Ltd.", "completed")

        resume_purchase(result.transaction_id)

        assert cylinder_counters(db_session)[("22mm", "12kg")] == (30, 0, 0)
        assert db_session.query(ExpenseEntry).count() == 1

    def test_resume_unknown_purchase(self, db_session):
        with pytest.raises(PurchaseNotFoundError):
            resume_purchase(424242)

    def test_get_purchase_with_items(self, db_session, cart, acme_cylinders):
        add_to_cart(cart, "cylinder", acme_cylinders)
        result = checkout(cart, "Acme Gas Ltd.", "completed")

        purchase = get_purchase(result.transaction_id)
        assert [item.line_index for item in purchase.items] == [0, 1]
        assert len(purchase.lines) == 2

    def test_exchange_empties_on_refill(self, app, db_session, cart, acme_cylinders, monkeypatch):
        record_id = catalog_service.resolve("cylinder", {"brand": "Acme", "valve_size": "22mm", "weight": "12kg"})
        catalog_service.apply_stock_delta("cylinder", record_id, "empty_qty", 40)
        monkeypatch.setitem(app.config, "EXCHANGE_EMPTIES_ON_REFILL", True)

        add_to_cart(cart, "cylinder", acme_cylinders)
        checkout(cart, "Acme Gas Ltd.", "completed")

        assert cylinder_counters(db_session)[("22mm", "12kg")] == (30, 0, 10)


class TestQuickAdd:
    def test_matches_checkout_counters(self, db_session, acme_cylinders):
        """Quick-add and cart checkout leave identical counters."""
        cart = PurchaseCart()
        add_to_cart(cart, "cylinder", acme_cylinders)
        checkout(cart, "Acme Gas Ltd.", "completed")
        after_checkout = cylinder_counters(db_session)

        for table in (ExpenseEntry, StockApplication, PurchaseTransactionItem, PurchaseTransaction, PriceCatalogEntry, CylinderStock):
            db_session.query(table).delete()
        db_session.commit()

        submission = {k: v for k, v in acme_cylinders.items() if k != "lump_total"}
        applied = quick_add("cylinder", submission)

        assert len(applied) == 2
        assert cylinder_counters(db_session) == after_checkout

    def test_leaves_no_paper_trail(self, db_session, acme_cylinders):
        quick_add("cylinder", acme_cylinders)

        assert db_session.query(PurchaseTransaction).count() == 0
        assert db_session.query(PurchaseTransactionItem).count() == 0
        assert db_session.query(ExpenseEntry).count() == 0
        assert db_session.query(PriceCatalogEntry).count() == 0
        assert db_session.query(StockApplication).count() == 0

    def test_stove_and_regulator(self, db_session):
        quick_add("stove", {"brand": "Acme", "model": "X", "quantities": {"double": 3}})
        quick_add("regulator", {"brand": "Acme", "quantities": {"22mm": 2, "20mm": 0}})

        db_session.expire_all()
        assert db_session.query(StoveStock).one().qty == 3
        assert db_session.query(StoveStock).one().burners == 2
        assert db_session.query(RegulatorStock).one().qty == 2

    def test_all_zero_rejected(self, db_session):
        with pytest.raises(ValidationError):
            quick_add("regulator", {"brand": "Acme", "quantities": {"22mm": 0}})
        assert db_session.query(RegulatorStock).count() == 0

    def test_ignores_stray_lump_total(self, db_session):
        applied = quick_add("regulator", {"brand": "Acme", "quantities": {"22mm": 2}, "lump_total": "12.5"})

        assert len(applied) == 1
        db_session.expire_all()
        assert db_session.query(RegulatorStock).one().qty == 2

    def test_failure_reports_every_sibling(self, db_session, acme_cylinders, monkeypatch):
        real_apply = catalog_service.apply_stock_delta

        def fail_22mm(category, record_id, counter, delta, **kwargs):
            record = catalog_service.get_stock_record(category, record_id)
            if record.valve_size == "22mm":
                raise StockWriteError("write failed", category=category, record_id=record_id, counter=counter)
            return real_apply(category, record_id, counter, delta, **kwargs)

        monkeypatch.setattr(catalog_service, "apply_stock_delta", fail_22mm)

        with pytest.raises(StockWriteError) as exc_info:
            quick_add("cylinder", acme_cylinders)

        error = exc_info.value
        assert [f["identity"]["valve_size"] for f in error.failures] == ["22mm"]
        assert [a["identity"]["valve_size"] for a in error.applied] == ["20mm"]
        assert cylinder_counters(db_session)[("20mm", "12kg")] == (20, 0, 0)
