"""
Truck checkout reconciliation tests.

Verifies:
- Checkout creation decrements stock per item
- Invoice numbers belong to one active checkout only
- Tally groups by sku (falling back to name) and overwrites prior results
- Stock processing posts IN(sold) and OUT(used) exactly once
- Cancel is only legal before completion
"""

import pytest

from stockrecon.errors import (
    InsufficientStockError,
    IntegrityConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from stockrecon.extensions import db
from stockrecon.models import (
    ExternalInvoice,
    ExternalInvoiceLine,
    StockMovement,
    TruckCheckout,
    TruckCheckoutInvoice,
)
from stockrecon.models.checkouts import (
    CHECKOUT_STATUS_CANCELLED,
    CHECKOUT_STATUS_CHECKED_OUT,
    CHECKOUT_STATUS_COMPLETED,
)
from stockrecon.models.ledger import MOVEMENT_IN, MOVEMENT_OUT, REF_CHECKOUT
from stockrecon.services import alias_service, checkout_service, ledger_service, summary_service
from stockrecon.services.alias_service import AliasResolver


class FakeFetcher:
    """Invoice detail collaborator backed by a dict; unknown numbers fail."""

    def __init__(self, invoices):
        self.invoices = invoices
        self.calls = []

    def fetch_invoice_details(self, number):
        self.calls.append(number)
        if number not in self.invoices:
            raise RuntimeError(f"invoice {number} not found upstream")
        return self.invoices[number]


def _checkout(items, employee="Sam Driver"):
    return checkout_service.create_checkout(employee_name=employee, items=items, truck_number="T-1")


def _completed(items, numbers):
    checkout = _checkout(items)
    return checkout_service.complete_checkout(checkout.id, invoice_numbers=numbers)


def _checkout_movements(checkout_id):
    return ledger_service.movements_for_reference(REF_CHECKOUT, checkout_id)


# =============================================================================
# CREATE
# =============================================================================


class TestCreateCheckout:

    def test_posts_out_per_item(self, db_session, receive):
        receive("A", 10)
        receive("B", 10)

        checkout = _checkout([{"name": "Apples", "sku": "A", "quantity": 4}, {"name": "Beans", "sku": "B", "quantity": 1}])

        assert checkout.status == CHECKOUT_STATUS_CHECKED_OUT
        assert checkout.total_items_taken == 5
        movements = _checkout_movements(checkout.id)
        assert [(m.type, m.sku, m.qty) for m in movements] == [(MOVEMENT_OUT, "A", 4), (MOVEMENT_OUT, "B", 1)]
        assert summary_service.get_summary("A").available_qty == 6
        assert summary_service.get_summary("B").available_qty == 9

    def test_item_sku_canonicalized_before_posting(self, db_session, receive):
        alias_service.upsert_mapping("WHEAT-50", ["Wheat Flour 50lb"])
        receive("WHEAT-50", 10)

        checkout = _checkout([{"name": "Wheat Flour 50lb", "quantity": 3}])

        assert checkout.items[0].ledger_sku == "WHEAT-50"
        assert summary_service.get_summary("WHEAT-50").available_qty == 7

    @pytest.mark.parametrize(
        "employee,items",
        [
            ("", [{"name": "Apples", "quantity": 1}]),
            ("Sam", []),
            ("Sam", [{"name": "", "quantity": 1}]),
            ("Sam", [{"name": "Apples", "quantity": 0}]),
            ("Sam", [{"name": "Apples", "quantity": "2"}]),
        ],
    )
    def test_invalid_input_rejected(self, db_session, employee, items):
        with pytest.raises(ValidationError):
            checkout_service.create_checkout(employee_name=employee, items=items)
        assert db.session.query(TruckCheckout).count() == 0

    def test_out_of_stock_item_rolls_back_checkout(self, db_session, receive):
        receive("A", 10)
        with pytest.raises(InsufficientStockError):
            _checkout([{"name": "Apples", "sku": "A", "quantity": 2}, {"name": "Beans", "sku": "B", "quantity": 1}])

        assert db.session.query(TruckCheckout).count() == 0
        assert db.session.query(StockMovement).count() == 1
        assert summary_service.get_summary("A").available_qty == 10


# =============================================================================
# COMPLETE
# =============================================================================


class TestCompleteCheckout:

    def test_links_invoices(self, db_session, receive):
        receive("A", 10)
        checkout = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])

        checkout = checkout_service.complete_checkout(
            checkout.id, invoice_numbers=["INV-1", " INV-2 ", "INV-1", ""], completed_by="boss"
        )

        assert checkout.status == CHECKOUT_STATUS_COMPLETED
        assert checkout.invoice_numbers == ["INV-1", "INV-2"]
        assert checkout.completed_by == "boss"
        assert checkout.completed_date is not None

    def test_requires_invoice_number(self, db_session, receive):
        receive("A", 10)
        checkout = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])
        with pytest.raises(ValidationError):
            checkout_service.complete_checkout(checkout.id, invoice_numbers=[" "])

    def test_invoice_linked_elsewhere_conflicts_and_leaves_checkout_untouched(self, db_session, receive):
        receive("A", 10)
        c1 = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])
        c2 = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])
        checkout_service.complete_checkout(c1.id, invoice_numbers=["INV-9"])

        with pytest.raises(IntegrityConflictError) as exc_info:
            checkout_service.complete_checkout(c2.id, invoice_numbers=["INV-10", "INV-9"])

        assert exc_info.value.conflicts == [{"invoice_number": "INV-9", "checkout_id": c1.id}]
        assert exc_info.value.to_dict()["kind"] == "integrity_conflict"
        c2 = checkout_service.get_checkout(c2.id)
        assert c2.status == CHECKOUT_STATUS_CHECKED_OUT
        assert c2.invoice_numbers == []
        assert db.session.query(TruckCheckoutInvoice).filter_by(checkout_id=c2.id).count() == 0

    def test_cannot_complete_twice(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 1}], ["INV-1"])
        with pytest.raises(StateConflictError):
            checkout_service.complete_checkout(checkout.id, invoice_numbers=["INV-2"])

    def test_unknown_checkout(self, db_session):
        with pytest.raises(NotFoundError):
            checkout_service.complete_checkout(999, invoice_numbers=["INV-1"])


# =============================================================================
# TALLY
# =============================================================================


class TestTally:

    def test_requires_completed_checkout(self, db_session, receive):
        receive("A", 10)
        checkout = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])
        with pytest.raises(StateConflictError):
            checkout_service.tally_checkout(checkout.id, invoice_fetcher=FakeFetcher({}))

    def test_quantities_merge_across_invoices(self, db_session, receive):
        receive("X", 10)
        checkout = _completed([{"name": "Thing", "sku": "X", "quantity": 6}], ["INV-1", "INV-2"])
        fetcher = FakeFetcher({
            "INV-1": {"customer": "Cafe", "items": [{"name": "Thing", "sku": "X", "qty": 2}], "total": 20},
            "INV-2": {"customer": "Deli", "items": [{"name": "Thing", "sku": "X", "qty": 3}], "total": 30},
        })

        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher, tallied_by="boss")

        tally = result["checkout"].tally_results
        assert tally["items_sold"] == [{"name": "Thing", "sku": "X", "quantity_sold": 5}]
        assert tally["discrepancies"] == [{
            "name": "Thing",
            "sku": "X",
            "quantity_taken": 6,
            "quantity_sold": 5,
            "difference": 1,
            "status": "excess",
        }]
        assert result["summary"]["fetched_invoices"] == 2
        assert result["summary"]["total_items_sold"] == 5
        assert result["checkout"].tallied_by == "boss"

    def test_groups_by_name_when_sku_missing(self, db_session, receive):
        receive("BREAD", 10)
        checkout = _completed([{"name": "Bread", "quantity": 2}], ["INV-1"])
        fetcher = FakeFetcher({
            "INV-1": {"customer": "Cafe", "items": [{"name": "Bread", "qty": 1}, {"name": "Bread", "qty": 1}, {"name": "Jam", "qty": 4}]},
        })

        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        by_name = {d["name"]: d for d in result["checkout"].tally_results["discrepancies"]}
        assert by_name["Bread"]["status"] == "matched"
        assert by_name["Jam"]["quantity_taken"] == 0
        assert by_name["Jam"]["difference"] == -4
        assert by_name["Jam"]["status"] == "shortage"
        assert result["summary"]["matched"] == 1
        assert result["summary"]["discrepancies"] == 1

    def test_local_invoice_used_before_fetcher(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 3}], ["INV-L"])
        invoice = ExternalInvoice(source="routestar", number="INV-L", counterparty_name="Cafe", total_cents=900)
        invoice.lines.append(ExternalInvoiceLine(line_number=1, name="Apples", sku="A", quantity=3))
        db.session.add(invoice)
        db.session.commit()
        fetcher = FakeFetcher({})

        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        assert fetcher.calls == []
        snapshot = result["checkout"].fetched_invoices[0]
        assert snapshot["source"] == "local"
        assert snapshot["customer"] == "Cafe"
        assert result["checkout"].tally_results["discrepancies"][0]["status"] == "matched"

    def test_fetch_failure_recorded_not_raised(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 3}], ["INV-1", "INV-GONE"])
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 1}]}})

        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        missing = result["checkout"].tally_results["missing_invoices"]
        assert [m["invoice_number"] for m in missing] == ["INV-GONE"]
        assert "not found upstream" in missing[0]["reason"]
        assert result["summary"]["missing_invoices"] == 1

    def test_keyless_fetched_line_marks_invoice_missing(self, db_session, receive):
        receive("A", 20)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 5}], ["INV-1", "INV-2"])
        fetcher = FakeFetcher({
            "INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "quantity": 3}]},
            "INV-2": {"customer": "Deli", "items": [{"name": None, "sku": None, "quantity": 1}]},
        })

        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        missing = result["checkout"].tally_results["missing_invoices"]
        assert [m["invoice_number"] for m in missing] == ["INV-2"]
        assert "neither name nor sku" in missing[0]["reason"]

        processed = checkout_service.process_checkout_stock(checkout.id)
        assert [(m.type, m.qty) for m in processed["movements"]] == [(MOVEMENT_IN, 3), (MOVEMENT_OUT, 2)]

    @pytest.mark.parametrize("qty", [2.5, "1.5", "inf"])
    def test_non_whole_fetched_quantity_marks_invoice_missing(self, db_session, receive, qty):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 3}], ["INV-1"])
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": qty}]}})

        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        missing = result["checkout"].tally_results["missing_invoices"]
        assert [m["invoice_number"] for m in missing] == ["INV-1"]
        assert result["checkout"].tally_results["items_sold"] == []

    def test_retally_overwrites(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 3}], ["INV-1"])
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 1}]}})

        checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)
        result = checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        assert result["checkout"].tally_results["items_sold"][0]["quantity_sold"] == 1
        assert len(result["checkout"].tally_results["discrepancies"]) == 1

    def test_plain_callable_fetcher(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 1}], ["INV-1"])

        result = checkout_service.tally_checkout(
            checkout.id,
            invoice_fetcher=lambda number: {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 1}]},
        )
        assert result["summary"]["matched"] == 1


# =============================================================================
# STOCK PROCESSING
# =============================================================================


class TestProcessStock:

    def _tallied(self, receive, taken, sold):
        receive("A", 20)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": taken}], ["INV-1"])
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": sold}]}})
        checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)
        return checkout

    def test_posts_in_sold_and_out_used_once(self, db_session, receive):
        checkout = self._tallied(receive, taken=5, sold=3)
        before = db.session.query(StockMovement).count()

        result = checkout_service.process_checkout_stock(checkout.id, processed_by="boss")

        posted = [(m.type, m.qty) for m in result["movements"]]
        assert posted == [(MOVEMENT_IN, 3), (MOVEMENT_OUT, 2)]
        assert db.session.query(StockMovement).count() == before + 2
        assert result["checkout"].stock_processed is True
        assert result["checkout"].stock_processed_at is not None
        # 20 received, 5 out at checkout, +3 back, -2 used
        assert summary_service.get_summary("A").available_qty == 16
        assert ledger_service.verify_summaries() == []

        with pytest.raises(StateConflictError):
            checkout_service.process_checkout_stock(checkout.id)
        assert db.session.query(StockMovement).count() == before + 2

    def test_tally_frozen_after_processing(self, db_session, receive):
        checkout = self._tallied(receive, taken=5, sold=3)
        checkout_service.process_checkout_stock(checkout.id)
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 5}]}})

        with pytest.raises(StateConflictError):
            checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        checkout = checkout_service.get_checkout(checkout.id)
        line = checkout.tally_results["discrepancies"][0]
        assert (line["quantity_sold"], line["difference"], line["status"]) == (3, 2, "excess")
        assert fetcher.calls == []

    def test_sold_more_than_taken_only_warns(self, db_session, receive):
        checkout = self._tallied(receive, taken=2, sold=3)

        result = checkout_service.process_checkout_stock(checkout.id)

        assert [(m.type, m.qty) for m in result["movements"]] == [(MOVEMENT_IN, 3)]
        assert len(result["warnings"]) == 1
        assert result["warnings"][0]["quantity_used"] == -1
        assert result["checkout"].tally_results["warnings"][0]["sku"] == "A"

    def test_requires_tally(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 1}], ["INV-1"])
        with pytest.raises(StateConflictError):
            checkout_service.process_checkout_stock(checkout.id)

    def test_movements_use_canonical_sku(self, db_session, receive):
        alias_service.upsert_mapping("A", ["Apples Crate"])
        receive("A", 20)
        checkout = _completed([{"name": "Apples Crate", "quantity": 4}], ["INV-1"])
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples Crate", "qty": 4}]}})
        checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)

        result = checkout_service.process_checkout_stock(checkout.id, resolver=AliasResolver())

        assert [(m.type, m.sku, m.qty) for m in result["movements"]] == [(MOVEMENT_IN, "A", 4)]

    def test_failure_posts_nothing_and_records_error(self, db_session, receive):
        receive("A", 20)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 4}], ["INV-1"])
        fetcher = FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 1}]}})
        checkout_service.tally_checkout(checkout.id, invoice_fetcher=fetcher)
        # Drain stock so the OUT(3) for used items cannot be covered
        ledger_service.create_adjustment(sku="A", delta=-16, reason="Shrink")
        before = db.session.query(StockMovement).count()

        with pytest.raises(InsufficientStockError):
            checkout_service.process_checkout_stock(checkout.id)

        assert db.session.query(StockMovement).count() == before
        checkout = checkout_service.get_checkout(checkout.id)
        assert checkout.stock_processed is False
        assert "Insufficient stock" in checkout.stock_processing_error


# =============================================================================
# CANCEL AND MAINTENANCE
# =============================================================================


class TestCancelAndMaintenance:

    def test_cancel_from_checked_out_keeps_movements(self, db_session, receive):
        receive("A", 10)
        checkout = _checkout([{"name": "Apples", "sku": "A", "quantity": 4}])

        checkout = checkout_service.cancel_checkout(checkout.id, reason="Truck broke down")

        assert checkout.status == CHECKOUT_STATUS_CANCELLED
        assert checkout.cancellation_reason == "Truck broke down"
        assert "Cancelled: Truck broke down" in checkout.notes
        assert summary_service.get_summary("A").available_qty == 6

    def test_cancel_from_other_states_fails(self, db_session, receive):
        receive("A", 10)
        completed = _completed([{"name": "Apples", "sku": "A", "quantity": 1}], ["INV-1"])
        with pytest.raises(StateConflictError):
            checkout_service.cancel_checkout(completed.id)

        cancelled = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])
        checkout_service.cancel_checkout(cancelled.id)
        with pytest.raises(StateConflictError):
            checkout_service.cancel_checkout(cancelled.id)

    def test_update_only_descriptive_fields(self, db_session, receive):
        receive("A", 10)
        checkout = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}])

        checkout = checkout_service.update_checkout(checkout.id, {"notes": "Route 5", "truck_number": "T-9"})
        assert checkout.truck_number == "T-9"

        with pytest.raises(ValidationError):
            checkout_service.update_checkout(checkout.id, {"stock_processed": True})

    def test_listing_and_queues(self, db_session, receive):
        receive("A", 10)
        open_one = _checkout([{"name": "Apples", "sku": "A", "quantity": 1}], employee="Ann")
        done = _completed([{"name": "Apples", "sku": "A", "quantity": 1}], ["INV-1"])
        checkout_service.tally_checkout(
            done.id,
            invoice_fetcher=FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 1}]}}),
        )

        assert [c.id for c in checkout_service.active_checkouts()] == [open_one.id]
        assert [c.id for c in checkout_service.checkouts_needing_stock_processing()] == [done.id]

        listing = checkout_service.list_checkouts(employee_name="ann")
        assert listing["pagination"]["total"] == 1
        assert listing["items"][0]["employee_name"] == "Ann"

    def test_delete_refused_after_processing(self, db_session, receive):
        receive("A", 10)
        checkout = _completed([{"name": "Apples", "sku": "A", "quantity": 1}], ["INV-1"])
        checkout_service.tally_checkout(
            checkout.id,
            invoice_fetcher=FakeFetcher({"INV-1": {"customer": "Cafe", "items": [{"name": "Apples", "sku": "A", "qty": 1}]}}),
        )
        checkout_service.process_checkout_stock(checkout.id)

        with pytest.raises(StateConflictError):
            checkout_service.delete_checkout(checkout.id)
