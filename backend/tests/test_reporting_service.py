import pytest

from stockrecon.errors import NotFoundError, ValidationError
from stockrecon.models.ledger import MOVEMENT_OUT, REF_MANUAL
from stockrecon.services import (
    alias_service,
    checkout_service,
    discrepancy_service,
    ledger_service,
    reporting_service,
    summary_service,
    sync_service,
)


class TestReports:

    def test_sku_history(self, db_session, receive):
        receive("A", 10)
        ledger_service.post_movement(sku="A", movement_type=MOVEMENT_OUT, qty=3, ref_type=REF_MANUAL, ref_id="x")

        report = reporting_service.sku_history("a")

        assert report["sku"] == "A"
        assert report["summary"]["available_qty"] == 7
        assert report["replay"]["current_stock"] == 7
        assert report["in_sync"] is True
        assert [m["type"] for m in report["movements"]] == ["OUT", "IN"]

    def test_sku_history_unknown(self, db_session):
        with pytest.raises(NotFoundError):
            reporting_service.sku_history("GHOST")

    def test_range_validated(self, db_session):
        with pytest.raises(ValidationError):
            reporting_service.movement_totals(start="2026-02-01", end="2026-01-01")
        with pytest.raises(ValidationError):
            reporting_service.movement_totals(start="not a date")

    def test_movement_totals(self, db_session, receive):
        receive("A", 10)
        receive("B", 5)
        ledger_service.create_adjustment(sku="A", delta=-2, reason="Broken")

        rows = {r["type"]: r for r in reporting_service.movement_totals()["rows"]}
        assert rows["IN"] == {"type": "IN", "movements": 2, "units": 15}
        assert rows["ADJUST"]["units"] == 2

    def test_employee_checkout_stats(self, db_session, receive):
        receive("A", 10)
        for employee in ("Ann", "Ann", "Bo"):
            checkout_service.create_checkout(employee_name=employee, items=[{"name": "Apples", "sku": "A", "quantity": 1}])
        first = checkout_service.list_checkouts(employee_name="Ann")["items"][0]
        checkout_service.cancel_checkout(first["id"])

        rows = reporting_service.employee_checkout_stats()["rows"]

        assert rows[0] == {"employee_name": "Ann", "total": 2, "by_status": {"checked_out": 1, "cancelled": 1}}
        assert rows[1]["employee_name"] == "Bo"

    def test_discrepancy_low_stock_and_sync(self, db_session, receive):
        receive("A", 3)
        receive("B", 30)
        discrepancy_service.create_discrepancy(item_name="A", system_quantity=3, actual_quantity=1, reported_by="al")
        run = sync_service.start_fetch("routestar", "closed")
        sync_service.complete_run(run.id)

        assert reporting_service.discrepancy_report()["by_type"]["Shortage"]["count"] == 1
        low = reporting_service.low_stock_report()
        assert [i["sku"] for i in low["items"]] == ["A"]
        assert summary_service.get_summary("B").is_low_stock is False

        sync = reporting_service.sync_report(source="routestar")
        assert sync["latest_run"]["id"] == run.id
        assert sync["active_runs"] == 0
        assert sync["sources"] == ["routestar"]


class TestStockReconciliation:

    def _seed(self):
        alias_service.upsert_mapping("SUGAR-10", ["Sugar"])
        orders = sync_service.start_fetch("customerconnect", "orders")
        sync_service.ingest_record(orders, {
            "externalId": "order-1",
            "number": "PO-1",
            "date": "2026-01-10T00:00:00Z",
            "lineItems": [
                {"name": "Wheat Flour", "sku": "WHEAT", "qty": 10, "lineTotal": "50.00"},
                {"name": "Sugar", "qty": 4, "lineTotal": 8},
            ],
        })
        ledger_service.record_purchase_receipt(
            order_number="PO-1",
            lines=[{"sku": "WHEAT", "qty": 10}],
            received_at="2026-01-10T12:00:00Z",
        )
        sales = sync_service.start_fetch("routestar", "closed")
        sync_service.ingest_record(sales, {
            "number": "INV-1",
            "date": "2026-01-12T09:00:00Z",
            "lineItems": [
                {"name": "Wheat Flour", "sku": "WHEAT", "qty": 3, "lineTotal": "30.00"},
                {"name": "Sugar", "qty": 6, "lineTotal": 18},
                {"name": "Mystery", "qty": 1, "lineTotal": 2},
            ],
        })

    def test_purchased_vs_sold_per_canonical_sku(self, db_session):
        self._seed()

        report = reporting_service.stock_reconciliation()

        items = {i["sku"]: i for i in report["items"]}
        assert [i["sku"] for i in report["items"]] == ["SUGAR-10", "MYSTERY", "WHEAT"]

        wheat = items["WHEAT"]
        assert wheat["purchased"] == {"quantity": 10, "total_value_cents": 5000, "avg_price_cents": 500, "order_count": 1}
        assert wheat["sold"] == {"quantity": 3, "total_value_cents": 3000, "avg_price_cents": 1000, "invoice_count": 1}
        assert (wheat["received_qty"], wheat["net_qty"], wheat["status"]) == (10, 7, "IN_STOCK")
        assert wheat["available_qty"] == 10

        sugar = items["SUGAR-10"]
        assert (sugar["purchased"]["quantity"], sugar["sold"]["quantity"], sugar["status"]) == (4, 6, "OVERSOLD")
        assert sugar["available_qty"] is None

        assert items["MYSTERY"]["has_purchase_record"] is False

        summary = report["summary"]
        assert (summary["total_items"], summary["in_stock"], summary["oversold"]) == (3, 1, 2)
        assert summary["without_purchase_record"] == 1
        assert summary["total_purchase_value_cents"] == 5800
        assert summary["total_sale_value_cents"] == 5000
        assert summary["gross_margin_cents"] == -800

    def test_range_limits_both_sides(self, db_session):
        self._seed()

        report = reporting_service.stock_reconciliation(end="2026-01-11T00:00:00Z")

        assert [i["sku"] for i in report["items"]] == ["SUGAR-10", "WHEAT"]
        assert all(i["sold"]["quantity"] == 0 for i in report["items"])
        assert report["summary"]["out_of_stock"] == 0
        assert report["end"] == "2026-01-11T00:00:00Z"
