"""
Sync coordinator tests.

Verifies:
- Records upsert by natural key and keep local processing flags
- Run status reflects record failures and collaborator failures
- Invoice stock processing posts OUT once per invoice
- Abandoned runs can be expired
"""

from datetime import timedelta

import pytest

from stockrecon.errors import ExternalDependencyError, StateConflictError, ValidationError
from stockrecon.extensions import db
from stockrecon.models import ExternalInvoice, ExternalInvoiceLine, StockMovement, SyncRun
from stockrecon.models.ledger import MOVEMENT_OUT, REF_INVOICE
from stockrecon.models.sync import (
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PARTIAL,
    SYNC_STATUS_RUNNING,
    SYNC_STATUS_SUCCESS,
)
from stockrecon.services import alias_service, ledger_service, summary_service, sync_service
from stockrecon.services.ingest_schemas import NormalizedRecord
from stockrecon.time_utils import utcnow


def _payload(number="INV-100", **overrides):
    payload = {
        "externalId": f"ext-{number}",
        "number": number,
        "date": "2026-02-01T09:30:00Z",
        "counterpartyName": "Corner Cafe",
        "lineItems": [
            {"name": "Wheat Flour", "sku": "WHEAT", "qty": 2, "unitPrice": 12.5, "lineTotal": "25.00"},
            {"name": "Sugar", "qty": "1", "unitPrice": "$4", "lineTotal": 4},
        ],
        "subtotal": 29,
        "tax": "2.32",
        "total": "$31.32",
        "status": "Closed",
    }
    payload.update(overrides)
    return payload


class ListFetcher:
    def __init__(self, payloads=None, error=None):
        self.payloads = payloads or []
        self.error = error

    def fetch_records(self, kind, params):
        if self.error:
            raise self.error
        return self.payloads


# =============================================================================
# BOUNDARY VALIDATION
# =============================================================================


class TestNormalizedRecord:

    def test_money_and_quantities_normalized(self):
        record = NormalizedRecord.from_payload(_payload())

        assert record.number == "INV-100"
        assert record.external_id == "ext-INV-100"
        assert record.counterparty_name == "Corner Cafe"
        assert record.subtotal_cents == 2900
        assert record.tax_cents == 232
        assert record.total_cents == 3132
        assert record.invoice_date.isoformat() == "2026-02-01T09:30:00"
        first, second = record.line_items
        assert (first.sku, first.quantity, first.unit_price_cents, first.line_total_cents) == ("WHEAT", 2, 1250, 2500)
        assert (second.sku, second.quantity, second.unit_price_cents) == (None, 1, 400)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"number": " "},
            {"total": "lots"},
            {"date": "yesterday"},
            {"lineItems": "nope"},
            {"lineItems": [{"qty": 1}]},
            {"lineItems": [{"name": "Flour", "qty": -1}]},
            {"total": "1e400"},
            {"subtotal": 1e300},
            {"lineItems": [{"name": "Flour", "qty": "inf"}]},
            {"lineItems": [{"name": "Flour", "qty": 2.7}]},
            {"lineItems": [{"name": "Flour", "qty": "1.5"}]},
        ],
    )
    def test_bad_payload_rejected(self, overrides):
        with pytest.raises(ValidationError):
            NormalizedRecord.from_payload(_payload(**overrides))


# =============================================================================
# RUNS AND UPSERT
# =============================================================================


class TestIngest:

    def test_reingest_updates_and_keeps_stock_processed(self, db_session):
        run = sync_service.start_fetch("routestar", "closed", {"limit": 10}, triggered_by="cron")
        invoice, outcome = sync_service.ingest_record(run, _payload())
        assert outcome == "inserted"
        assert len(invoice.lines) == 2

        invoice.stock_processed = True
        invoice.stock_processed_at = utcnow()
        db.session.commit()

        changed = _payload(total="40.00", lineItems=[{"name": "Wheat Flour", "sku": "WHEAT", "qty": 3}])
        invoice, outcome = sync_service.ingest_record(run, changed)

        assert outcome == "updated"
        assert db.session.query(ExternalInvoice).count() == 1
        assert invoice.total_cents == 4000
        assert [(l.name, l.quantity) for l in invoice.lines] == [("Wheat Flour", 3)]
        assert invoice.stock_processed is True
        assert invoice.stock_processed_at is not None
        assert invoice.last_sync_run_id == run.id

        run = sync_service.complete_run(run.id)
        assert run.status == SYNC_STATUS_SUCCESS
        assert (run.records_found, run.records_inserted, run.records_updated) == (2, 1, 1)
        assert run.duration_seconds is not None

    def test_external_id_key_follows_source_config(self, db_session):
        run = sync_service.start_fetch("customerconnect", "orders")
        sync_service.ingest_record(run, _payload(number="PO-1", externalId="order-1"))
        _, outcome = sync_service.ingest_record(run, _payload(number="PO-1-REV", externalId="order-1"))

        assert outcome == "updated"
        invoice = db.session.query(ExternalInvoice).one()
        assert invoice.number == "PO-1-REV"

    def test_same_number_from_other_source_is_separate(self, db_session):
        run_a = sync_service.start_fetch("routestar", "closed")
        run_b = sync_service.start_fetch("otherstar", "closed")
        sync_service.ingest_record(run_a, _payload())
        _, outcome = sync_service.ingest_record(run_b, _payload())
        assert outcome == "inserted"
        assert db.session.query(ExternalInvoice).count() == 2

    def test_batch_with_failures_completes_partial(self, db_session):
        run = sync_service.start_fetch("routestar", "closed")
        result = sync_service.ingest_batch(run, [_payload("INV-1"), {"number": ""}, _payload("INV-2")])

        assert result["inserted"] == 2
        assert result["failed"] == 1
        assert result["errors"][0]["kind"] == "validation_error"

        run = sync_service.complete_run(run.id)
        assert run.status == SYNC_STATUS_PARTIAL
        assert run.records_failed == 1
        assert run.records_found == 3
        assert len(run.details["errors"]) == 1

    def test_complete_twice_conflicts(self, db_session):
        run = sync_service.start_fetch("routestar", "closed")
        sync_service.complete_run(run.id, success=False, message="browser crashed")
        with pytest.raises(StateConflictError):
            sync_service.complete_run(run.id)
        with pytest.raises(StateConflictError):
            sync_service.ingest_record(run.id, _payload())

    def test_run_sync_success(self, db_session):
        run = sync_service.run_sync("routestar", "closed", ListFetcher([_payload("INV-1"), _payload("INV-2")]))
        assert run.status == SYNC_STATUS_SUCCESS
        assert run.records_inserted == 2

    def test_run_sync_unrepresentable_number_fails_only_that_record(self, db_session):
        fetcher = ListFetcher([{"number": "A-1", "total": "1e400"}, _payload("A-2")])

        run = sync_service.run_sync("routestar", "closed", fetcher)

        assert run.status == SYNC_STATUS_PARTIAL
        assert (run.records_found, run.records_inserted, run.records_failed) == (2, 1, 1)
        assert run.details["errors"][0]["key"] == "A-1"
        assert run.details["errors"][0]["kind"] == "validation_error"
        assert db.session.query(ExternalInvoice).filter_by(number="A-2").count() == 1

    def test_run_sync_unexpected_error_closes_run_failed(self, db_session, monkeypatch):
        def _explode(run_or_id, payloads):
            raise RuntimeError("disk full")

        monkeypatch.setattr(sync_service, "ingest_batch", _explode)
        with pytest.raises(RuntimeError):
            sync_service.run_sync("routestar", "closed", ListFetcher([_payload()]))

        run = sync_service.latest_run("routestar")
        assert run.status == SYNC_STATUS_FAILED
        assert run.error_message == "disk full"
        assert run.ended_at is not None
        assert sync_service.active_runs("routestar") == []

    def test_run_sync_collaborator_failure(self, db_session):
        with pytest.raises(ExternalDependencyError):
            sync_service.run_sync("routestar", "closed", ListFetcher(error=RuntimeError("login failed")))

        run = sync_service.latest_run("routestar")
        assert run.status == SYNC_STATUS_FAILED
        assert "login failed" in run.error_message
        assert run.ended_at is not None


# =============================================================================
# INVOICE STOCK
# =============================================================================


class TestInvoiceStock:

    def test_process_posts_out_per_line_once(self, db_session, receive):
        alias_service.upsert_mapping("SUGAR-10", ["Sugar"])
        receive("WHEAT", 10)
        receive("SUGAR-10", 10)
        run = sync_service.start_fetch("routestar", "closed")
        invoice, _ = sync_service.ingest_record(run, _payload())

        movements = sync_service.process_invoice_stock(invoice.id)

        assert [(m.type, m.sku, m.qty, m.ref_type) for m in movements] == [
            (MOVEMENT_OUT, "WHEAT", 2, REF_INVOICE),
            (MOVEMENT_OUT, "SUGAR-10", 1, REF_INVOICE),
        ]
        assert summary_service.get_summary("WHEAT").available_qty == 8
        with pytest.raises(StateConflictError):
            sync_service.process_invoice_stock(invoice.id)

    def test_process_unprocessed_is_best_effort(self, db_session, receive):
        receive("WHEAT", 2)
        receive("SUGAR", 5)
        run = sync_service.start_fetch("routestar", "closed")
        sync_service.ingest_record(run, _payload("INV-1"))
        sync_service.ingest_record(run, _payload("INV-2"))

        result = sync_service.process_unprocessed_invoices()

        assert result["total"] == 2
        assert result["processed"] == ["INV-1"]
        assert result["errors"][0]["key"] == "INV-2"
        assert result["errors"][0]["kind"] == "insufficient_stock"
        second = db.session.query(ExternalInvoice).filter_by(number="INV-2").one()
        assert second.stock_processed is False
        assert ledger_service.verify_summaries() == []

    def test_run_sync_can_process_stock(self, db_session, receive):
        receive("WHEAT", 10)
        receive("SUGAR", 10)
        run = sync_service.run_sync("routestar", "closed", ListFetcher([_payload("INV-1")]), process_stock=True)

        assert run.details["stock"]["processed"] == ["INV-1"]
        assert db.session.query(StockMovement).filter_by(ref_type=REF_INVOICE).count() == 2


# =============================================================================
# QUERIES AND MAINTENANCE
# =============================================================================


class TestRunQueries:

    def test_expire_stale_runs(self, db_session):
        stale = sync_service.start_fetch("routestar", "closed")
        fresh = sync_service.start_fetch("routestar", "pending")
        db.session.query(SyncRun).filter_by(id=stale.id).update({"started_at": utcnow() - timedelta(hours=5)})
        db.session.commit()

        expired = sync_service.expire_stale_runs(60)

        assert [r.id for r in expired] == [stale.id]
        assert db.session.get(SyncRun, stale.id).status == SYNC_STATUS_FAILED
        assert "Timed out" in db.session.get(SyncRun, stale.id).error_message
        assert [r.id for r in sync_service.active_runs("routestar")] == [fresh.id]
        assert db.session.get(SyncRun, fresh.id).status == SYNC_STATUS_RUNNING

    def test_stats_and_recent(self, db_session):
        ok = sync_service.start_fetch("routestar", "closed")
        sync_service.complete_run(ok.id)
        bad = sync_service.start_fetch("routestar", "closed")
        sync_service.complete_run(bad.id, success=False)

        stats = sync_service.run_stats("routestar", days=1)
        assert stats["total_runs"] == 2
        assert stats["success_rate"] == 50.0
        assert [r.id for r in sync_service.recent_runs("routestar")] == [bad.id, ok.id]
