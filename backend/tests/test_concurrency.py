import pytest
from sqlalchemy.orm.exc import StaleDataError

from stockrecon.errors import ValidationError
from stockrecon.extensions import db
from stockrecon.models import StockSummary
from stockrecon.services.concurrency import run_with_retry


class TestRunWithRetry:

    def test_conflict_retried_until_success(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("version mismatch")
            return "done"

        assert run_with_retry(_op, attempts=3, backoff_base=0) == "done"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise StaleDataError("version mismatch")

        with pytest.raises(StaleDataError):
            run_with_retry(_op, attempts=2, backoff_base=0)
        assert len(calls) == 2

    def test_domain_error_rolls_back_without_retry(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            db.session.add(StockSummary(sku="HALF-WRITTEN", available_qty=1))
            db.session.flush()
            raise ValidationError("rejected")

        with pytest.raises(ValidationError):
            run_with_retry(_op, attempts=3, backoff_base=0)
        assert len(calls) == 1
        assert db.session.query(StockSummary).filter_by(sku="HALF-WRITTEN").count() == 0
