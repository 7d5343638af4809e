# Overview: Transaction helpers shared by the stockrecon services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
"""
Transaction model (authoritative)

- Every mutating service call wraps its work in an _op() that ends with
  db.session.commit() and hands it to run_with_retry.
- Lock and version conflicts (OperationalError, StaleDataError) are the only
  failures retried. The session is rolled back before each retry, so _op()
  must re-read whatever it mutates (checkouts, discrepancies, sync runs).
- Anything else, including every StockReconError, rolls the session back
  and propagates unchanged. A rejected posting never leaves a half-written
  movement or summary in the session.
"""

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.1


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on the rows a state transition reads.

    SQLite ignores it; there the version_id columns on checkouts,
    discrepancies and external invoices catch concurrent writers.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = DEFAULT_ATTEMPTS, backoff_base: float = DEFAULT_BACKOFF_BASE):
    """Run `func` with exponential backoff on lock/version conflicts."""
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts:
                current_app.logger.error("Giving up after %d attempts: %s", attempts, exc)
                raise
            current_app.logger.warning("Concurrent update conflict (attempt %d/%d): %s", attempt, attempts, exc)
            time.sleep(backoff_base * (2 ** (attempt - 1)))
        except Exception:
            db.session.rollback()
            raise
