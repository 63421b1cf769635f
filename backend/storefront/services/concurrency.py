# Overview: Row locking and bounded retry for the engine's atomic units.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..config import get_setting
from ..errors import ConcurrencyConflict, PersistenceError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id_col check and conditional UPDATEs carry the load.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute one atomic unit with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, busy database), StaleDataError
    (optimistic locking conflicts) and ConcurrencyConflict raised by the unit
    itself (lost insert races) with exponential backoff. Once attempts are
    exhausted they surface as PersistenceError / ConcurrencyConflict.

    Any other exception rolls the session back and propagates unchanged.
    """
    if attempts is None:
        attempts = get_setting("PERSISTENCE_RETRY_ATTEMPTS")
    if backoff_base is None:
        backoff_base = get_setting("RETRY_BACKOFF_BASE")

    for attempt in range(attempts):
        try:
            return func()
        except StaleDataError as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflict(
                    "Lost optimistic-lock race after retries",
                    details={"attempts": attempts, "cause": str(exc)},
                ) from exc
            current_app.logger.warning("Stale row on attempt %s/%s, retrying", attempt + 1, attempts)
        except ConcurrencyConflict:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning("Concurrent insert on attempt %s/%s, retrying", attempt + 1, attempts)
        except OperationalError as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise PersistenceError(
                    "Database operation failed after retries",
                    details={"attempts": attempts, "cause": str(exc.orig)},
                ) from exc
            current_app.logger.warning("Database busy on attempt %s/%s, retrying", attempt + 1, attempts)
        except Exception:
            db.session.rollback()
            raise
        time.sleep(backoff_base * (2 ** attempt))


def run_atomic(func, *, commit: bool):
    """
    Run `func` as its own retried unit when commit=True, or inline inside the
    caller's open transaction when commit=False (the caller owns retry and
    rollback).
    """
    if commit:
        return run_with_retry(func)
    return func()
