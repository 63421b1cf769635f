import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from storefront.errors import ConcurrencyConflict, PersistenceError
from storefront.services.concurrency import run_atomic, run_with_retry


class Flaky:
    """Callable that raises `error` for the first `failures` calls."""

    def __init__(self, error, failures, result="done"):
        self.error = error
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


def _busy():
    return OperationalError("UPDATE inventory_lots", {}, Exception("database is locked"))


def test_stale_rows_become_conflict_after_attempts(app):
    unit = Flaky(StaleDataError("expected 1 row, matched 0"), failures=10)

    with pytest.raises(ConcurrencyConflict) as exc:
        run_with_retry(unit, attempts=4, backoff_base=0)

    assert unit.calls == 4
    assert exc.value.details["attempts"] == 4


def test_busy_database_becomes_persistence_error(app):
    unit = Flaky(_busy(), failures=10)

    with pytest.raises(PersistenceError) as exc:
        run_with_retry(unit, attempts=3, backoff_base=0)

    assert unit.calls == 3
    assert "database is locked" in exc.value.details["cause"]


def test_transient_failures_are_retried(app):
    for error in (_busy(), StaleDataError("stale"), ConcurrencyConflict("row created concurrently")):
        unit = Flaky(error, failures=1, result=42)
        assert run_with_retry(unit, attempts=3, backoff_base=0) == 42
        assert unit.calls == 2


def test_conflict_raised_by_unit_surfaces_unchanged(app):
    conflict = ConcurrencyConflict("row created concurrently")
    unit = Flaky(conflict, failures=10)

    with pytest.raises(ConcurrencyConflict) as exc:
        run_with_retry(unit, attempts=2, backoff_base=0)

    assert exc.value is conflict
    assert unit.calls == 2


def test_other_errors_are_not_retried(app):
    unit = Flaky(ValueError("bad input"), failures=10)

    with pytest.raises(ValueError):
        run_with_retry(unit, attempts=5, backoff_base=0)

    assert unit.calls == 1


def test_inline_unit_is_not_retried(app):
    unit = Flaky(_busy(), failures=1)

    with pytest.raises(OperationalError):
        run_atomic(unit, commit=False)

    assert unit.calls == 1
