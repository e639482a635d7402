"""Tests for the retried transaction runner, with a mocked session."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from credit_engine.services.atomic import is_retryable, run_atomic
from credit_engine.services.credit_result import ConcurrencyConflict, CreditErrorKind, Err, Ok


class _DriverError(Exception):
    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


def _db_error(sqlstate: str | None = None, message: str = "boom", cls=OperationalError):
    return cls("UPDATE credit_balances ...", {}, _DriverError(message, sqlstate))


@pytest.fixture
def session():
    return AsyncMock()


class TestIsRetryable:
    @pytest.mark.parametrize("state", ["40001", "40P01", "23505"])
    def test_conflict_states_retry(self, state):
        assert is_retryable(_db_error(state))

    def test_other_states_do_not(self):
        assert not is_retryable(_db_error("23514"))

    def test_sqlite_messages(self):
        assert is_retryable(_db_error(message="database is locked"))
        assert is_retryable(_db_error(message="UNIQUE constraint failed", cls=IntegrityError))
        assert not is_retryable(_db_error(message="CHECK constraint failed", cls=IntegrityError))

    def test_plain_exceptions_do_not(self):
        assert not is_retryable(ValueError("nope"))
        assert is_retryable(ConcurrencyConflict("busy"))

    def test_stale_version_retries(self):
        assert is_retryable(StaleDataError("expected to update 1 row(s); 0 were matched"))


class TestRunAtomic:
    async def test_ok_commits(self, session):
        result = await run_atomic(session, AsyncMock(return_value=Ok(value=1)), label="t")

        assert result.data == {"value": 1}
        session.commit.assert_awaited_once()
        session.rollback.assert_not_awaited()

    async def test_err_rolls_back(self, session):
        result = await run_atomic(
            session, AsyncMock(return_value=Err(CreditErrorKind.NOT_FOUND)), label="t"
        )

        assert result.reason == CreditErrorKind.NOT_FOUND
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    async def test_serialization_failure_is_retried(self, session):
        work = AsyncMock(side_effect=[_db_error("40001"), Ok(value=2)])

        result = await run_atomic(session, work, label="t")

        assert result.ok
        assert work.await_count == 2
        session.commit.assert_awaited_once()

    async def test_retries_exhausted_returns_conflict(self, session):
        work = AsyncMock(side_effect=_db_error("40P01"))

        result = await run_atomic(session, work, label="t", max_attempts=3)

        assert result.reason == CreditErrorKind.CONCURRENCY_CONFLICT
        assert result.details == {"attempts": 3}
        assert work.await_count == 3
        assert session.rollback.await_count == 3

    async def test_non_retryable_database_error_propagates(self, session):
        work = AsyncMock(side_effect=_db_error("23514"))

        with pytest.raises(OperationalError):
            await run_atomic(session, work, label="t")
        assert work.await_count == 1
        session.rollback.assert_awaited_once()

    async def test_programming_errors_propagate_after_rollback(self, session):
        work = AsyncMock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            await run_atomic(session, work, label="t")
        session.rollback.assert_awaited_once()

    async def test_stale_version_is_retried(self, session):
        work = AsyncMock(side_effect=[StaleDataError("0 were matched"), Ok(value=3)])

        result = await run_atomic(session, work, label="t")

        assert result.data == {"value": 3}
        session.rollback.assert_awaited_once()
