import pytest
from unittest.mock import AsyncMock, MagicMock
from pymongo.errors import AutoReconnect

from retail_core.core.config import Settings
from retail_core.core.errors import (
    ConcurrencyConflictError,
    InternalError,
    PartialApplicationError,
    ValidationError,
)
from retail_core.db.session import Storage
from retail_core.services.operation_runner import OperationRunner


def _async_context(value=None):
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=value)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


@pytest.fixture
def mock_session():
    session = MagicMock()
    session.transaction_ctx = _async_context()
    session.start_transaction = MagicMock(return_value=session.transaction_ctx)
    return session


@pytest.fixture
def atomic_runner(mock_session):
    db = MagicMock()
    db.client.start_session = AsyncMock(return_value=_async_context(mock_session))
    return OperationRunner(Storage(db, supports_atomic_transactions=True), Settings())


@pytest.fixture
def saga_runner():
    return OperationRunner(Storage(MagicMock(), supports_atomic_transactions=False), Settings())


def _recorder():
    calls = []

    def track(name, result=None, fail=False):
        async def fn(session):
            calls.append((name, session))
            if fail:
                raise ValidationError(f"{name} failed")
            return result
        return fn

    return calls, track


@pytest.mark.asyncio
class TestAtomicPath:
    async def test_steps_share_one_session(self, atomic_runner, mock_session):
        calls, track = _recorder()

        async def body(unit):
            await unit.step("first", track("first"))
            await unit.step("second", track("second"))
            return {"done": True}

        result = await atomic_runner.run("sample", body)

        assert result.atomic is True
        assert result.completed_steps == ["first", "second"]
        assert result["done"] is True
        assert [session for _, session in calls] == [mock_session, mock_session]

    async def test_failure_aborts_without_compensation(self, atomic_runner, mock_session):
        calls, track = _recorder()

        async def body(unit):
            await unit.step("first", track("first"), track("undo_first"))
            await unit.step("second", track("second", fail=True))

        with pytest.raises(ValidationError):
            await atomic_runner.run("sample", body)

        assert [name for name, _ in calls] == ["first", "second"]
        exit_args = mock_session.transaction_ctx.__aexit__.call_args[0]
        assert exit_args[0] is ValidationError


@pytest.mark.asyncio
class TestCompensatingPath:
    async def test_success(self, saga_runner):
        calls, track = _recorder()

        async def body(unit):
            value = await unit.step("first", track("first", result=7), track("undo_first"))
            return {"value": value}

        result = await saga_runner.run("sample", body)

        assert result.atomic is False
        assert result["value"] == 7
        assert calls == [("first", None)]

    async def test_compensates_in_reverse_order(self, saga_runner):
        calls, track = _recorder()

        async def body(unit):
            await unit.step("first", track("first"), track("undo_first"))
            await unit.step("second", track("second"), track("undo_second"))
            await unit.step("third", track("third", fail=True), track("undo_third"))

        with pytest.raises(ValidationError):
            await saga_runner.run("sample", body)

        assert [name for name, _ in calls] == ["first", "second", "third", "undo_second", "undo_first"]

    async def test_irreversible_step_reports_partial_application(self, saga_runner):
        calls, track = _recorder()

        async def body(unit):
            await unit.step("delete_debt", track("delete_debt"))
            await unit.step("restock", track("restock", fail=True))

        with pytest.raises(PartialApplicationError) as exc_info:
            await saga_runner.run("sample", body)

        error = exc_info.value
        assert error.failed_step == "restock"
        assert error.outstanding_steps == ["delete_debt"]
        assert isinstance(error.cause, ValidationError)

    async def test_failed_compensation_reports_partial_application(self, saga_runner):
        calls, track = _recorder()

        async def body(unit):
            await unit.step("first", track("first"), track("undo_first"))
            await unit.step("second", track("second"), track("undo_second", fail=True))
            await unit.step("third", track("third", fail=True))

        with pytest.raises(PartialApplicationError) as exc_info:
            await saga_runner.run("sample", body)

        assert exc_info.value.completed_steps == ["first", "second"]
        assert exc_info.value.compensated_steps == []
        assert "undo_first" not in [name for name, _ in calls]


@pytest.mark.asyncio
class TestRetries:
    async def test_conflict_is_retried_once(self, saga_runner):
        attempts = []

        async def body(unit):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConcurrencyConflictError("lost race")
            return {"attempts": len(attempts)}

        result = await saga_runner.run("sample", body)

        assert result["attempts"] == 2

    async def test_conflict_gives_up(self, saga_runner):
        async def body(unit):
            raise ConcurrencyConflictError("lost race")

        with pytest.raises(ConcurrencyConflictError):
            await saga_runner.run("sample", body)

    async def test_storage_failure_becomes_internal_error(self, saga_runner):
        async def body(unit):
            raise AutoReconnect("connection closed")

        with pytest.raises(InternalError) as exc_info:
            await saga_runner.run("sample", body)

        assert isinstance(exc_info.value.__cause__, AutoReconnect)
