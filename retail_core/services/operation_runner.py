"""
OperationRunner - executes compound operations.

With transaction support the whole body runs inside one session
transaction and any failure rolls every write back. Without it the body runs
step by step; on failure the registered compensations run newest first. If
one of them fails too, PartialApplicationError reports which steps are
still applied.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from retail_core.core.config import Settings
from retail_core.core.errors import ConcurrencyConflictError, InternalError, PartialApplicationError
from retail_core.db.session import Storage
from retail_core.schemas.operation import OperationResult

logger = logging.getLogger("retail_core.operations")

StepFn = Callable[[Any], Awaitable[Any]]


class OperationUnit:
    """Handed to an operation body; runs and records its steps."""

    def __init__(self, operation: str, session=None, atomic: bool = False):
        self.operation = operation
        self.session = session
        self.atomic = atomic
        self.completed: List[str] = []
        self.current: Optional[str] = None
        self._compensations: List[Tuple[str, Optional[StepFn]]] = []

    async def step(self, name: str, apply: StepFn, compensate: Optional[StepFn] = None) -> Any:
        """
        Run apply(session) and remember compensate for the saga path.

        A step without compensate cannot be undone; if a later step fails it
        is reported as still applied.
        """
        self.current = name
        result = await apply(self.session)
        self.completed.append(name)
        self._compensations.append((name, compensate))
        self.current = None
        return result

    async def compensate(self, cause: BaseException) -> None:
        compensated = []
        irreversible = []
        for name, undo in reversed(self._compensations):
            if undo is None:
                irreversible.append(name)
                continue
            try:
                await undo(None)
            except Exception as exc:
                logger.error("Compensation of %s/%s failed", self.operation, name, exc_info=True)
                raise PartialApplicationError(
                    self.operation, self.completed, compensated, self.current, cause=cause
                ) from exc
            compensated.append(name)
            logger.warning("Compensated %s/%s", self.operation, name)

        if irreversible:
            raise PartialApplicationError(self.operation, self.completed, compensated, self.current, cause=cause)


class OperationRunner:
    def __init__(self, storage: Storage, settings: Settings):
        self.storage = storage
        self.settings = settings

    async def run(
        self, operation: str, body: Callable[[OperationUnit], Awaitable[Optional[Dict[str, Any]]]]
    ) -> OperationResult:
        """
        Run body once, retrying the whole operation after a lost race.

        A retry only happens once the first attempt has been rolled back or
        fully compensated.
        """
        attempts = self.settings.CONFLICT_RETRIES + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._run_once(operation, body)
            except ConcurrencyConflictError:
                if attempt >= attempts:
                    raise
                logger.warning("%s lost a concurrent update, retrying (%d/%d)", operation, attempt, attempts - 1)
        raise ConcurrencyConflictError(f"{operation} did not complete")

    async def _run_once(self, operation: str, body) -> OperationResult:
        try:
            if self.storage.supports_atomic_transactions:
                return await self._run_atomic(operation, body)
            return await self._run_saga(operation, body)
        except PyMongoError as exc:
            logger.error("Storage failure during %s", operation, exc_info=True)
            raise InternalError(f"Storage failure during {operation}") from exc

    async def _run_atomic(self, operation: str, body) -> OperationResult:
        async with self.storage.transaction() as session:
            unit = OperationUnit(operation, session=session, atomic=True)
            payload = await body(unit)
        logger.info("%s committed (%d steps)", operation, len(unit.completed))
        return OperationResult(operation=operation, atomic=True, completed_steps=unit.completed, payload=payload or {})

    async def _run_saga(self, operation: str, body) -> OperationResult:
        unit = OperationUnit(operation, session=None, atomic=False)
        try:
            payload = await body(unit)
        except Exception as exc:
            if unit.completed:
                logger.warning("%s failed at %s, compensating %d steps", operation, unit.current, len(unit.completed))
                await unit.compensate(exc)
            raise
        logger.info("%s applied without transaction (%d steps)", operation, len(unit.completed))
        return OperationResult(operation=operation, atomic=False, completed_steps=unit.completed, payload=payload or {})
