"""
Ledger errors.

Every failure raised by the ledgers and the coordinator derives from
LedgerError so a request layer can map the whole family in one place.
"""

from typing import List, Optional


class LedgerError(Exception):
    """Base exception for all ledger failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """The caller's input is wrong and can be corrected."""


class NotFoundError(LedgerError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id=None):
        message = f"{entity} not found" if entity_id is None else f"{entity} not found: {entity_id}"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class InsufficientStockError(LedgerError):
    """A location does not hold the requested quantity."""

    def __init__(self, product: str, required: float, available: float, location: str = "shop"):
        super().__init__(
            f"Insufficient {location} stock for {product}: "
            f"required {required}, available {available}"
        )
        self.product = product
        self.required = required
        self.available = available
        self.location = location


class InsufficientBalanceError(LedgerError):
    """A debtor or cash balance cannot cover the requested amount."""

    def __init__(self, message: str, required: float = 0.0, available: float = 0.0):
        super().__init__(message)
        self.required = required
        self.available = available


class ConcurrencyConflictError(LedgerError):
    """Lost a conditional-update race. Retrying the whole operation is safe."""


class InternalError(LedgerError):
    """Storage or transport failure. Detail is logged, not shown to end users."""

    public_message = "Internal ledger error"


class PartialApplicationError(LedgerError):
    """
    A non-atomic compound operation failed and could not be fully compensated.

    completed_steps lists what was applied, compensated_steps what was undone
    again; the difference is what needs manual reconciliation.
    """

    def __init__(
        self,
        operation: str,
        completed_steps: List[str],
        compensated_steps: List[str],
        failed_step: Optional[str],
        cause: Optional[BaseException] = None,
    ):
        outstanding = [s for s in completed_steps if s not in compensated_steps]
        super().__init__(
            f"{operation} partially applied: failed at {failed_step!r}, "
            f"outstanding steps {outstanding}"
        )
        self.operation = operation
        self.completed_steps = list(completed_steps)
        self.compensated_steps = list(compensated_steps)
        self.failed_step = failed_step
        self.cause = cause

    @property
    def outstanding_steps(self) -> List[str]:
        return [s for s in self.completed_steps if s not in self.compensated_steps]
