"""
Typed exception hierarchy for the inventory kernel.

Every error raised inside the kernel is a subclass of
``InventoryKernelError``.  Each class carries:

  1. a ``code`` class attribute (machine-readable, stable across releases)
  2. a ``kind`` class attribute (``ErrorKind``), the coarse category the
     TransactionCoordinator reports across its boundary
  3. structured attributes holding the values that caused the failure

Callers outside the kernel never see these exceptions directly: the
coordinator catches them, rolls back, and returns a ``CoreError`` carrying
the kind, code, message and attributes.  Inside the kernel they are raised
and caught by type, never by message text.

Hierarchy::

    InventoryKernelError
    |
    +-- InsufficientStockError          INSUFFICIENT_STOCK
    +-- CurrencyMismatchError           CURRENCY_MISMATCH
    +-- UnbalancedEntryError            UNBALANCED_ENTRY
    +-- InvalidTransitionError          INVALID_TRANSITION
    +-- MovementNotFoundError           MOVEMENT_NOT_FOUND
    +-- AlreadyReversedError            ALREADY_REVERSED
    +-- ConcurrentModificationError     CONCURRENT_MODIFICATION
    +-- ValidationError                 VALIDATION
    |   +-- ProductNotFoundError
    |   +-- WarehouseNotFoundError
    |   +-- AccountNotFoundError
    |   +-- TransactionNotFoundError
    |   +-- PostingNotFoundError
    |   +-- ReservationNotFoundError
    |   +-- ReturnQuantityExceededError
    |
    +-- ImmutabilityViolationError      IMMUTABILITY_VIOLATION

Only ``CONCURRENT_MODIFICATION`` is retryable.  Every other kind is terminal
for the call that produced it.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Boundary error categories reported by the TransactionCoordinator."""

    INSUFFICIENT_STOCK = "insufficient_stock"
    CURRENCY_MISMATCH = "currency_mismatch"
    UNBALANCED_ENTRY = "unbalanced_entry"
    INVALID_TRANSITION = "invalid_transition"
    MOVEMENT_NOT_FOUND = "movement_not_found"
    ALREADY_REVERSED = "already_reversed"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    VALIDATION = "validation"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.CONCURRENT_MODIFICATION


class InventoryKernelError(Exception):
    """
    Base exception for all inventory kernel errors.

    Subclasses must define ``code``.  ``kind`` defaults to VALIDATION so a
    new subclass that forgets to set it is still reported as terminal.
    """

    code: str = "INVENTORY_KERNEL_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION

    def details(self) -> dict:
        """Structured attributes, suitable for logs and CoreError.detail."""
        return {
            key: value
            for key, value in vars(self).items()
            if not key.startswith("_")
        }


# Stock


class InsufficientStockError(InventoryKernelError):
    """An outbound movement or reservation exceeds available stock."""

    code: str = "INSUFFICIENT_STOCK"
    kind: ErrorKind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, product_id, warehouse_id, requested, available):
        self.product_id = str(product_id)
        self.warehouse_id = str(warehouse_id)
        self.requested = str(requested)
        self.available = str(available)
        super().__init__(
            f"Insufficient stock for product {product_id} in warehouse "
            f"{warehouse_id}: requested {requested}, available {available}"
        )


class MovementNotFoundError(InventoryKernelError):
    """The stock movement to reverse does not exist."""

    code: str = "MOVEMENT_NOT_FOUND"
    kind: ErrorKind = ErrorKind.MOVEMENT_NOT_FOUND

    def __init__(self, movement_id):
        self.movement_id = str(movement_id)
        super().__init__(f"Stock movement {movement_id} not found")


# Money and postings


class CurrencyMismatchError(InventoryKernelError):
    """Operation mixes two currencies."""

    code: str = "CURRENCY_MISMATCH"
    kind: ErrorKind = ErrorKind.CURRENCY_MISMATCH

    def __init__(self, currency1: str, currency2: str):
        self.currency1 = currency1
        self.currency2 = currency2
        super().__init__(f"Currency mismatch: {currency1} vs {currency2}")


class UnbalancedEntryError(InventoryKernelError):
    """Journal batch debits do not equal credits."""

    code: str = "UNBALANCED_ENTRY"
    kind: ErrorKind = ErrorKind.UNBALANCED_ENTRY

    def __init__(self, debits: str, credits: str, currency: str):
        self.debits = debits
        self.credits = credits
        self.currency = currency
        super().__init__(
            f"Unbalanced entry in {currency}: debits={debits}, credits={credits}"
        )


# Lifecycle


class InvalidTransitionError(InventoryKernelError):
    """The (state, event) pair is not in the transaction type's table."""

    code: str = "INVALID_TRANSITION"
    kind: ErrorKind = ErrorKind.INVALID_TRANSITION

    def __init__(self, transaction_type: str, state: str, event: str):
        self.transaction_type = transaction_type
        self.state = state
        self.event = event
        super().__init__(
            f"Transition '{event}' is not allowed for {transaction_type} "
            f"in state '{state}'"
        )


class AlreadyReversedError(InventoryKernelError):
    """A movement, posting or transaction already has a reversal."""

    code: str = "ALREADY_REVERSED"
    kind: ErrorKind = ErrorKind.ALREADY_REVERSED

    def __init__(self, entity_type: str, entity_id, reversed_by_id=None):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reversed_by_id = str(reversed_by_id) if reversed_by_id else None
        super().__init__(f"{entity_type} {entity_id} is already reversed")


# Concurrency


class ConcurrentModificationError(InventoryKernelError):
    """Lock or version conflict.  The caller may retry the whole call."""

    code: str = "CONCURRENT_MODIFICATION"
    kind: ErrorKind = ErrorKind.CONCURRENT_MODIFICATION

    def __init__(self, entity_type: str, entity_id, reason: str = ""):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}"
            + (f": {reason}" if reason else "")
        )


# Validation


class ValidationError(InventoryKernelError):
    """Request is malformed or references missing or inactive records."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class ProductNotFoundError(ValidationError):
    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id, reason: str = "not found"):
        self.product_id = str(product_id)
        super().__init__(f"Product {product_id} {reason}", field="product_id")


class WarehouseNotFoundError(ValidationError):
    code: str = "WAREHOUSE_NOT_FOUND"

    def __init__(self, warehouse_id, reason: str = "not found"):
        self.warehouse_id = str(warehouse_id)
        super().__init__(
            f"Warehouse {warehouse_id} {reason}", field="warehouse_id"
        )


class AccountNotFoundError(ValidationError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref, reason: str = "not found"):
        self.account_ref = str(account_ref)
        super().__init__(f"Account {account_ref} {reason}", field="account_id")


class TransactionNotFoundError(ValidationError):
    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id):
        self.transaction_id = str(transaction_id)
        super().__init__(
            f"Transaction {transaction_id} not found", field="transaction_id"
        )


class PostingNotFoundError(ValidationError):
    """No journal batch exists for the transaction id."""

    code: str = "POSTING_NOT_FOUND"

    def __init__(self, transaction_id):
        self.transaction_id = str(transaction_id)
        super().__init__(
            f"No journal posting for transaction {transaction_id}",
            field="transaction_id",
        )


class ReservationNotFoundError(ValidationError):
    code: str = "RESERVATION_NOT_FOUND"

    def __init__(self, token, status: str | None = None):
        self.token = str(token)
        self.status = status
        detail = f" (status {status})" if status else ""
        super().__init__(
            f"No active reservation {token}{detail}", field="token"
        )


class ReturnQuantityExceededError(ValidationError):
    code: str = "RETURN_QUANTITY_EXCEEDED"

    def __init__(self, product_id, requested, returnable):
        self.product_id = str(product_id)
        self.requested = str(requested)
        self.returnable = str(returnable)
        super().__init__(
            f"Return of {requested} for product {product_id} exceeds "
            f"returnable quantity {returnable}",
            field="items",
        )


# Immutability


class ImmutabilityViolationError(InventoryKernelError):
    """Attempted to modify or delete an append-only or referenced record."""

    code: str = "IMMUTABILITY_VIOLATION"
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, entity_type: str, entity_id, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


def error_kind_for(exc: BaseException) -> ErrorKind | None:
    """Return the boundary kind for a kernel exception, None otherwise."""
    if isinstance(exc, InventoryKernelError):
        return exc.kind
    return None
