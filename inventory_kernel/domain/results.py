"""
Boundary results.

TransactionCoordinator operations never raise kernel exceptions to their
callers.  They return a CoreResult: ``ok`` with a value, or a CoreError whose
``kind`` is enough to decide what to show or whether to retry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from inventory_kernel.domain.events import DomainEvent
from inventory_kernel.exceptions import ErrorKind, InventoryKernelError

T = TypeVar("T")


@dataclass(frozen=True)
class CoreError:
    kind: ErrorKind
    code: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    @classmethod
    def from_exception(cls, exc: InventoryKernelError) -> CoreError:
        return cls(kind=exc.kind, code=exc.code, message=str(exc), detail=exc.details())


@dataclass(frozen=True)
class CoreResult(Generic[T]):
    value: T | None = None
    error: CoreError | None = None
    events: tuple[DomainEvent, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, events: tuple[DomainEvent, ...] = ()) -> CoreResult[T]:
        return cls(value=value, events=events)

    @classmethod
    def failure(cls, error: CoreError) -> CoreResult[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """The value, or a RuntimeError naming the error kind."""
        if self.error is not None:
            raise RuntimeError(f"{self.error.kind.value}: {self.error.message}")
        return self.value
