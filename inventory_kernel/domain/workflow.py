"""
Approval lifecycle -- table-driven state machines per transaction type.

Pure value objects and one pure function, ``ApprovalStateMachine.transition``.
No I/O.  Legal transitions are data: a (state, event) pair absent from a
type's table raises InvalidTransitionError.

Each Transition declares its effect:

* ``APPLY``   -- entering the target state posts stock movements and journal
  entries (TransactionCoordinator.apply).
* ``REVERSE`` -- entering the target state compensates a previous apply
  (TransactionCoordinator.reverse).  ``compensating_type`` names the record
  created for it.
* ``NONE``    -- status annotation only.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from inventory_kernel.domain.dtos import (
    TransactionEvent,
    TransactionStatus,
    TransactionType,
)
from inventory_kernel.exceptions import InvalidTransitionError

S = TransactionStatus
E = TransactionEvent


class Effect(str, Enum):
    NONE = "none"
    APPLY = "apply"
    REVERSE = "reverse"


@dataclass(frozen=True)
class Transition:
    from_state: TransactionStatus
    event: TransactionEvent
    to_state: TransactionStatus
    effect: Effect = Effect.NONE
    compensating_type: TransactionType | None = None


@dataclass(frozen=True)
class Workflow:
    """
    Lifecycle of one transaction type.

    ``applied_states`` are the states in which the transaction's effects are
    on the ledgers.
    """

    name: str
    description: str
    initial_state: TransactionStatus
    states: tuple[TransactionStatus, ...]
    transitions: tuple[Transition, ...]
    applied_states: tuple[TransactionStatus, ...] = ()
    terminal_states: tuple[TransactionStatus, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"{self.name}: initial state not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"{self.name}: transition {t.from_state}-{t.event}->"
                    f"{t.to_state} references unknown state"
                )
            if t.effect is Effect.APPLY and t.to_state not in self.applied_states:
                raise ValueError(f"{self.name}: apply must enter an applied state")

    def find(self, state: str, event: str) -> Transition | None:
        for t in self.transitions:
            if t.from_state == state and t.event == event:
                return t
        return None


def _cancel(from_state: S) -> Transition:
    return Transition(
        from_state, E.CANCEL, S.CANCELLED, Effect.REVERSE, TransactionType.CANCELLATION
    )


SALE_WORKFLOW = Workflow(
    name="sale",
    description="Customer sale; stock leaves on approve or direct completion",
    initial_state=S.DRAFT,
    states=(S.DRAFT, S.PENDING, S.APPROVED, S.COMPLETED, S.CANCELLED, S.RETURNED),
    transitions=(
        Transition(S.DRAFT, E.SUBMIT, S.PENDING),
        Transition(S.DRAFT, E.COMPLETE, S.COMPLETED, Effect.APPLY),
        Transition(S.PENDING, E.APPROVE, S.APPROVED, Effect.APPLY),
        Transition(S.APPROVED, E.COMPLETE, S.COMPLETED),
        _cancel(S.APPROVED),
        _cancel(S.COMPLETED),
        Transition(
            S.COMPLETED, E.RETURN, S.RETURNED, Effect.REVERSE, TransactionType.SALE_RETURN
        ),
    ),
    applied_states=(S.APPROVED, S.COMPLETED),
    terminal_states=(S.CANCELLED, S.RETURNED),
)

PURCHASE_WORKFLOW = Workflow(
    name="purchase",
    description="Supplier purchase; approved is the applied terminal state",
    initial_state=S.DRAFT,
    states=(S.DRAFT, S.PENDING, S.APPROVED, S.CANCELLED, S.RETURNED),
    transitions=(
        Transition(S.DRAFT, E.SUBMIT, S.PENDING),
        Transition(S.DRAFT, E.APPROVE, S.APPROVED, Effect.APPLY),
        Transition(S.PENDING, E.APPROVE, S.APPROVED, Effect.APPLY),
        _cancel(S.APPROVED),
        Transition(
            S.APPROVED,
            E.RETURN,
            S.RETURNED,
            Effect.REVERSE,
            TransactionType.PURCHASE_RETURN,
        ),
    ),
    applied_states=(S.APPROVED,),
    terminal_states=(S.CANCELLED, S.RETURNED),
)


def _return_workflow(name: str, description: str) -> Workflow:
    return Workflow(
        name=name,
        description=description,
        initial_state=S.DRAFT,
        states=(S.DRAFT, S.PENDING, S.APPROVED, S.CANCELLED, S.POSTED),
        transitions=(
            Transition(S.DRAFT, E.SUBMIT, S.PENDING),
            Transition(S.DRAFT, E.APPROVE, S.APPROVED, Effect.APPLY),
            Transition(S.PENDING, E.APPROVE, S.APPROVED, Effect.APPLY),
            _cancel(S.APPROVED),
        ),
        # POSTED: compensating record written by reverse(), never re-opened
        applied_states=(S.APPROVED, S.POSTED),
        terminal_states=(S.CANCELLED, S.POSTED),
    )


SALE_RETURN_WORKFLOW = _return_workflow(
    "sale_return", "Goods returned by a customer against an applied sale"
)
PURCHASE_RETURN_WORKFLOW = _return_workflow(
    "purchase_return", "Goods returned to a supplier against an applied purchase"
)

BANK_TRANSACTION_WORKFLOW = Workflow(
    name="bank_transaction",
    description="Deposit, withdrawal or transfer between money accounts",
    initial_state=S.DRAFT,
    states=(S.DRAFT, S.PENDING, S.COMPLETED, S.CANCELLED),
    transitions=(
        Transition(S.DRAFT, E.SUBMIT, S.PENDING),
        Transition(S.DRAFT, E.APPROVE, S.COMPLETED, Effect.APPLY),
        Transition(S.PENDING, E.APPROVE, S.COMPLETED, Effect.APPLY),
        _cancel(S.COMPLETED),
    ),
    applied_states=(S.COMPLETED,),
    terminal_states=(S.CANCELLED,),
)

CANCELLATION_WORKFLOW = Workflow(
    name="cancellation",
    description="Compensating record for a cancelled transaction",
    initial_state=S.POSTED,
    states=(S.POSTED,),
    transitions=(),
    applied_states=(S.POSTED,),
    terminal_states=(S.POSTED,),
)

WORKFLOWS: dict[TransactionType, Workflow] = {
    TransactionType.SALE: SALE_WORKFLOW,
    TransactionType.PURCHASE: PURCHASE_WORKFLOW,
    TransactionType.SALE_RETURN: SALE_RETURN_WORKFLOW,
    TransactionType.PURCHASE_RETURN: PURCHASE_RETURN_WORKFLOW,
    TransactionType.BANK_TRANSACTION: BANK_TRANSACTION_WORKFLOW,
    TransactionType.CANCELLATION: CANCELLATION_WORKFLOW,
}


class ApprovalStateMachine:
    """Looks transitions up in the per-type tables."""

    def __init__(self, workflows: dict[TransactionType, Workflow] | None = None):
        self._workflows = workflows or WORKFLOWS

    def workflow(self, transaction_type: str) -> Workflow:
        return self._workflows[TransactionType(transaction_type)]

    def transition(
        self, transaction_type: str, state: str, event: str
    ) -> Transition:
        """
        Return the transition for (state, event).

        Raises:
            InvalidTransitionError: the pair is not in the type's table.
        """
        found = self.workflow(transaction_type).find(state, event)
        if found is None:
            raise InvalidTransitionError(
                TransactionType(transaction_type).value, str(_value(state)), str(_value(event))
            )
        return found

    def is_applied(self, transaction_type: str, state: str) -> bool:
        return state in self.workflow(transaction_type).applied_states

    def apply_event_from(self, transaction_type: str, state: str) -> Transition:
        """
        The transition that applies a transaction from its current state.

        Raises InvalidTransitionError when no applying transition leaves
        ``state`` (already applied, or terminal).
        """
        for t in self.workflow(transaction_type).transitions:
            if t.from_state == state and t.effect is Effect.APPLY:
                return t
        raise InvalidTransitionError(
            TransactionType(transaction_type).value, str(_value(state)), "apply"
        )


def _value(member) -> str:
    return member.value if isinstance(member, Enum) else member
