"""
Concurrent coordinator calls against a shared database.

Each worker thread owns its own session and coordinator, as production
callers do.  The database is a temporary SQLite file so the threads hold
separate connections and contend on real locks.  SQLite serializes
writers on the whole database, so the loser either waits and then sees the
reduced stock, or times out and retries.
"""

import threading
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker

import inventory_kernel.models  # noqa: F401
from inventory_kernel.db.base import Base
from inventory_kernel.db.immutability import register_immutability_listeners
from inventory_kernel.domain.clock import DeterministicClock
from inventory_kernel.domain.dtos import BusinessTransactionDTO, TransactionType
from inventory_kernel.domain.policy import DEFAULT_ROLE_CODES, KernelPolicy
from inventory_kernel.exceptions import ErrorKind
from inventory_kernel.models.account import AccountType, LedgerAccount
from inventory_kernel.models.product import Product, Warehouse
from inventory_kernel.models.stock import StockLot
from inventory_kernel.services.retry import RetryPolicy, run_with_retry
from inventory_kernel.services.transaction_coordinator import TransactionCoordinator
from tests.conftest import CURRENCY, line

pytestmark = pytest.mark.slow_locks

WORKERS = 2

_TYPE_BY_PREFIX = {
    "1": AccountType.ASSET,
    "2": AccountType.LIABILITY,
    "3": AccountType.EQUITY,
    "4": AccountType.INCOME,
    "5": AccountType.EXPENSE,
}


@pytest.fixture
def shared_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )

    @event.listens_for(engine, "connect")
    def _foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    register_immutability_listeners()
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def seeded(shared_factory):
    """Chart of accounts, one warehouse, one product with 10 on hand."""
    policy = KernelPolicy()
    session = shared_factory()
    for role, code in DEFAULT_ROLE_CODES.items():
        session.add(
            LedgerAccount(
                id=uuid4(),
                code=code,
                name=role,
                account_type=_TYPE_BY_PREFIX[code[0]].value,
                currency=CURRENCY,
            )
        )
    warehouse = Warehouse(id=uuid4(), code="MAIN", name="Main")
    product = Product(
        id=uuid4(), sku="RACE-1", name="Contended", price=1500, cost_price=800, currency=CURRENCY
    )
    session.add_all([warehouse, product])
    session.commit()

    coordinator = TransactionCoordinator(session, policy, clock=DeterministicClock())
    received = coordinator.apply(
        BusinessTransactionDTO(
            transaction_type=TransactionType.PURCHASE,
            currency=CURRENCY,
            warehouse_id=warehouse.id,
            items=(line(product.id, "10", "8.00"),),
        )
    )
    assert received.ok, received.error
    session.close()
    return policy, warehouse.id, product.id


def _run_workers(target, count=WORKERS):
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = []

    def worker(index):
        try:
            barrier.wait(timeout=10)
            results[index] = target()
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    assert not errors, errors
    return results


class TestOversell:
    def test_two_sales_cannot_both_take_the_last_units(self, shared_factory, seeded):
        policy, warehouse_id, product_id = seeded
        retry = RetryPolicy(max_attempts=10, base_delay_ms=5, max_delay_ms=100)

        def sell_six():
            session = shared_factory()
            try:
                coordinator = TransactionCoordinator(
                    session, policy, clock=DeterministicClock()
                )
                dto = BusinessTransactionDTO(
                    transaction_type=TransactionType.SALE,
                    currency=CURRENCY,
                    warehouse_id=warehouse_id,
                    items=(line(product_id, "6", "15.00"),),
                )
                return run_with_retry(lambda: coordinator.apply(dto), retry)
            finally:
                session.close()

        results = _run_workers(sell_six)

        assert sum(1 for r in results if r.ok) == 1
        failure = next(r for r in results if not r.ok)
        assert failure.error.kind in (
            ErrorKind.INSUFFICIENT_STOCK,
            ErrorKind.CONCURRENT_MODIFICATION,
        )

        session = shared_factory()
        lot = session.execute(select(StockLot)).scalar_one()
        assert Decimal(lot.quantity_on_hand) == Decimal("4")
        session.close()


class TestSequenceRace:
    def test_concurrent_drafts_get_distinct_references(self, shared_factory, seeded):
        policy, warehouse_id, product_id = seeded
        retry = RetryPolicy(max_attempts=10, base_delay_ms=5, max_delay_ms=100)

        def draft_three():
            session = shared_factory()
            references = []
            try:
                coordinator = TransactionCoordinator(
                    session, policy, clock=DeterministicClock()
                )
                for _ in range(3):
                    dto = BusinessTransactionDTO(
                        transaction_type=TransactionType.PURCHASE,
                        currency=CURRENCY,
                        warehouse_id=warehouse_id,
                        items=(line(product_id, "1", "8.00"),),
                    )
                    result = run_with_retry(lambda: coordinator.create_draft(dto), retry)
                    if result.ok:
                        references.append(result.value.reference_number)
                return references
            finally:
                session.close()

        results = _run_workers(draft_three)

        references = [ref for batch in results for ref in batch]
        assert len(references) == len(set(references))
