import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from escrow_errors import ConcurrencyConflictError, InsufficientFundsError
from escrow_memory_store import MemoryEscrowStore
from escrow_models import EscrowStatus, TransactionType
from escrow_service import LedgerSettings


class InterleavingStore(MemoryEscrowStore):
    """
    Memory store that hands control back to the event loop after taking the
    snapshot and again before publishing, the way a database round trip
    does. Only the account lock keeps two mutations from reading the same
    balance.
    """

    @asynccontextmanager
    async def locked(self, escrow_id, timeout):
        async with super().locked(escrow_id, timeout) as uow:
            await asyncio.sleep(0)
            yield uow
            await asyncio.sleep(0)


class NoopLock:
    async def acquire(self):
        return True

    def release(self):
        pass


@pytest.fixture
def store():
    return InterleavingStore()


async def test_simultaneous_releases_cannot_double_spend(ledger, funded_escrow):
    await ledger.release(funded_escrow.id, '400.00')

    results = await asyncio.gather(
        ledger.release(funded_escrow.id, '600.00'),
        ledger.release(funded_escrow.id, '600.00'),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientFundsError)

    account = await ledger.get_account(funded_escrow.id)
    assert account.released_amount == Decimal('1000.00')
    assert account.status == EscrowStatus.COMPLETED


async def test_interleaved_releases_overspend_without_the_account_lock(ledger, store, funded_escrow):
    store._locks[funded_escrow.id] = NoopLock()
    await ledger.release(funded_escrow.id, '400.00')

    results = await asyncio.gather(
        ledger.release(funded_escrow.id, '600.00'),
        ledger.release(funded_escrow.id, '600.00'),
        return_exceptions=True,
    )

    assert not any(isinstance(r, Exception) for r in results)
    releases = [
        t for t in await ledger.list_transactions(funded_escrow.id) if t.type == TransactionType.RELEASE
    ]
    account = await ledger.get_account(funded_escrow.id)
    assert sum(t.amount for t in releases) > account.released_amount


async def test_many_concurrent_small_releases_stay_within_balance(ledger, funded_escrow):
    results = await asyncio.gather(
        *[ledger.release(funded_escrow.id, '150.00') for _ in range(10)],
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 6
    assert all(isinstance(r, InsufficientFundsError) for r in results if isinstance(r, Exception))

    account = await ledger.get_account(funded_escrow.id)
    assert account.released_amount == Decimal('900.00')
    assert account.available_balance == Decimal('100.00')
    releases = [
        t for t in await ledger.list_transactions(funded_escrow.id) if t.type == TransactionType.RELEASE
    ]
    assert sum(t.amount for t in releases) == account.released_amount


async def test_release_racing_refund_keeps_invariant(ledger, funded_escrow):
    results = await asyncio.gather(
        ledger.release(funded_escrow.id, '700.00'),
        ledger.refund(funded_escrow.id, '700.00', 'Cancelled'),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InsufficientFundsError)) == 1

    account = await ledger.get_account(funded_escrow.id)
    assert account.released_amount + account.refunded_amount == Decimal('700.00')
    assert account.available_balance == Decimal('300.00')


async def test_lock_timeout_surfaces_conflict_without_changes(ledger, store, funded_escrow):
    ledger.settings = LedgerSettings(lock_timeout=0.05, conflict_max_retries=2, conflict_backoff_base=0.001)

    async with store.locked(funded_escrow.id, 1.0):
        with pytest.raises(ConcurrencyConflictError):
            await ledger.release(funded_escrow.id, '100.00')

    account = await ledger.get_account(funded_escrow.id)
    assert account.released_amount == Decimal('0')
    assert account.version == funded_escrow.version


async def test_conflict_is_retried_until_lock_frees(ledger, store, funded_escrow):
    ledger.settings = LedgerSettings(lock_timeout=0.05, conflict_max_retries=5, conflict_backoff_base=0.01)
    holding = asyncio.Event()

    async def hold_lock():
        async with store.locked(funded_escrow.id, 1.0):
            holding.set()
            await asyncio.sleep(0.08)

    holder = asyncio.create_task(hold_lock())
    await holding.wait()

    account = await ledger.release(funded_escrow.id, '100.00')
    await holder

    assert account.released_amount == Decimal('100.00')
