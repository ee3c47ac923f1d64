"""
In-process implementation of the escrow repository.

Used by the test suite and by ``main.py --memory``. Each account gets its
own ``asyncio.Lock``; writes are staged on deep copies inside a UnitOfWork
and only published when the locked block exits cleanly, so readers never
observe a half-applied mutation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from escrow_errors import ConcurrencyConflictError, NotFoundError, StateError
from escrow_models import (
    AuditTrailEntry,
    EscrowAccount,
    EscrowStatus,
    EscrowTransaction,
    TransactionStatus,
    TransactionType,
)
from escrow_repository import CommissionSettingsStore, EscrowRepository, UnitOfWork

logger = logging.getLogger(__name__)


class MemoryEscrowStore(EscrowRepository):
    """Dict-backed escrow repository with per-account asyncio locks."""

    def __init__(self):
        self._accounts: Dict[str, EscrowAccount] = {}
        self._by_contract: Dict[str, str] = {}
        self._transactions: Dict[str, EscrowTransaction] = {}
        self._audit: Dict[str, List[AuditTrailEntry]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def insert_account(self, account: EscrowAccount, audit_entry: AuditTrailEntry) -> None:
        await asyncio.sleep(0)
        if account.contract_id in self._by_contract:
            raise StateError(
                f"Escrow account already exists for contract {account.contract_id}",
                {'contract_id': account.contract_id},
            )
        self._accounts[account.id] = account.clone()
        self._by_contract[account.contract_id] = account.id
        self._audit.setdefault(account.id, []).append(audit_entry)

    @asynccontextmanager
    async def locked(self, escrow_id: str, timeout: float) -> AsyncIterator[UnitOfWork]:
        if escrow_id not in self._accounts:
            raise NotFoundError(f"Escrow account not found: {escrow_id}", {'escrow_id': escrow_id})

        lock = self._locks.setdefault(escrow_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError as e:
            raise ConcurrencyConflictError(
                f"Timed out waiting for lock on escrow {escrow_id}",
                {'escrow_id': escrow_id, 'timeout': timeout},
            ) from e

        try:
            uow = UnitOfWork(
                self._accounts[escrow_id].clone(),
                [t.clone() for t in self._transactions.values() if t.escrow_id == escrow_id],
            )
            yield uow
            uow.prepare_commit()
            self._publish(uow)
        finally:
            lock.release()

    def _publish(self, uow: UnitOfWork) -> None:
        if uow.account_dirty:
            self._accounts[uow.account.id] = uow.account.clone()
        for txn in uow.new_transactions() + uow.updated_transactions():
            self._transactions[txn.id] = txn.clone()
        if uow.audit_entries:
            self._audit.setdefault(uow.account.id, []).extend(uow.audit_entries)

    async def get_account(self, escrow_id: str) -> Optional[EscrowAccount]:
        await asyncio.sleep(0)
        account = self._accounts.get(escrow_id)
        return account.clone() if account else None

    async def get_account_by_contract(self, contract_id: str) -> Optional[EscrowAccount]:
        escrow_id = self._by_contract.get(contract_id)
        return await self.get_account(escrow_id) if escrow_id else None

    async def list_accounts(
        self,
        party_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        offset: int = 0,
        limit: int = 10
    ) -> Tuple[List[EscrowAccount], int]:
        await asyncio.sleep(0)
        matches = [
            a for a in self._accounts.values()
            if (party_id is None or party_id in (a.manager_id, a.talent_id))
            and (status is None or a.status == status)
        ]
        matches.sort(key=lambda a: a.created_at, reverse=True)
        page = [a.clone() for a in matches[offset:offset + limit]]
        return page, len(matches)

    async def list_transactions(self, escrow_id: str) -> List[EscrowTransaction]:
        await asyncio.sleep(0)
        return [t.clone() for t in self._transactions.values() if t.escrow_id == escrow_id]

    async def get_transaction(self, txn_id: str) -> Optional[EscrowTransaction]:
        await asyncio.sleep(0)
        txn = self._transactions.get(txn_id)
        return txn.clone() if txn else None

    async def find_transaction_by_gateway_ref(self, gateway_ref: str) -> Optional[EscrowTransaction]:
        await asyncio.sleep(0)
        for txn in self._transactions.values():
            if txn.gateway_ref == gateway_ref:
                return txn.clone()
        return None

    async def append_audit(self, entry: AuditTrailEntry) -> None:
        await asyncio.sleep(0)
        self._audit.setdefault(entry.escrow_id, []).append(entry)

    async def list_audit(self, escrow_id: str) -> List[AuditTrailEntry]:
        await asyncio.sleep(0)
        return list(self._audit.get(escrow_id, []))

    async def list_auto_release_candidates(self) -> List[EscrowAccount]:
        await asyncio.sleep(0)
        return [
            a.clone() for a in self._accounts.values()
            if a.status in (EscrowStatus.FUNDED, EscrowStatus.PARTIAL_RELEASE)
            and a.available_balance > 0
        ]

    async def list_stale_pending_transactions(
        self,
        txn_type: TransactionType,
        older_than: datetime
    ) -> List[EscrowTransaction]:
        await asyncio.sleep(0)
        stale = [
            t.clone() for t in self._transactions.values()
            if t.type == txn_type
            and t.status == TransactionStatus.PENDING
            and t.created_at is not None and t.created_at < older_than
        ]
        return sorted(stale, key=lambda t: t.created_at)

    async def get_statistics(self) -> Dict[str, Any]:
        await asyncio.sleep(0)
        accounts = list(self._accounts.values())
        zero = Decimal('0')
        by_status = {s.value: 0 for s in EscrowStatus}
        for account in accounts:
            by_status[account.status.value] += 1
        return {
            'total_escrows': len(accounts),
            'total_value': sum((a.total_amount for a in accounts), zero),
            'total_held': sum((a.held_amount for a in accounts), zero),
            'total_released': sum((a.released_amount for a in accounts), zero),
            'total_refunded': sum((a.refunded_amount for a in accounts), zero),
            'platform_fees_collected': sum((a.platform_fee_amount for a in accounts), zero),
            'by_status': by_status,
        }


class MemoryCommissionSettingsStore(CommissionSettingsStore):
    """Commission settings kept in a dict, keyed by setting id."""

    def __init__(self, settings: Optional[List[Any]] = None):
        self._settings: Dict[str, Any] = {}
        for setting in settings or []:
            self._settings[setting.id] = setting

    async def list_settings(self) -> List[Any]:
        return list(self._settings.values())

    async def get_setting(self, setting_id: str) -> Optional[Any]:
        return self._settings.get(setting_id)

    async def save_setting(self, setting: Any) -> None:
        self._settings[setting.id] = setting

    async def delete_setting(self, setting_id: str) -> bool:
        return self._settings.pop(setting_id, None) is not None

    async def increment_promotional_usage(self, setting_id: str) -> None:
        setting = self._settings.get(setting_id)
        if setting is not None:
            setting.promotional.current_users += 1
