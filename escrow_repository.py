"""
Repository contract shared by the PostgreSQL and in-memory stores.

The ledger never talks to a store directly about balances outside of
``locked()``: every balance mutation happens on a ``UnitOfWork`` obtained
under the per-account lock, and the store publishes the staged changes
only when the block exits cleanly. An exception inside the block discards
everything, so a failed operation never leaves a partial write behind.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Dict, List, Optional, Tuple

from escrow_errors import InsufficientFundsError, StateError
from escrow_models import (
    AuditTrailEntry,
    EscrowAccount,
    EscrowStatus,
    EscrowTransaction,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    Working copy of one escrow account and its transactions, held under the
    account lock.

    Attributes:
        account: Mutable copy of the account; call ``save_account`` after
            changing it
        audit_entries: Audit entries committed together with the changes
    """

    def __init__(self, account: EscrowAccount, transactions: List[EscrowTransaction]):
        self.account = account
        self._transactions: Dict[str, EscrowTransaction] = {t.id: t for t in transactions}
        self.new_transaction_ids: List[str] = []
        self.updated_transaction_ids: List[str] = []
        self.audit_entries: List[AuditTrailEntry] = []
        self.account_dirty = False

    # ==================== STAGING ====================

    def save_account(self, now: datetime) -> None:
        """Mark the account copy for write-back and stamp ``updated_at``."""
        self.account.updated_at = now
        self.account_dirty = True

    def add_transaction(self, txn: EscrowTransaction) -> None:
        self._transactions[txn.id] = txn
        self.new_transaction_ids.append(txn.id)

    def update_transaction(self, txn: EscrowTransaction) -> None:
        if txn.id not in self._transactions:
            raise StateError(f"Transaction {txn.id} does not belong to escrow {self.account.id}")
        self._transactions[txn.id] = txn
        if txn.id not in self.new_transaction_ids and txn.id not in self.updated_transaction_ids:
            self.updated_transaction_ids.append(txn.id)

    def append_audit(self, entry: AuditTrailEntry) -> None:
        self.audit_entries.append(entry)

    # ==================== VIEWS ====================

    @property
    def transactions(self) -> List[EscrowTransaction]:
        """All transactions of the account, staged changes included, oldest first."""
        return list(self._transactions.values())

    def get_transaction(self, txn_id: str) -> Optional[EscrowTransaction]:
        return self._transactions.get(txn_id)

    def pending(self, txn_type: TransactionType) -> List[EscrowTransaction]:
        return [
            t for t in self._transactions.values()
            if t.type == txn_type and t.status == TransactionStatus.PENDING
        ]

    def reserved_for_refunds(self) -> Decimal:
        """Amount promised back to the manager by refunds still at the gateway."""
        return sum((t.amount for t in self.pending(TransactionType.REFUND)), Decimal('0'))

    def new_transactions(self) -> List[EscrowTransaction]:
        return [self._transactions[i] for i in self.new_transaction_ids]

    def updated_transactions(self) -> List[EscrowTransaction]:
        return [self._transactions[i] for i in self.updated_transaction_ids]

    # ==================== COMMIT ====================

    def validate(self) -> None:
        """
        Refuse to commit a state that breaks the balance invariants.

        Raises:
            InsufficientFundsError: If released + refunded would exceed held
            StateError: For any other broken invariant
        """
        account = self.account
        problems = account.invariant_violations()

        paid_out = sum(
            (t.amount for t in self._transactions.values()
             if t.status == TransactionStatus.COMPLETED
             and t.type in (TransactionType.RELEASE, TransactionType.REFUND)),
            Decimal('0'),
        )
        if paid_out > account.held_amount:
            problems.append("completed releases and refunds exceed held")

        reserved = self.reserved_for_refunds()
        overdrawn = account.available_balance - reserved < 0 or paid_out > account.held_amount
        if reserved and account.available_balance >= 0 and account.available_balance < reserved:
            problems.append("pending refunds exceed available balance")

        if not problems:
            return

        logger.error(f"Refusing commit for escrow {account.id}: {', '.join(problems)}")
        details = {
            'escrow_id': account.id,
            'violations': problems,
            'held_amount': str(account.held_amount),
            'released_amount': str(account.released_amount),
            'refunded_amount': str(account.refunded_amount),
        }
        if overdrawn:
            raise InsufficientFundsError("Operation would overdraw the escrow balance", details)
        raise StateError("Operation would break the escrow ledger invariants", details)

    def prepare_commit(self) -> None:
        """Validate and bump the account version; called by the store before flushing."""
        self.validate()
        if self.account_dirty:
            self.account.version += 1


class EscrowRepository(ABC):
    """Persistence contract for escrow accounts, transactions and audit entries."""

    @abstractmethod
    async def insert_account(self, account: EscrowAccount, audit_entry: AuditTrailEntry) -> None:
        """
        Persist a new account together with its ``created`` audit entry.

        Raises:
            StateError: If an account already exists for the contract
        """

    @abstractmethod
    def locked(self, escrow_id: str, timeout: float) -> AsyncContextManager[UnitOfWork]:
        """
        Acquire the per-account lock and yield a UnitOfWork.

        Raises:
            NotFoundError: If the account does not exist
            ConcurrencyConflictError: If the lock is not obtained within ``timeout``
        """

    @abstractmethod
    async def get_account(self, escrow_id: str) -> Optional[EscrowAccount]:
        """Last committed snapshot of an account."""

    @abstractmethod
    async def get_account_by_contract(self, contract_id: str) -> Optional[EscrowAccount]:
        pass

    @abstractmethod
    async def list_accounts(
        self,
        party_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        offset: int = 0,
        limit: int = 10
    ) -> Tuple[List[EscrowAccount], int]:
        """Accounts newest first, filtered by party (manager or talent) and status."""

    @abstractmethod
    async def list_transactions(self, escrow_id: str) -> List[EscrowTransaction]:
        pass

    @abstractmethod
    async def get_transaction(self, txn_id: str) -> Optional[EscrowTransaction]:
        pass

    @abstractmethod
    async def find_transaction_by_gateway_ref(self, gateway_ref: str) -> Optional[EscrowTransaction]:
        pass

    @abstractmethod
    async def append_audit(self, entry: AuditTrailEntry) -> None:
        """Append an entry outside of any unit of work (rejected admin attempts)."""

    @abstractmethod
    async def list_audit(self, escrow_id: str) -> List[AuditTrailEntry]:
        """Audit entries of one account, oldest first."""

    @abstractmethod
    async def list_auto_release_candidates(self) -> List[EscrowAccount]:
        """Funded or partially released accounts that have a balance left."""

    @abstractmethod
    async def list_stale_pending_transactions(
        self,
        txn_type: TransactionType,
        older_than: datetime
    ) -> List[EscrowTransaction]:
        """Pending transactions of one type created before ``older_than``, oldest first."""

    @abstractmethod
    async def get_statistics(self) -> Dict[str, Any]:
        """Aggregate totals (value, held, released, refunded, fees) and counts per status."""


class CommissionSettingsStore(ABC):
    """Persistence contract for commission settings."""

    @abstractmethod
    async def list_settings(self) -> List[Any]:
        pass

    @abstractmethod
    async def get_setting(self, setting_id: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def save_setting(self, setting: Any) -> None:
        """Insert or replace a setting by id."""

    @abstractmethod
    async def delete_setting(self, setting_id: str) -> bool:
        pass

    @abstractmethod
    async def increment_promotional_usage(self, setting_id: str) -> None:
        pass
