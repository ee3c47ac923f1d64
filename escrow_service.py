"""
Escrow Ledger Service

This module owns escrow account balances for marketplace contracts. It holds
a manager's funds against a contract, releases them to the talent in
portions, refunds them to the manager, and keeps every account inside its
state machine.

Features:
    - Account creation with a commission snapshot
    - Two-phase funding and refunds around the payment gateway
    - Incremental releases with milestone bookkeeping
    - Idempotent gateway webhook application, deposit and refund reconciliation
    - Cancellable auto-release after a configurable delay
    - Per-account single-writer locking with bounded conflict retries

Balances are only ever mutated inside ``repository.locked()``. The gateway
is never called while an account lock is held: the ledger records a
``pending`` transaction, releases the lock, calls the gateway in a worker
thread and re-acquires the lock to apply the outcome.

Dependencies:
    - escrow_repository.py: persistence contract (PostgreSQL or in-memory)
    - payment_gateway.py: card processor adapter
    - commission_engine.py: platform fee quotes
    - contracts.py: contract collaborator
    - notifications.py: fire-and-forget notifications
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from audit_trail import AuditTrail, new_entry
from commission_engine import CommissionEngine, CommissionTransactionType, UserType
from escrow_errors import (
    ConcurrencyConflictError,
    GatewayError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from escrow_models import (
    RELEASABLE_STATUSES,
    AuditAction,
    ContractStatus,
    EscrowAccount,
    EscrowStatus,
    EscrowTransaction,
    GatewayEvent,
    NotificationEvent,
    TransactionStatus,
    TransactionType,
)
from escrow_repository import EscrowRepository, UnitOfWork
from payment_gateway import (
    EVENT_INTENT_FAILED,
    EVENT_INTENT_SUCCEEDED,
    EVENT_REFUND_UPDATED,
    INTENT_EVENTS,
    INTENT_FAILED_STATUSES,
    INTENT_SUCCEEDED,
    REFUND_EVENTS,
    REFUND_FAILED_STATUSES,
    REFUND_SUCCEEDED,
    SETTLED,
    PaymentGateway,
    settlement_outcome,
)
from utils import format_currency, mask_sensitive_data, quantize_money, utc_now, validate_amount

logger = logging.getLogger(__name__)

T = TypeVar('T')

SYSTEM_ACTOR = "system"
AUTO_RELEASE_ACTOR = "system:auto_release"
GATEWAY_ACTOR = "system:gateway"


@dataclass
class LedgerSettings:
    """Tunables of the ledger, usually built from ``config.Config``."""
    default_currency: str = 'usd'
    auto_release_enabled: bool = True
    auto_release_delay_hours: int = 72
    lock_timeout: float = 5.0
    conflict_max_retries: int = 3
    conflict_backoff_base: float = 0.05

    @classmethod
    def from_config(cls, config) -> 'LedgerSettings':
        return cls(
            default_currency=config.default_currency,
            auto_release_enabled=config.auto_release_enabled,
            auto_release_delay_hours=config.auto_release_delay_hours,
            lock_timeout=config.lock_timeout_seconds,
            conflict_max_retries=config.conflict_max_retries,
            conflict_backoff_base=config.conflict_backoff_base,
        )


@dataclass
class FundingResult:
    """
    Outcome of a funding attempt.

    ``status`` is ``funded`` when money is held, or the gateway's
    intermediate state (``requires_action``, ``processing``) when the client
    still has work to do; ``client_secret`` is set in that case.
    """
    status: str
    account: EscrowAccount
    transaction: EscrowTransaction
    client_secret: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'escrow_account': self.account.to_dict(),
            'transaction': self.transaction.to_dict(),
            'client_secret': self.client_secret,
        }


@dataclass
class RefundResult:
    """Outcome of a refund request; ``status`` is ``refunded`` or ``pending``."""
    status: str
    account: EscrowAccount
    transaction: EscrowTransaction

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'escrow_account': self.account.to_dict(),
            'transaction': self.transaction.to_dict(),
        }


@dataclass
class _Outcome:
    """What a locked operation did, for the side effects that run after commit."""
    account: EscrowAccount
    transaction: Optional[EscrowTransaction] = None
    funded: bool = False
    released: Optional[Decimal] = None
    refunded: Optional[Decimal] = None
    failed: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


def is_auto_release_eligible(account: EscrowAccount) -> bool:
    """Whether an auto-release job may run (or be armed) for the account."""
    controls = account.admin_controls
    return (
        account.status in RELEASABLE_STATUSES
        and not controls.is_frozen
        and not controls.dispute_resolution_mode
        and controls.auto_release_enabled
        and not controls.requires_manual_approval
        and account.available_balance > 0
    )


def _txn_id() -> str:
    return str(uuid.uuid4())


class EscrowLedger:
    """
    Core escrow ledger service.

    The only component allowed to mutate balances. Every collaborator is
    injected so tests can swap in fakes.

    Attributes:
        repository: Account/transaction/audit persistence
        gateway: Payment gateway adapter
        contracts: Contract collaborator
        commission: Commission engine used at account creation
        notifier: Notification dispatcher (optional)
        scheduler: Auto-release scheduler (optional, attached after start-up)
        clock: Callable returning the current aware datetime
        settings: Ledger tunables
    """

    def __init__(
        self,
        repository: EscrowRepository,
        gateway: PaymentGateway,
        contracts,
        commission: CommissionEngine,
        notifier=None,
        scheduler=None,
        clock: Callable[[], datetime] = utc_now,
        settings: Optional[LedgerSettings] = None
    ):
        self.repository = repository
        self.gateway = gateway
        self.contracts = contracts
        self.commission = commission
        self.notifier = notifier
        self.scheduler = scheduler
        self.clock = clock
        self.settings = settings or LedgerSettings()
        self.audit = AuditTrail(repository)
        logger.info("EscrowLedger initialized successfully")

    def attach_scheduler(self, scheduler) -> None:
        self.scheduler = scheduler

    # ==================== LOCKING ====================

    async def mutate(self, escrow_id: str, operation: Callable[[UnitOfWork], T]) -> T:
        """
        Run ``operation`` on the account's UnitOfWork under the account lock.

        ``operation`` is synchronous: nothing awaits while the lock is held
        besides the store itself. Lock timeouts are retried with jittered
        exponential backoff before ConcurrencyConflictError surfaces.

        Raises:
            NotFoundError: If the account does not exist
            ConcurrencyConflictError: If the lock stays contended after all retries
        """
        attempt = 0
        while True:
            try:
                async with self.repository.locked(escrow_id, self.settings.lock_timeout) as uow:
                    return operation(uow)
            except ConcurrencyConflictError:
                attempt += 1
                if attempt > self.settings.conflict_max_retries:
                    logger.error(f"Giving up on escrow {escrow_id} after {attempt} lock conflicts")
                    raise
                delay = self.settings.conflict_backoff_base * (2 ** (attempt - 1))
                delay *= 1 + random.random()
                logger.warning(
                    f"Lock conflict on escrow {escrow_id}, retry {attempt}/"
                    f"{self.settings.conflict_max_retries} in {delay:.3f}s"
                )
                await asyncio.sleep(delay)

    # ==================== GUARDS ====================

    @staticmethod
    def check_account_state(
        account: EscrowAccount,
        allowed_states: Iterable[EscrowStatus],
        check_frozen: bool = True
    ) -> None:
        """
        Verify the account may be mutated.

        Raises:
            StateError: If the account is frozen or its status is not allowed
        """
        if check_frozen and account.admin_controls.is_frozen:
            raise StateError(
                f"Escrow account {account.id} is frozen",
                {
                    'escrow_id': account.id,
                    'frozen': True,
                    'frozen_reason': account.admin_controls.frozen_reason,
                },
            )

        allowed = [EscrowStatus(s) for s in allowed_states]
        if account.status not in allowed:
            raise StateError(
                f"Invalid state transition. Current state: {account.status.value}, "
                f"allowed states: {[s.value for s in allowed]}",
                {'escrow_id': account.id, 'status': account.status.value},
            )

    def _parse_amount(self, amount: Any, currency: str) -> Decimal:
        is_valid, value, error = validate_amount(amount, currency)
        if not is_valid:
            raise ValidationError(error, {'amount': str(amount)})
        return value

    async def _audit_frozen_rejection(
        self,
        error: StateError,
        escrow_id: str,
        action: AuditAction,
        performed_by: Optional[str],
        reason: str,
        amount: Any = None
    ) -> None:
        """Record a money movement refused because the account is frozen."""
        if not error.details.get('frozen'):
            return
        account = await self.repository.get_account(escrow_id)
        value = None
        if amount is not None:
            is_valid, parsed, _ = validate_amount(amount, account.currency)
            value = parsed if is_valid else None
        await self.audit.record_rejection(
            escrow_id,
            action,
            performed_by or account.manager_id,
            reason,
            self.clock(),
            error,
            amount=value,
        )

    @staticmethod
    def releasable(uow: UnitOfWork) -> Decimal:
        """Available balance minus what in-flight refunds have reserved."""
        return uow.account.available_balance - uow.reserved_for_refunds()

    # ==================== ACCOUNT CREATION ====================

    async def create(self, contract_id: str, performed_by: Optional[str] = None) -> EscrowAccount:
        """
        Open an escrow account for an accepted contract.

        Args:
            contract_id: Contract to hold funds for
            performed_by: Caller id recorded in the audit trail (defaults to the manager)

        Returns:
            The new account in ``created`` status

        Raises:
            NotFoundError: If the contract does not exist
            StateError: If the contract is not accepted or already has an account
        """
        contract = await self.contracts.get_contract(contract_id)

        if contract.status != ContractStatus.ACCEPTED.value:
            raise StateError(
                "Can only create escrow for accepted contracts",
                {'contract_id': contract_id, 'contract_status': contract.status},
            )

        if await self.repository.get_account_by_contract(contract_id):
            raise StateError(
                "Escrow account already exists for this contract",
                {'contract_id': contract_id},
            )

        currency = (contract.currency or self.settings.default_currency).lower()
        total = self._parse_amount(contract.total_amount, currency)

        quote = await self.commission.quote(
            contract.manager_id,
            UserType.MANAGER,
            total,
            transaction_type=CommissionTransactionType.JOB_PAYMENT,
            job_category=contract.job_category,
            currency=currency,
        )

        customer_ref = None
        if contract.manager_email:
            customer_ref = await asyncio.to_thread(
                self.gateway.create_customer, contract.manager_email, contract.manager_name
            )

        now = self.clock()
        account = EscrowAccount(
            id=str(uuid.uuid4()),
            contract_id=contract_id,
            manager_id=contract.manager_id,
            talent_id=contract.talent_id,
            total_amount=total,
            gateway_customer_ref=customer_ref,
            currency=currency,
            platform_fee_percentage=quote.effective_rate,
            platform_fee_amount=quote.amount,
            commission_setting_id=quote.setting_id,
            created_at=now,
            updated_at=now,
        )
        account.admin_controls.auto_release_enabled = self.settings.auto_release_enabled
        account.admin_controls.auto_release_delay = self.settings.auto_release_delay_hours

        entry = new_entry(
            account.id,
            AuditAction.CREATED,
            performed_by or contract.manager_id,
            f"Escrow created for contract {contract_id}",
            now,
            amount=total,
            metadata={
                'platform_fee_amount': str(quote.amount),
                'commission_setting_id': quote.setting_id,
                'default_fee': quote.is_default,
            },
        )
        await self.repository.insert_account(account, entry)

        logger.info(
            f"Escrow {account.id} created for contract {contract_id}: "
            f"{format_currency(total, currency)}, fee {format_currency(quote.amount, currency)}"
        )

        await self._update_contract(contract_id, ContractStatus.ACTIVE)
        return account

    # ==================== FUNDING FLOW ====================

    async def fund(
        self,
        escrow_id: str,
        payment_method_ref: str,
        performed_by: Optional[str] = None
    ) -> FundingResult:
        """
        Charge the manager and hold the contract amount in escrow.

        The charge is ``total_amount + platform_fee_amount``. A pending
        deposit is written before the gateway call; a second ``fund`` while
        it is open is rejected.

        Raises:
            StateError: If the account is frozen, not in ``created`` or has a pending deposit
            GatewayError: If the gateway declines or fails; the deposit is marked failed
        """
        if not payment_method_ref:
            raise ValidationError("payment_method_ref is required")

        def open_deposit(uow: UnitOfWork) -> EscrowTransaction:
            account = uow.account
            self.check_account_state(account, [EscrowStatus.CREATED])
            if uow.pending(TransactionType.DEPOSIT):
                raise StateError(
                    "A funding attempt is already in progress for this escrow",
                    {'escrow_id': account.id},
                )
            key = f"deposit-{uuid.uuid4()}"
            txn = EscrowTransaction(
                id=_txn_id(),
                escrow_id=account.id,
                type=TransactionType.DEPOSIT,
                amount=account.total_amount + account.platform_fee_amount,
                gateway_ref=key,
                idempotency_key=key,
                description="Escrow funding",
                commission_setting_id=account.commission_setting_id,
                fee_amount=account.platform_fee_amount,
                created_at=self.clock(),
            )
            uow.add_transaction(txn)
            return txn

        try:
            deposit = await self.mutate(escrow_id, open_deposit)
        except StateError as e:
            await self._audit_frozen_rejection(e, escrow_id, AuditAction.FUNDED, performed_by, "Escrow funding")
            raise
        account = await self.repository.get_account(escrow_id)

        logger.info(
            f"Funding escrow {escrow_id}: charging {format_currency(deposit.amount, account.currency)} "
            f"with {mask_sensitive_data(payment_method_ref)}"
        )

        try:
            intent = await asyncio.to_thread(
                self.gateway.create_payment_intent,
                deposit.amount,
                account.currency,
                account.gateway_customer_ref,
                payment_method_ref,
                deposit.idempotency_key,
                {
                    'escrow_id': escrow_id,
                    'contract_id': account.contract_id,
                    'transaction_id': deposit.id,
                    'type': 'escrow_funding',
                },
            )
        except GatewayError as e:
            await self.mutate(escrow_id, lambda uow: self._fail_transaction(uow, deposit.id, e.message))
            logger.error(f"Funding of escrow {escrow_id} failed at the gateway: {e.message}")
            raise

        actor = performed_by or account.manager_id

        def apply_intent(uow: UnitOfWork) -> _Outcome:
            txn = uow.get_transaction(deposit.id)
            if txn.status != TransactionStatus.PENDING:
                # A webhook settled it while the gateway call was in flight
                return _Outcome(uow.account, txn, extra={'status': txn.status.value})
            txn.gateway_ref = intent.ref
            uow.update_transaction(txn)
            if intent.status == INTENT_SUCCEEDED:
                self._settle_deposit(uow, txn, actor)
                return _Outcome(uow.account, txn, funded=True)
            if intent.status in INTENT_FAILED_STATUSES:
                self._fail_transaction(uow, txn.id, f"Payment intent {intent.status}")
                return _Outcome(uow.account, txn, failed=True)
            return _Outcome(uow.account, txn)

        outcome = await self.mutate(escrow_id, apply_intent)

        if outcome.failed:
            raise GatewayError(
                f"Payment was not completed: {intent.status}",
                retryable=False,
                details={'escrow_id': escrow_id, 'gateway_status': intent.status},
            )

        if outcome.funded:
            await self._after_funded(outcome.account)
            return FundingResult('funded', outcome.account, outcome.transaction)

        if outcome.account.status == EscrowStatus.FUNDED:
            return FundingResult('funded', outcome.account, outcome.transaction)

        logger.info(f"Escrow {escrow_id} funding awaits client action: {intent.status}")
        return FundingResult(intent.status, outcome.account, outcome.transaction, intent.client_secret)

    def _settle_deposit(self, uow: UnitOfWork, txn: EscrowTransaction, performed_by: str) -> None:
        account = uow.account
        now = self.clock()
        txn.status = TransactionStatus.COMPLETED
        txn.processed_at = now
        uow.update_transaction(txn)

        account.held_amount = account.total_amount
        account.status = EscrowStatus.FUNDED
        account.funded_at = now
        uow.save_account(now)

        uow.append_audit(new_entry(
            account.id,
            AuditAction.FUNDED,
            performed_by,
            "Escrow funded",
            now,
            amount=account.held_amount,
            metadata={
                'transaction_id': txn.id,
                'gateway_ref': txn.gateway_ref,
                'charged': str(txn.amount),
                'fee_amount': str(txn.fee_amount),
            },
        ))
        logger.info(
            f"Escrow {account.id} funded: {format_currency(account.held_amount, account.currency)} held"
        )

    def _fail_transaction(self, uow: UnitOfWork, txn_id: str, message: str) -> EscrowTransaction:
        txn = uow.get_transaction(txn_id)
        if txn.status == TransactionStatus.PENDING:
            txn.status = TransactionStatus.FAILED
            txn.processed_at = self.clock()
            txn.description = f"{txn.description} (failed: {message})".strip()
            uow.update_transaction(txn)
            logger.warning(f"{txn.type.value} {txn.id} on escrow {txn.escrow_id} failed: {message}")
        return txn

    async def _after_funded(self, account: EscrowAccount) -> None:
        self.schedule_auto_release(account)
        await self._notify(
            NotificationEvent.ESCROW_FUNDED,
            account.talent_id,
            "Escrow Funded",
            f"{format_currency(account.held_amount, account.currency)} is now held in escrow "
            f"for your contract.",
            account,
        )

    # ==================== RELEASE FLOW ====================

    def apply_release(
        self,
        uow: UnitOfWork,
        amount: Decimal,
        performed_by: str,
        reason: str,
        action: AuditAction = AuditAction.RELEASED,
        milestone_id: Optional[str] = None,
        enforce_available: bool = True,
        metadata: Optional[Dict[str, Any]] = None
    ) -> EscrowTransaction:
        """
        Append a completed release and move it into ``released_amount``.

        Callers check state first. Status becomes ``completed`` once
        everything held is released; a disputed account stays disputed
        until then.

        Raises:
            InsufficientFundsError: If ``amount`` exceeds the releasable balance
        """
        account = uow.account
        releasable = self.releasable(uow)
        if enforce_available and amount > releasable:
            raise InsufficientFundsError(
                f"Insufficient funds in escrow: requested "
                f"{format_currency(amount, account.currency)}, available "
                f"{format_currency(releasable, account.currency)}",
                {
                    'escrow_id': account.id,
                    'requested': str(amount),
                    'available': str(releasable),
                },
            )

        now = self.clock()
        txn = EscrowTransaction(
            id=_txn_id(),
            escrow_id=account.id,
            type=TransactionType.RELEASE,
            amount=amount,
            status=TransactionStatus.COMPLETED,
            description=reason or "Funds released to talent",
            milestone_id=milestone_id,
            created_at=now,
            processed_at=now,
        )
        uow.add_transaction(txn)

        account.released_amount += amount
        if account.released_amount >= account.held_amount:
            account.status = EscrowStatus.COMPLETED
        elif account.status != EscrowStatus.DISPUTED:
            account.status = EscrowStatus.PARTIAL_RELEASE
        uow.save_account(now)

        entry_metadata = {'transaction_id': txn.id, 'milestone_id': milestone_id}
        entry_metadata.update(metadata or {})
        uow.append_audit(new_entry(
            account.id, action, performed_by, reason or "Funds released", now,
            amount=amount, metadata=entry_metadata,
        ))
        return txn

    async def release(
        self,
        escrow_id: str,
        amount: Any,
        milestone_id: Optional[str] = None,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None
    ) -> EscrowAccount:
        """
        Release part of the held funds to the talent.

        Args:
            escrow_id: Escrow account id
            amount: Amount to release (major units)
            milestone_id: Contract milestone paid by this release (optional)
            notes: Free-text reason recorded on the transaction and audit entry
            performed_by: Caller id (defaults to the manager)

        Returns:
            Updated account

        Raises:
            StateError: If the account is frozen or not funded/partially released
            InsufficientFundsError: If ``amount`` exceeds the available balance
        """
        def operation(uow: UnitOfWork) -> _Outcome:
            account = uow.account
            self.check_account_state(account, RELEASABLE_STATUSES)
            value = self._parse_amount(amount, account.currency)
            txn = self.apply_release(
                uow,
                value,
                performed_by or account.manager_id,
                notes or "Funds released to talent",
                milestone_id=milestone_id,
            )
            return _Outcome(uow.account, txn, released=value)

        try:
            outcome = await self.mutate(escrow_id, operation)
        except StateError as e:
            await self._audit_frozen_rejection(
                e, escrow_id, AuditAction.RELEASED, performed_by, notes or "Funds released to talent", amount
            )
            raise
        self.cancel_auto_release(escrow_id)

        account = outcome.account
        logger.info(
            f"Released {format_currency(outcome.released, account.currency)} from escrow "
            f"{escrow_id}; available {format_currency(account.available_balance, account.currency)}"
        )
        await self._after_release(account, outcome.released, milestone_id)
        return account

    async def _after_release(
        self,
        account: EscrowAccount,
        amount: Decimal,
        milestone_id: Optional[str] = None
    ) -> None:
        if milestone_id:
            try:
                await self.contracts.mark_milestone_paid(account.contract_id, milestone_id)
            except Exception as e:
                logger.error(
                    f"Failed to mark milestone {milestone_id} of contract "
                    f"{account.contract_id} paid: {e}"
                )
        if account.status == EscrowStatus.COMPLETED:
            await self._update_contract(account.contract_id, ContractStatus.COMPLETED)
        await self._notify(
            NotificationEvent.FUNDS_RELEASED,
            account.talent_id,
            "Payment Released",
            f"{format_currency(amount, account.currency)} has been released to you.",
            account,
        )

    async def auto_release(self, escrow_id: str) -> Optional[EscrowAccount]:
        """
        Release the whole available balance if the account is still eligible.

        Fired by the scheduler. A no-op (returns None) when the account has
        been frozen, disputed, put under manual approval or emptied since
        the job was armed.
        """
        def operation(uow: UnitOfWork) -> Optional[_Outcome]:
            account = uow.account
            if not is_auto_release_eligible(account):
                return None
            value = self.releasable(uow)
            if value <= 0:
                return None
            txn = self.apply_release(
                uow,
                value,
                AUTO_RELEASE_ACTOR,
                f"Automatic release after {account.admin_controls.auto_release_delay}h",
            )
            return _Outcome(uow.account, txn, released=value)

        outcome = await self.mutate(escrow_id, operation)
        if outcome is None:
            logger.info(f"Auto-release skipped for escrow {escrow_id}: no longer eligible")
            return None

        logger.info(
            f"Auto-released {format_currency(outcome.released, outcome.account.currency)} "
            f"from escrow {escrow_id}"
        )
        await self._after_release(outcome.account, outcome.released)
        return outcome.account

    # ==================== REFUND FLOW ====================

    async def refund(
        self,
        escrow_id: str,
        amount: Any,
        reason: str,
        performed_by: Optional[str] = None,
        allow_disputed: bool = False,
        check_frozen: bool = True
    ) -> RefundResult:
        """
        Return part of the held funds to the manager through the gateway.

        The refunded amount is reserved while the gateway call is in flight
        so a concurrent release cannot spend it.

        Args:
            escrow_id: Escrow account id
            amount: Amount to refund (major units)
            reason: Why the funds go back
            performed_by: Caller id (defaults to the manager)
            allow_disputed: Also accept ``disputed`` accounts (dispute resolution)
            check_frozen: Reject frozen accounts

        Returns:
            RefundResult with status ``refunded`` or ``pending``

        Raises:
            ValidationError: If the reason is missing or the amount is invalid
            StateError: If the account is frozen or in the wrong status
            InsufficientFundsError: If ``amount`` exceeds the available balance
            GatewayError: If the gateway refuses the refund
        """
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")

        allowed = set(RELEASABLE_STATUSES)
        if allow_disputed:
            allowed.add(EscrowStatus.DISPUTED)

        def open_refund(uow: UnitOfWork):
            account = uow.account
            self.check_account_state(account, allowed, check_frozen=check_frozen)
            value = self._parse_amount(amount, account.currency)
            releasable = self.releasable(uow)
            if value > releasable:
                raise InsufficientFundsError(
                    f"Insufficient funds in escrow: requested "
                    f"{format_currency(value, account.currency)}, available "
                    f"{format_currency(releasable, account.currency)}",
                    {'escrow_id': account.id, 'requested': str(value), 'available': str(releasable)},
                )
            deposit = next(
                (t for t in uow.transactions
                 if t.type == TransactionType.DEPOSIT and t.status == TransactionStatus.COMPLETED),
                None,
            )
            if deposit is None:
                raise StateError("No completed deposit to refund against", {'escrow_id': account.id})

            key = f"refund-{uuid.uuid4()}"
            txn = EscrowTransaction(
                id=_txn_id(),
                escrow_id=account.id,
                type=TransactionType.REFUND,
                amount=value,
                gateway_ref=key,
                idempotency_key=key,
                description=reason,
                created_at=self.clock(),
            )
            uow.add_transaction(txn)
            return txn, deposit.gateway_ref

        try:
            refund_txn, payment_ref = await self.mutate(escrow_id, open_refund)
        except StateError as e:
            await self._audit_frozen_rejection(e, escrow_id, AuditAction.REFUNDED, performed_by, reason, amount)
            raise
        self.cancel_auto_release(escrow_id)

        try:
            result = await asyncio.to_thread(
                self.gateway.refund_payment,
                payment_ref,
                refund_txn.amount,
                refund_txn.idempotency_key,
                {'escrow_id': escrow_id, 'transaction_id': refund_txn.id},
            )
        except GatewayError as e:
            await self.mutate(escrow_id, lambda uow: self._fail_transaction(uow, refund_txn.id, e.message))
            logger.error(f"Refund on escrow {escrow_id} failed at the gateway: {e.message}")
            raise

        def apply_refund(uow: UnitOfWork) -> _Outcome:
            txn = uow.get_transaction(refund_txn.id)
            if txn.status != TransactionStatus.PENDING:
                return _Outcome(uow.account, txn, extra={'status': txn.status.value})
            txn.gateway_ref = result.ref
            uow.update_transaction(txn)
            if result.status == REFUND_SUCCEEDED:
                actor = performed_by or uow.account.manager_id
                self._settle_refund(uow, txn, actor)
                return _Outcome(uow.account, txn, refunded=txn.amount)
            if result.status in REFUND_FAILED_STATUSES:
                self._fail_transaction(uow, txn.id, f"Refund {result.status}")
                return _Outcome(uow.account, txn, failed=True)
            return _Outcome(uow.account, txn)

        outcome = await self.mutate(escrow_id, apply_refund)

        if outcome.failed:
            raise GatewayError(
                f"Refund was not completed: {result.status}",
                retryable=False,
                details={'escrow_id': escrow_id, 'gateway_status': result.status},
            )

        if outcome.refunded is not None:
            await self._after_refund(outcome.account, outcome.refunded, reason)
            return RefundResult('refunded', outcome.account, outcome.transaction)

        status = 'refunded' if outcome.transaction.status == TransactionStatus.COMPLETED else 'pending'
        return RefundResult(status, outcome.account, outcome.transaction)

    def _settle_refund(self, uow: UnitOfWork, txn: EscrowTransaction, performed_by: str) -> None:
        account = uow.account
        now = self.clock()
        txn.status = TransactionStatus.COMPLETED
        txn.processed_at = now
        uow.update_transaction(txn)

        account.refunded_amount += txn.amount
        if account.released_amount + account.refunded_amount == account.held_amount:
            account.status = EscrowStatus.REFUNDED
        uow.save_account(now)

        uow.append_audit(new_entry(
            account.id,
            AuditAction.REFUNDED,
            performed_by,
            txn.description,
            now,
            amount=txn.amount,
            metadata={'transaction_id': txn.id, 'gateway_ref': txn.gateway_ref},
        ))
        logger.info(
            f"Refunded {format_currency(txn.amount, account.currency)} from escrow {account.id}"
        )

    async def _after_refund(self, account: EscrowAccount, amount: Decimal, reason: str) -> None:
        await self._notify(
            NotificationEvent.ESCROW_REFUNDED,
            account.manager_id,
            "Escrow Refunded",
            f"{format_currency(amount, account.currency)} has been refunded to you. Reason: {reason}",
            account,
        )

    # ==================== GATEWAY EVENTS ====================

    def _attach_gateway_ref(self, uow: UnitOfWork, txn_id: str, ref: str) -> EscrowTransaction:
        """Swap the idempotency-key placeholder of a pending transaction for the gateway's ref."""
        txn = uow.get_transaction(txn_id)
        if txn.status == TransactionStatus.PENDING and txn.gateway_ref == txn.idempotency_key:
            txn.gateway_ref = ref
            uow.update_transaction(txn)
            logger.info(f"{txn.type.value} {txn.id} on escrow {txn.escrow_id} linked to gateway ref {ref}")
        return txn

    async def apply_gateway_event(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Apply an asynchronous gateway confirmation to its pending transaction.

        The transaction is matched by gateway ref, or by the ``transaction_id``
        metadata when its ref was never written back (the gateway call went
        through but recording the outcome did not). Idempotent: only
        ``pending`` transactions are touched, so a replayed event reports
        ``duplicate`` and changes nothing.

        Returns:
            Dict with ``result`` (applied, pending, duplicate or ignored) and ids
        """
        txn = await self.repository.find_transaction_by_gateway_ref(event.ref)
        if txn is None and event.transaction_id:
            txn = await self.repository.get_transaction(event.transaction_id)
            if txn is not None and txn.gateway_ref not in (txn.idempotency_key, event.ref):
                logger.warning(
                    f"Gateway event {event.event_id} names transaction {txn.id}, "
                    f"which is linked to another ref"
                )
                return {'result': 'ignored', 'reason': 'reference mismatch'}
        if txn is None:
            logger.warning(f"Gateway event {event.event_id} references unknown ref {event.ref}")
            return {'result': 'ignored', 'reason': 'unknown reference'}

        if event.event_type in INTENT_EVENTS:
            expected = TransactionType.DEPOSIT
        elif event.event_type in REFUND_EVENTS:
            expected = TransactionType.REFUND
        else:
            expected = None
        if expected is None or txn.type != expected:
            logger.warning(
                f"Gateway event {event.event_type} does not apply to {txn.type.value} {txn.id}"
            )
            return {'result': 'ignored', 'reason': 'event does not match transaction type'}

        base = {'escrow_id': txn.escrow_id, 'transaction_id': txn.id}
        if txn.status != TransactionStatus.PENDING:
            logger.info(f"Duplicate gateway event {event.event_id} for transaction {txn.id}")
            return {'result': 'duplicate', **base}

        settlement = settlement_outcome(event)
        if settlement is None:
            await self.mutate(txn.escrow_id, lambda uow: self._attach_gateway_ref(uow, txn.id, event.ref))
            logger.info(f"{txn.type.value} {txn.id} still {event.status} at the gateway")
            return {'result': 'pending', **base, 'gateway_status': event.status}

        def operation(uow: UnitOfWork) -> Optional[_Outcome]:
            current = self._attach_gateway_ref(uow, txn.id, event.ref)
            if current.status != TransactionStatus.PENDING:
                return None
            if settlement == SETTLED and current.type == TransactionType.DEPOSIT:
                self._settle_deposit(uow, current, GATEWAY_ACTOR)
                return _Outcome(uow.account, current, funded=True)
            if settlement == SETTLED:
                self._settle_refund(uow, current, GATEWAY_ACTOR)
                return _Outcome(uow.account, current, refunded=current.amount)
            self._fail_transaction(uow, current.id, event.failure_message or event.status or event.event_type)
            return _Outcome(uow.account, current, failed=True)

        outcome = await self.mutate(txn.escrow_id, operation)
        if outcome is None:
            return {'result': 'duplicate', **base}

        logger.info(f"Applied gateway event {event.event_type} to transaction {txn.id}")
        if outcome.funded:
            await self._after_funded(outcome.account)
        elif outcome.refunded is not None:
            await self._after_refund(outcome.account, outcome.refunded, outcome.transaction.description)

        return {'result': 'applied', **base, 'status': outcome.account.status.value}

    async def reconcile_deposit(self, escrow_id: str) -> Dict[str, Any]:
        """
        Poll the gateway for an open pending deposit and settle it like a webhook would.

        A deposit whose intent ref was never recorded is looked up at the
        gateway by its transaction id.

        Returns:
            Dict with ``result``: nothing_pending, pending, unknown, or the
            result of ``apply_gateway_event``
        """
        transactions = await self.repository.list_transactions(escrow_id)
        pending = [
            t for t in transactions
            if t.type == TransactionType.DEPOSIT and t.status == TransactionStatus.PENDING
        ]
        if not pending:
            return {'result': 'nothing_pending', 'escrow_id': escrow_id}

        txn = pending[0]
        if txn.gateway_ref == txn.idempotency_key:
            intent = await asyncio.to_thread(self.gateway.find_payment_intent, txn.id)
            if intent is None:
                logger.warning(f"Pending deposit {txn.id} has no payment intent at the gateway")
                return {'result': 'unknown', 'escrow_id': escrow_id, 'transaction_id': txn.id}
            ref, status = intent.ref, intent.status
        else:
            ref = txn.gateway_ref
            status = await asyncio.to_thread(self.gateway.retrieve_payment_intent, ref)

        if status == INTENT_SUCCEEDED:
            event_type = EVENT_INTENT_SUCCEEDED
        elif status in INTENT_FAILED_STATUSES:
            event_type = EVENT_INTENT_FAILED
        else:
            await self.mutate(escrow_id, lambda uow: self._attach_gateway_ref(uow, txn.id, ref))
            return {'result': 'pending', 'escrow_id': escrow_id, 'gateway_status': status}

        return await self.apply_gateway_event(GatewayEvent(
            event_id=f"reconcile:{txn.id}",
            event_type=event_type,
            ref=ref,
            failure_message=None if status == INTENT_SUCCEEDED else f"Payment intent {status}",
            status=status,
            transaction_id=txn.id,
        ))

    async def reconcile_refunds(self, escrow_id: str) -> Dict[str, Any]:
        """
        Poll the gateway for every pending refund of an account.

        Returns:
            Dict with ``result`` (nothing_pending or checked) and, when
            checked, one ``apply_gateway_event`` style result per refund
            in ``refunds``
        """
        transactions = sorted(await self.repository.list_transactions(escrow_id), key=lambda t: t.created_at)
        pending = [
            t for t in transactions
            if t.type == TransactionType.REFUND and t.status == TransactionStatus.PENDING
        ]
        if not pending:
            return {'result': 'nothing_pending', 'escrow_id': escrow_id}

        deposit = next(
            (t for t in transactions
             if t.type == TransactionType.DEPOSIT and t.status == TransactionStatus.COMPLETED),
            None,
        )
        results = []
        for txn in pending:
            if txn.gateway_ref != txn.idempotency_key:
                ref = txn.gateway_ref
                status = await asyncio.to_thread(self.gateway.retrieve_refund, ref)
            else:
                found = None
                if deposit is not None:
                    found = await asyncio.to_thread(self.gateway.find_refund, deposit.gateway_ref, txn.id)
                if found is None:
                    logger.warning(f"Pending refund {txn.id} has no refund at the gateway")
                    results.append({'result': 'unknown', 'escrow_id': escrow_id, 'transaction_id': txn.id})
                    continue
                ref, status = found.ref, found.status

            results.append(await self.apply_gateway_event(GatewayEvent(
                event_id=f"reconcile:{txn.id}",
                event_type=EVENT_REFUND_UPDATED,
                ref=ref,
                failure_message=None if status == REFUND_SUCCEEDED else f"Refund {status}",
                status=status,
                transaction_id=txn.id,
            )))

        return {'result': 'checked', 'escrow_id': escrow_id, 'refunds': results}

    # ==================== AUTO-RELEASE ====================

    def schedule_auto_release(self, account: EscrowAccount) -> None:
        if self.scheduler is not None and is_auto_release_eligible(account):
            self.scheduler.schedule(account)

    def cancel_auto_release(self, escrow_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(escrow_id)

    # ==================== QUERIES ====================

    async def get_account(self, escrow_id: str) -> EscrowAccount:
        """
        Raises:
            NotFoundError: If the account does not exist
        """
        account = await self.repository.get_account(escrow_id)
        if account is None:
            raise NotFoundError(f"Escrow account not found: {escrow_id}", {'escrow_id': escrow_id})
        return account

    async def get_by_contract(self, contract_id: str) -> EscrowAccount:
        """
        Raises:
            NotFoundError: If the contract has no escrow account
        """
        account = await self.repository.get_account_by_contract(contract_id)
        if account is None:
            raise NotFoundError(
                f"Escrow account not found for contract {contract_id}",
                {'contract_id': contract_id},
            )
        return account

    async def list_accounts(
        self,
        party_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Dict[str, Any]:
        """
        Paginated accounts where ``party_id`` is the manager or talent.

        Returns:
            Dict with ``accounts`` (available balance attached), ``total``,
            ``page`` and ``total_pages``
        """
        if page < 1:
            raise ValidationError(f"page must be at least 1, got {page}")
        if not 1 <= limit <= 100:
            raise ValidationError(f"limit must be between 1 and 100, got {limit}")
        try:
            status_filter = EscrowStatus(status) if status else None
        except ValueError as e:
            raise ValidationError(f"Unknown escrow status: {status}") from e

        accounts, total = await self.repository.list_accounts(
            party_id=party_id,
            status=status_filter,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return {
            'accounts': [a.to_dict() for a in accounts],
            'total': total,
            'page': page,
            'total_pages': (total + limit - 1) // limit,
        }

    async def list_transactions(self, escrow_id: str) -> List[EscrowTransaction]:
        await self.get_account(escrow_id)
        transactions = await self.repository.list_transactions(escrow_id)
        return sorted(transactions, key=lambda t: t.created_at)

    @staticmethod
    def available_balance(account: EscrowAccount) -> Decimal:
        """held - released - refunded."""
        return quantize_money(account.available_balance, account.currency)

    async def get_statistics(self) -> Dict[str, Any]:
        return await self.repository.get_statistics()

    # ==================== COLLABORATORS ====================

    async def _update_contract(self, contract_id: str, status: ContractStatus) -> None:
        try:
            await self.contracts.update_status(contract_id, status)
        except Exception as e:
            logger.error(f"Failed to mark contract {contract_id} {status.value}: {e}")

    async def _notify(
        self,
        event: NotificationEvent,
        user_id: str,
        title: str,
        message: str,
        account: EscrowAccount
    ) -> None:
        if self.notifier is None:
            logger.debug(f"No notifier configured, skipping {event.value}")
            return
        await self.notifier.notify(
            event,
            user_id,
            title,
            message,
            {
                'escrow_id': account.id,
                'contract_id': account.contract_id,
                'status': account.status.value,
            },
        )

    async def notify_parties(
        self,
        event: NotificationEvent,
        account: EscrowAccount,
        title: str,
        message: str
    ) -> None:
        """Send the same notification to the manager and the talent."""
        for user_id in (account.manager_id, account.talent_id):
            await self._notify(event, user_id, title, message, account)
