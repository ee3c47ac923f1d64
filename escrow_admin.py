"""
Escrow Admin Control Layer

Admin-only operations on escrow accounts:
- Freeze / unfreeze
- Dispute mode, dispute open / resolve
- Emergency release (bypasses the frozen block) and admin refunds
- Platform fee adjustment and control configuration
- Admin notes and compliance flags
- Listing, statistics and commission settings management

Every escrow operation goes through ``admin_only``: the caller must be in
``ADMIN_USER_IDS``, and whether the call succeeds or is rejected it leaves
an audit entry. Successful calls commit their entry atomically with the
change and update ``admin_controls.last_admin_action``.

Dependencies:
    - escrow_service.py: ledger and its locking
    - commission_engine.py: commission settings
"""

import functools
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from audit_trail import new_entry
from commission_engine import CommissionSetting, initialize_defaults
from escrow_errors import (
    AuthorizationError,
    EscrowError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from escrow_models import (
    RELEASABLE_STATUSES,
    TERMINAL_STATUSES,
    AdminActionSnapshot,
    AuditAction,
    AuditTrailEntry,
    DisputeResolution,
    EscrowAccount,
    EscrowStatus,
    NotificationEvent,
    PriorityLevel,
)
from escrow_repository import UnitOfWork
from escrow_service import EscrowLedger, RefundResult, _Outcome, is_auto_release_eligible
from utils import format_currency, quantize_money, sanitize_input, to_decimal, validate_amount

logger = logging.getLogger(__name__)

CONTROL_FIELDS = ('auto_release_enabled', 'auto_release_delay', 'requires_manual_approval', 'priority_level')
COMPLIANCE_FIELDS = ('kyc_verified', 'aml_checked', 'sanctions_cleared', 'risk_score', 'notes')


def admin_only(action):
    """
    Restrict an escrow operation to admins and audit every attempt.

    The wrapped method takes ``(self, escrow_id, admin_id, *, reason, ...)``.
    Rejections (authorization included) are recorded with
    ``{"rejected": True, "error": ...}`` metadata and re-raised.

    Args:
        action: AuditAction of the rejection entries, or a callable choosing
            it from the call's keyword arguments
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, escrow_id: str, admin_id: str, *args, **kwargs):
            admin_id = str(admin_id)
            reason = kwargs.get('reason') or kwargs.get('note') or ''
            try:
                if admin_id not in self.admin_user_ids:
                    logger.warning(f"Unauthorized admin access attempt by user {admin_id}")
                    raise AuthorizationError(
                        "This operation is only available to administrators",
                        {'user_id': admin_id},
                    )
                if not reason.strip():
                    raise ValidationError("A reason is required for admin actions")
                return await func(self, escrow_id, admin_id, *args, **kwargs)
            except EscrowError as e:
                amount = kwargs.get('amount')
                try:
                    amount = to_decimal(amount) if amount is not None else None
                except ValueError:
                    amount = None
                attempted = action(kwargs) if callable(action) else action
                await self.ledger.audit.record_rejection(
                    escrow_id, attempted, admin_id, reason, self.ledger.clock(), e, amount=amount
                )
                raise
        return wrapper
    return decorator


def dispute_mode_action(enabled: Any) -> AuditAction:
    return AuditAction.DISPUTED if enabled else AuditAction.RESOLVED


class EscrowAdmin:
    """
    Admin control layer wrapping the escrow ledger.

    Attributes:
        ledger: Escrow ledger
        admin_user_ids: Ids allowed to perform admin operations
        settings_store: Commission settings storage (optional)
    """

    def __init__(self, ledger: EscrowLedger, admin_user_ids: Iterable[str], settings_store=None):
        self.ledger = ledger
        self.admin_user_ids = {str(uid) for uid in admin_user_ids}
        self.settings_store = settings_store

    def is_admin(self, user_id: str) -> bool:
        return str(user_id) in self.admin_user_ids

    def _require_admin(self, admin_id: str) -> None:
        if not self.is_admin(admin_id):
            logger.warning(f"Unauthorized admin access attempt by user {admin_id}")
            raise AuthorizationError(
                "This operation is only available to administrators",
                {'user_id': str(admin_id)},
            )

    def _record(
        self,
        uow: UnitOfWork,
        action: AuditAction,
        admin_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Stage the audit entry and the last-admin-action snapshot of a successful call."""
        now = self.ledger.clock()
        reason = sanitize_input(reason)
        uow.account.admin_controls.last_admin_action = AdminActionSnapshot(
            action=action, performed_by=admin_id, reason=reason, timestamp=now,
        )
        uow.save_account(now)
        uow.append_audit(new_entry(
            uow.account.id, action, admin_id, reason, now, amount=amount, metadata=metadata,
        ))

    @staticmethod
    def _reject_terminal(account: EscrowAccount) -> None:
        if account.status in TERMINAL_STATUSES:
            raise StateError(
                f"Escrow account {account.id} is {account.status.value}; no further changes allowed",
                {'escrow_id': account.id, 'status': account.status.value},
            )

    # ==================== FREEZE ====================

    @admin_only(AuditAction.FROZEN)
    async def freeze(self, escrow_id: str, admin_id: str, *, reason: str) -> EscrowAccount:
        """
        Freeze an account: fund, release and refund are rejected until unfrozen.

        Cancels the pending auto-release and notifies both parties.
        """
        def operation(uow: UnitOfWork) -> EscrowAccount:
            account = uow.account
            self._reject_terminal(account)
            controls = account.admin_controls
            if controls.is_frozen:
                raise StateError(f"Escrow account {account.id} is already frozen", {'escrow_id': account.id})
            controls.is_frozen = True
            controls.frozen_reason = sanitize_input(reason)
            controls.frozen_by = admin_id
            controls.frozen_at = self.ledger.clock()
            self._record(uow, AuditAction.FROZEN, admin_id, reason)
            return account

        account = await self.ledger.mutate(escrow_id, operation)
        self.ledger.cancel_auto_release(escrow_id)
        logger.info(f"Escrow {escrow_id} frozen by admin {admin_id}: {reason}")

        await self.ledger.notify_parties(
            NotificationEvent.ESCROW_FROZEN,
            account,
            "Escrow Frozen",
            f"The escrow for your contract has been frozen by an administrator. Reason: {reason}",
        )
        return account

    @admin_only(AuditAction.UNFROZEN)
    async def unfreeze(self, escrow_id: str, admin_id: str, *, reason: str) -> EscrowAccount:
        """Lift a freeze and re-arm the auto-release when the account is eligible."""
        def operation(uow: UnitOfWork) -> EscrowAccount:
            account = uow.account
            controls = account.admin_controls
            if not controls.is_frozen:
                raise StateError(f"Escrow account {account.id} is not frozen", {'escrow_id': account.id})
            controls.is_frozen = False
            controls.frozen_reason = None
            controls.frozen_by = None
            controls.frozen_at = None
            self._record(uow, AuditAction.UNFROZEN, admin_id, reason)
            return account

        account = await self.ledger.mutate(escrow_id, operation)
        self.ledger.schedule_auto_release(account)
        logger.info(f"Escrow {escrow_id} unfrozen by admin {admin_id}")
        return account

    # ==================== DISPUTES ====================

    @admin_only(lambda kwargs: dispute_mode_action(kwargs.get('enabled')))
    async def set_dispute_mode(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        enabled: bool,
        reason: str
    ) -> EscrowAccount:
        """
        Toggle dispute-resolution mode; enabling it cancels the auto-release timer.

        Audited as ``disputed`` when enabled and ``resolved`` when disabled.
        """
        def operation(uow: UnitOfWork) -> EscrowAccount:
            account = uow.account
            self._reject_terminal(account)
            controls = account.admin_controls
            before = controls.dispute_resolution_mode
            controls.dispute_resolution_mode = bool(enabled)
            self._record(
                uow, dispute_mode_action(enabled), admin_id, reason,
                metadata={'field': 'dispute_resolution_mode', 'before': before, 'after': bool(enabled)},
            )
            return account

        account = await self.ledger.mutate(escrow_id, operation)
        if enabled:
            self.ledger.cancel_auto_release(escrow_id)
        else:
            self.ledger.schedule_auto_release(account)
        logger.info(f"Dispute mode {'enabled' if enabled else 'disabled'} on escrow {escrow_id}")
        return account

    @admin_only(AuditAction.DISPUTED)
    async def open_dispute(self, escrow_id: str, admin_id: str, *, reason: str) -> EscrowAccount:
        """Put a funded or partially released account on dispute hold."""
        def operation(uow: UnitOfWork) -> EscrowAccount:
            account = uow.account
            self.ledger.check_account_state(account, RELEASABLE_STATUSES, check_frozen=False)
            account.status_before_dispute = account.status
            account.status = EscrowStatus.DISPUTED
            self._record(
                uow, AuditAction.DISPUTED, admin_id, reason,
                metadata={'status_before_dispute': account.status_before_dispute.value},
            )
            return account

        account = await self.ledger.mutate(escrow_id, operation)
        self.ledger.cancel_auto_release(escrow_id)
        logger.info(f"Dispute opened on escrow {escrow_id} by admin {admin_id}")

        await self.ledger.notify_parties(
            NotificationEvent.ESCROW_DISPUTED,
            account,
            "Escrow Disputed",
            f"A dispute has been opened on the escrow for your contract. Reason: {reason}",
        )
        return account

    @admin_only(AuditAction.RESOLVED)
    async def resolve_dispute(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        resolution: str,
        reason: str
    ) -> EscrowAccount:
        """
        Resolve a dispute.

        Args:
            resolution: ``restore`` returns to the pre-dispute status;
                ``release_remaining`` releases the available balance to the
                talent; ``refund_remaining`` refunds it to the manager

        Raises:
            ValidationError: On an unknown resolution
            StateError: If the account is not disputed
        """
        try:
            decision = DisputeResolution(resolution)
        except ValueError as e:
            raise ValidationError(
                f"Unknown resolution '{resolution}'",
                {'allowed': [r.value for r in DisputeResolution]},
            ) from e

        def check_disputed(account: EscrowAccount) -> None:
            self.ledger.check_account_state(account, [EscrowStatus.DISPUTED], check_frozen=False)

        if decision == DisputeResolution.REFUND_REMAINING:
            account = await self.ledger.get_account(escrow_id)
            check_disputed(account)
            remaining = account.available_balance
            if remaining > 0:
                await self.ledger.refund(
                    escrow_id,
                    remaining,
                    f"Dispute resolved: {reason}",
                    performed_by=admin_id,
                    allow_disputed=True,
                    check_frozen=False,
                )

        def operation(uow: UnitOfWork) -> _Outcome:
            account = uow.account
            released = None
            if decision == DisputeResolution.REFUND_REMAINING and account.status == EscrowStatus.REFUNDED:
                pass
            else:
                check_disputed(account)
                account.status = account.status_before_dispute or EscrowStatus.FUNDED
                if decision == DisputeResolution.RELEASE_REMAINING:
                    remaining = self.ledger.releasable(uow)
                    if remaining > 0:
                        self.ledger.apply_release(
                            uow, remaining, admin_id, f"Dispute resolved: {reason}",
                            metadata={'resolution': decision.value},
                        )
                        released = remaining
            account.status_before_dispute = None
            self._record(
                uow, AuditAction.RESOLVED, admin_id, reason,
                metadata={'resolution': decision.value, 'status_after': account.status.value},
            )
            return _Outcome(account, released=released)

        outcome = await self.ledger.mutate(escrow_id, operation)
        account = outcome.account
        logger.info(f"Dispute on escrow {escrow_id} resolved ({decision.value}) by admin {admin_id}")

        if outcome.released:
            await self.ledger._after_release(account, outcome.released)
        elif decision == DisputeResolution.RESTORE:
            self.ledger.schedule_auto_release(account)
        return account

    # ==================== EMERGENCY RELEASE ====================

    @admin_only(AuditAction.EMERGENCY_RELEASE)
    async def emergency_release(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        amount: Any,
        reason: str,
        recipient: Optional[str] = None
    ) -> EscrowAccount:
        """
        Release funds even when the account is frozen.

        The amount is bounded by ``held_amount``. The ledger's commit guard
        still refuses anything beyond the available balance; such requests
        are logged as a warning for product review.

        Raises:
            InsufficientFundsError: If the amount exceeds held (or, at commit, available)
        """
        def operation(uow: UnitOfWork) -> _Outcome:
            account = uow.account
            self.ledger.check_account_state(
                account,
                [EscrowStatus.FUNDED, EscrowStatus.PARTIAL_RELEASE, EscrowStatus.DISPUTED],
                check_frozen=False,
            )
            is_valid, value, error = validate_amount(amount, account.currency)
            if not is_valid:
                raise ValidationError(error, {'amount': str(amount)})
            if value > account.held_amount:
                raise InsufficientFundsError(
                    "Release amount exceeds held amount",
                    {'requested': str(value), 'held_amount': str(account.held_amount)},
                )
            releasable = self.ledger.releasable(uow)
            if value > releasable:
                logger.warning(
                    f"Emergency release of {format_currency(value, account.currency)} on escrow "
                    f"{account.id} is within held ({account.held_amount}) but exceeds available "
                    f"({releasable}); the ledger invariant guard will refuse it"
                )
            target = recipient or account.talent_id
            self.ledger.apply_release(
                uow, value, admin_id, f"Emergency release: {reason}",
                action=AuditAction.EMERGENCY_RELEASE,
                enforce_available=False,
                metadata={'recipient': target},
            )
            self._record_snapshot(uow, AuditAction.EMERGENCY_RELEASE, admin_id, reason)
            return _Outcome(account, released=value)

        outcome = await self.ledger.mutate(escrow_id, operation)
        self.ledger.cancel_auto_release(escrow_id)
        logger.info(
            f"Emergency release of {format_currency(outcome.released, outcome.account.currency)} "
            f"on escrow {escrow_id} by admin {admin_id}"
        )
        await self.ledger._after_release(outcome.account, outcome.released)
        return outcome.account

    # ==================== REFUNDS ====================

    @admin_only(AuditAction.REFUNDED)
    async def refund(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        amount: Any,
        reason: str
    ) -> RefundResult:
        """
        Refund part of the available balance to the manager.

        Unlike ``resolve_dispute(refund_remaining)`` this needs no dispute
        and takes any amount up to the available balance. Disputed accounts
        are accepted; frozen ones are not.

        Raises:
            StateError: If the account is frozen or not funded, partially released or disputed
            InsufficientFundsError: If ``amount`` exceeds the available balance
        """
        allowed = set(RELEASABLE_STATUSES) | {EscrowStatus.DISPUTED}
        account = await self.ledger.get_account(escrow_id)
        self.ledger.check_account_state(account, allowed)

        description = f"Admin-initiated refund: {sanitize_input(reason)}"
        result = await self.ledger.refund(
            escrow_id, amount, description, performed_by=admin_id, allow_disputed=True,
        )
        txn = result.transaction

        def operation(uow: UnitOfWork) -> EscrowAccount:
            if result.status == 'pending':
                # The refunded entry is written when the gateway confirms
                self._record(
                    uow, AuditAction.REFUNDED, admin_id, reason, amount=txn.amount,
                    metadata={'transaction_id': txn.id, 'gateway_status': 'pending'},
                )
            else:
                self._record_snapshot(uow, AuditAction.REFUNDED, admin_id, reason)
            return uow.account

        account = await self.ledger.mutate(escrow_id, operation)
        logger.info(
            f"Admin {admin_id} refunded {format_currency(txn.amount, account.currency)} "
            f"on escrow {escrow_id} ({result.status})"
        )
        return RefundResult(result.status, account, txn)

    def _record_snapshot(self, uow: UnitOfWork, action: AuditAction, admin_id: str, reason: str) -> None:
        uow.account.admin_controls.last_admin_action = AdminActionSnapshot(
            action=action, performed_by=admin_id, reason=sanitize_input(reason),
            timestamp=self.ledger.clock(),
        )
        uow.save_account(self.ledger.clock())

    # ==================== FEES AND CONTROLS ====================

    @admin_only(AuditAction.MANUAL_ADJUSTMENT)
    async def adjust_platform_fee(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        new_percentage: Any,
        reason: str
    ) -> EscrowAccount:
        """Recompute the platform fee from ``total_amount`` at a new rate."""
        try:
            percentage = to_decimal(new_percentage)
        except ValueError as e:
            raise ValidationError(f"Invalid fee percentage: '{new_percentage}'") from e
        if not Decimal('0') <= percentage <= Decimal('100'):
            raise ValidationError(f"Fee percentage must be between 0 and 100, got {percentage}")

        def operation(uow: UnitOfWork) -> EscrowAccount:
            account = uow.account
            self._reject_terminal(account)
            before = {
                'platform_fee_percentage': str(account.platform_fee_percentage),
                'platform_fee_amount': str(account.platform_fee_amount),
                'commission_setting_id': account.commission_setting_id,
            }
            account.platform_fee_percentage = percentage
            account.platform_fee_amount = quantize_money(
                account.total_amount * percentage / Decimal('100'), account.currency
            )
            account.commission_setting_id = None
            after = {
                'platform_fee_percentage': str(account.platform_fee_percentage),
                'platform_fee_amount': str(account.platform_fee_amount),
            }
            self._record(
                uow, AuditAction.MANUAL_ADJUSTMENT, admin_id, reason,
                amount=account.platform_fee_amount,
                metadata={'field': 'platform_fee', 'before': before, 'after': after},
            )
            return account

        account = await self.ledger.mutate(escrow_id, operation)
        logger.info(
            f"Platform fee of escrow {escrow_id} set to {percentage}% "
            f"({format_currency(account.platform_fee_amount, account.currency)}) by admin {admin_id}"
        )
        return account

    @admin_only(AuditAction.MANUAL_ADJUSTMENT)
    async def configure_controls(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        reason: str,
        **changes: Any
    ) -> EscrowAccount:
        """
        Update auto-release and triage controls.

        Accepted keys: auto_release_enabled, auto_release_delay (hours),
        requires_manual_approval, priority_level.
        """
        unknown = set(changes) - set(CONTROL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown control field(s): {sorted(unknown)}")
        if not changes:
            raise ValidationError("No control changes given")

        values = dict(changes)
        if 'auto_release_delay' in values:
            delay = values['auto_release_delay']
            if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
                raise ValidationError(f"auto_release_delay must be a non-negative integer, got {delay!r}")
        if 'priority_level' in values:
            try:
                values['priority_level'] = PriorityLevel(values['priority_level'])
            except ValueError as e:
                raise ValidationError(f"Unknown priority level '{values['priority_level']}'") from e
        for flag in ('auto_release_enabled', 'requires_manual_approval'):
            if flag in values and not isinstance(values[flag], bool):
                raise ValidationError(f"{flag} must be a boolean")

        def operation(uow: UnitOfWork) -> EscrowAccount:
            account = uow.account
            self._reject_terminal(account)
            controls = account.admin_controls
            before, after = {}, {}
            for key, value in values.items():
                current = getattr(controls, key)
                before[key] = current.value if isinstance(current, PriorityLevel) else current
                setattr(controls, key, value)
                after[key] = value.value if isinstance(value, PriorityLevel) else value
            self._record(
                uow, AuditAction.MANUAL_ADJUSTMENT, admin_id, reason,
                metadata={'field': 'admin_controls', 'before': before, 'after': after},
            )
            return account

        account = await self.ledger.mutate(escrow_id, operation)
        if is_auto_release_eligible(account):
            self.ledger.schedule_auto_release(account)
        else:
            self.ledger.cancel_auto_release(escrow_id)
        return account

    # ==================== NOTES AND COMPLIANCE ====================

    @admin_only(AuditAction.NOTE_ADDED)
    async def add_admin_note(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        note: str,
        reason: Optional[str] = None
    ) -> EscrowAccount:
        """Append a note to the account's admin notes; the note doubles as the reason."""
        text = sanitize_input(note, max_length=2000)
        if not text:
            raise ValidationError("Note cannot be empty")

        def operation(uow: UnitOfWork) -> EscrowAccount:
            uow.account.admin_controls.admin_notes.append(text)
            self._record(uow, AuditAction.NOTE_ADDED, admin_id, reason or text, metadata={'note': text})
            return uow.account

        return await self.ledger.mutate(escrow_id, operation)

    @admin_only(AuditAction.MANUAL_ADJUSTMENT)
    async def update_compliance_status(
        self,
        escrow_id: str,
        admin_id: str,
        *,
        reason: str,
        **flags: Any
    ) -> EscrowAccount:
        """
        Update KYC/AML flags.

        Accepted keys: kyc_verified, aml_checked, sanctions_cleared,
        risk_score (0-100), notes.
        """
        unknown = set(flags) - set(COMPLIANCE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown compliance field(s): {sorted(unknown)}")
        if not flags:
            raise ValidationError("No compliance changes given")

        risk = flags.get('risk_score')
        if risk is not None and (isinstance(risk, bool) or not isinstance(risk, int) or not 0 <= risk <= 100):
            raise ValidationError(f"risk_score must be an integer between 0 and 100, got {risk!r}")
        for flag in ('kyc_verified', 'aml_checked', 'sanctions_cleared'):
            if flag in flags and not isinstance(flags[flag], bool):
                raise ValidationError(f"{flag} must be a boolean")

        def operation(uow: UnitOfWork) -> EscrowAccount:
            compliance = uow.account.compliance
            before = {key: getattr(compliance, key) for key in flags}
            for key, value in flags.items():
                setattr(compliance, key, sanitize_input(value) if key == 'notes' and value else value)
            compliance.last_check = self.ledger.clock()
            after = {key: getattr(compliance, key) for key in flags}
            self._record(
                uow, AuditAction.MANUAL_ADJUSTMENT, admin_id, reason,
                metadata={'field': 'compliance', 'before': before, 'after': after},
            )
            return uow.account

        return await self.ledger.mutate(escrow_id, operation)

    # ==================== REPORTING ====================

    async def list_escrows(
        self,
        admin_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """All accounts, optionally filtered by status."""
        self._require_admin(admin_id)
        return await self.ledger.list_accounts(status=status, page=page, limit=limit)

    async def get_escrow(self, admin_id: str, escrow_id: str) -> Dict[str, Any]:
        """One account (available balance included) with its transactions, oldest first."""
        self._require_admin(admin_id)
        account = await self.ledger.get_account(escrow_id)
        transactions = await self.ledger.list_transactions(escrow_id)
        return {
            'escrow_account': account.to_dict(),
            'transactions': [t.to_dict() for t in transactions],
        }

    async def get_statistics(self, admin_id: str) -> Dict[str, Any]:
        self._require_admin(admin_id)
        return await self.ledger.get_statistics()

    async def get_audit_trail(self, admin_id: str, escrow_id: str) -> List[AuditTrailEntry]:
        self._require_admin(admin_id)
        await self.ledger.get_account(escrow_id)
        return await self.ledger.audit.history(escrow_id)

    # ==================== COMMISSION SETTINGS ====================

    def _settings(self):
        if self.settings_store is None:
            raise StateError("Commission settings storage is not configured")
        return self.settings_store

    async def list_commission_settings(self, admin_id: str) -> List[CommissionSetting]:
        self._require_admin(admin_id)
        settings = await self._settings().list_settings()
        return sorted(settings, key=lambda s: (-s.priority, s.name))

    async def save_commission_setting(self, admin_id: str, data: Dict[str, Any]) -> CommissionSetting:
        """Create or replace a commission setting from its dict form."""
        self._require_admin(admin_id)
        payload = dict(data)
        payload.setdefault('created_by', admin_id)
        setting = CommissionSetting.from_dict(payload)
        await self._settings().save_setting(setting)
        logger.info(f"Commission setting '{setting.name}' ({setting.id}) saved by admin {admin_id}")
        return setting

    async def delete_commission_setting(self, admin_id: str, setting_id: str) -> None:
        self._require_admin(admin_id)
        if not await self._settings().delete_setting(setting_id):
            raise NotFoundError(f"Commission setting not found: {setting_id}")
        logger.info(f"Commission setting {setting_id} deleted by admin {admin_id}")

    async def initialize_commission_defaults(self, admin_id: str) -> List[CommissionSetting]:
        self._require_admin(admin_id)
        return await initialize_defaults(self._settings(), created_by=admin_id)
