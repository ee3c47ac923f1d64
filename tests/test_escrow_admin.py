from decimal import Decimal

import pytest

from conftest import ADMIN_ID, MANAGER_ID, TALENT_ID
from escrow_errors import (
    AuthorizationError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from escrow_models import AuditAction, EscrowStatus, PriorityLevel, TransactionType


async def history(ledger, escrow_id, action=None):
    return await ledger.audit.history(escrow_id, action=action)


# ==================== FREEZE / EMERGENCY RELEASE ====================

async def test_frozen_account_blocks_release_but_allows_emergency_release(ledger, admin, funded_escrow):
    frozen = await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Fraud review')
    assert frozen.admin_controls.is_frozen
    assert frozen.admin_controls.frozen_by == ADMIN_ID
    assert frozen.admin_controls.frozen_reason == 'Fraud review'

    with pytest.raises(StateError, match="frozen"):
        await ledger.release(funded_escrow.id, '100.00')
    with pytest.raises(StateError, match="frozen"):
        await ledger.refund(funded_escrow.id, '100.00', 'Cancelled')

    [blocked_release] = await history(ledger, funded_escrow.id, AuditAction.RELEASED)
    [blocked_refund] = await history(ledger, funded_escrow.id, AuditAction.REFUNDED)
    assert blocked_release.rejected and blocked_refund.rejected
    assert blocked_release.performed_by == MANAGER_ID
    assert blocked_release.amount == Decimal('100.00')
    assert blocked_refund.reason == 'Cancelled'

    account = await admin.emergency_release(
        funded_escrow.id, ADMIN_ID, amount='250.00', reason='Court order'
    )
    assert account.released_amount == Decimal('250.00')
    assert account.status == EscrowStatus.PARTIAL_RELEASE
    assert account.admin_controls.is_frozen
    assert account.admin_controls.last_admin_action.action == AuditAction.EMERGENCY_RELEASE

    [entry] = await history(ledger, funded_escrow.id, AuditAction.EMERGENCY_RELEASE)
    assert entry.performed_by == ADMIN_ID
    assert entry.amount == Decimal('250.00')
    assert entry.metadata['recipient'] == TALENT_ID
    assert not entry.rejected


async def test_freeze_notifies_both_parties(admin, notifier, funded_escrow):
    await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Fraud review')

    assert 'escrow_frozen' in notifier.events_for(MANAGER_ID)
    assert 'escrow_frozen' in notifier.events_for(TALENT_ID)


async def test_freeze_blocks_funding(ledger, admin, created_escrow):
    await admin.freeze(created_escrow.id, ADMIN_ID, reason='KYC pending')

    with pytest.raises(StateError, match="frozen"):
        await ledger.fund(created_escrow.id, 'pm_card_visa')


async def test_unfreeze_restores_operations(ledger, admin, funded_escrow):
    await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Review')
    account = await admin.unfreeze(funded_escrow.id, ADMIN_ID, reason='Cleared')

    assert not account.admin_controls.is_frozen
    assert account.admin_controls.frozen_reason is None
    await ledger.release(funded_escrow.id, '100.00')

    with pytest.raises(StateError, match="not frozen"):
        await admin.unfreeze(funded_escrow.id, ADMIN_ID, reason='Again')


async def test_double_freeze_is_rejected_and_audited(ledger, admin, funded_escrow):
    await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Review')

    with pytest.raises(StateError, match="already frozen"):
        await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Review again')

    entries = await history(ledger, funded_escrow.id, AuditAction.FROZEN)
    assert [e.rejected for e in entries] == [False, True]
    assert entries[1].metadata['error'] == 'Invalid state'


async def test_non_admin_is_rejected_and_audited(ledger, admin, funded_escrow):
    with pytest.raises(AuthorizationError):
        await admin.freeze(funded_escrow.id, MANAGER_ID, reason='I want my money back')

    account = await ledger.get_account(funded_escrow.id)
    assert not account.admin_controls.is_frozen
    assert account.admin_controls.last_admin_action is None

    [entry] = await history(ledger, funded_escrow.id, AuditAction.FROZEN)
    assert entry.rejected
    assert entry.performed_by == MANAGER_ID
    assert entry.metadata['error'] == 'Access denied'


async def test_admin_action_requires_reason(ledger, admin, funded_escrow):
    with pytest.raises(ValidationError):
        await admin.freeze(funded_escrow.id, ADMIN_ID, reason='   ')

    [entry] = await history(ledger, funded_escrow.id, AuditAction.FROZEN)
    assert entry.rejected


async def test_emergency_release_above_held_is_rejected(ledger, admin, funded_escrow):
    with pytest.raises(InsufficientFundsError, match="exceeds held"):
        await admin.emergency_release(funded_escrow.id, ADMIN_ID, amount='1000.01', reason='Court order')

    [entry] = await history(ledger, funded_escrow.id, AuditAction.EMERGENCY_RELEASE)
    assert entry.rejected
    assert entry.amount == Decimal('1000.01')


async def test_emergency_release_within_held_but_above_available_is_refused(ledger, admin, funded_escrow):
    await ledger.release(funded_escrow.id, '400.00')

    with pytest.raises(InsufficientFundsError):
        await admin.emergency_release(funded_escrow.id, ADMIN_ID, amount='700.00', reason='Court order')

    account = await ledger.get_account(funded_escrow.id)
    assert account.released_amount == Decimal('400.00')
    assert account.available_balance == Decimal('600.00')
    entries = await history(ledger, funded_escrow.id, AuditAction.EMERGENCY_RELEASE)
    assert [e.rejected for e in entries] == [True]


async def test_emergency_release_to_named_recipient(ledger, admin, funded_escrow):
    account = await admin.emergency_release(
        funded_escrow.id, ADMIN_ID, amount='1000.00', reason='Settlement', recipient='talent-escrow-agent'
    )
    assert account.status == EscrowStatus.COMPLETED

    [entry] = await history(ledger, funded_escrow.id, AuditAction.EMERGENCY_RELEASE)
    assert entry.metadata['recipient'] == 'talent-escrow-agent'


async def test_emergency_release_requires_funds(admin, created_escrow):
    with pytest.raises(StateError):
        await admin.emergency_release(created_escrow.id, ADMIN_ID, amount='10.00', reason='Test')


# ==================== ADMIN REFUNDS ====================

async def test_admin_refund_of_part_of_the_balance(ledger, admin, gateway, notifier, funded_escrow):
    result = await admin.refund(funded_escrow.id, ADMIN_ID, amount='150.00', reason='Goodwill credit')

    assert result.status == 'refunded'
    assert result.account.refunded_amount == Decimal('150.00')
    assert result.account.available_balance == Decimal('850.00')
    assert result.account.status == EscrowStatus.FUNDED
    assert result.account.admin_controls.last_admin_action.action == AuditAction.REFUNDED
    assert gateway.refunds[0]['amount'] == Decimal('150.00')
    assert 'escrow_refunded' in notifier.events_for(MANAGER_ID)

    [entry] = await history(ledger, funded_escrow.id, AuditAction.REFUNDED)
    assert entry.performed_by == ADMIN_ID
    assert entry.amount == Decimal('150.00')
    assert entry.reason == 'Admin-initiated refund: Goodwill credit'


async def test_admin_refund_accepts_disputed_accounts(admin, funded_escrow):
    await admin.open_dispute(funded_escrow.id, ADMIN_ID, reason='Disagreement')

    result = await admin.refund(funded_escrow.id, ADMIN_ID, amount='200.00', reason='Partial settlement')

    assert result.account.status == EscrowStatus.DISPUTED
    assert result.account.refunded_amount == Decimal('200.00')


async def test_admin_refund_pending_at_gateway_is_audited(ledger, admin, gateway, funded_escrow):
    gateway.refund_status = 'pending'

    result = await admin.refund(funded_escrow.id, ADMIN_ID, amount='300.00', reason='Scope reduced')

    assert result.status == 'pending'
    assert result.account.refunded_amount == Decimal('0')
    [entry] = await history(ledger, funded_escrow.id, AuditAction.REFUNDED)
    assert entry.metadata['gateway_status'] == 'pending'
    assert entry.metadata['transaction_id'] == result.transaction.id


async def test_admin_refund_rejections_are_audited(ledger, admin, funded_escrow):
    with pytest.raises(InsufficientFundsError):
        await admin.refund(funded_escrow.id, ADMIN_ID, amount='1000.01', reason='Too much')

    await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Fraud review')
    with pytest.raises(StateError, match="frozen"):
        await admin.refund(funded_escrow.id, ADMIN_ID, amount='10.00', reason='Blocked')

    with pytest.raises(AuthorizationError):
        await admin.refund(funded_escrow.id, MANAGER_ID, amount='10.00', reason='Not an admin')

    entries = await history(ledger, funded_escrow.id, AuditAction.REFUNDED)
    assert [e.rejected for e in entries] == [True, True, True]
    assert entries[0].amount == Decimal('1000.01')
    account = await ledger.get_account(funded_escrow.id)
    assert account.refunded_amount == Decimal('0')


async def test_admin_refund_requires_funded_account(admin, created_escrow):
    with pytest.raises(StateError):
        await admin.refund(created_escrow.id, ADMIN_ID, amount='10.00', reason='Nothing held')


# ==================== DISPUTES ====================

async def test_dispute_mode_is_audited_as_dispute_and_resolution(ledger, admin, funded_escrow):
    account = await admin.set_dispute_mode(funded_escrow.id, ADMIN_ID, enabled=True, reason='Complaint')
    assert account.admin_controls.dispute_resolution_mode
    assert account.admin_controls.last_admin_action.action == AuditAction.DISPUTED

    [entry] = await history(ledger, funded_escrow.id, AuditAction.DISPUTED)
    assert entry.metadata == {'field': 'dispute_resolution_mode', 'before': False, 'after': True}
    assert await history(ledger, funded_escrow.id, AuditAction.MANUAL_ADJUSTMENT) == []

    # Dispute mode alone does not block releases
    await ledger.release(funded_escrow.id, '100.00')

    account = await admin.set_dispute_mode(funded_escrow.id, ADMIN_ID, enabled=False, reason='Withdrawn')
    assert not account.admin_controls.dispute_resolution_mode
    [entry] = await history(ledger, funded_escrow.id, AuditAction.RESOLVED)
    assert entry.metadata == {'field': 'dispute_resolution_mode', 'before': True, 'after': False}


async def test_rejected_dispute_mode_change_is_audited_by_direction(ledger, admin, funded_escrow):
    with pytest.raises(AuthorizationError):
        await admin.set_dispute_mode(funded_escrow.id, MANAGER_ID, enabled=True, reason='Complaint')
    with pytest.raises(AuthorizationError):
        await admin.set_dispute_mode(funded_escrow.id, MANAGER_ID, enabled=False, reason='Withdrawn')

    [attempted_on] = await history(ledger, funded_escrow.id, AuditAction.DISPUTED)
    [attempted_off] = await history(ledger, funded_escrow.id, AuditAction.RESOLVED)
    assert attempted_on.rejected and attempted_off.rejected


async def test_open_and_restore_dispute(ledger, admin, notifier, funded_escrow):
    await ledger.release(funded_escrow.id, '100.00')

    disputed = await admin.open_dispute(funded_escrow.id, ADMIN_ID, reason='Work not delivered')
    assert disputed.status == EscrowStatus.DISPUTED
    assert disputed.status_before_dispute == EscrowStatus.PARTIAL_RELEASE
    assert 'escrow_disputed' in notifier.events_for(MANAGER_ID)

    with pytest.raises(StateError):
        await ledger.release(funded_escrow.id, '100.00')

    restored = await admin.resolve_dispute(
        funded_escrow.id, ADMIN_ID, resolution='restore', reason='Delivered after all'
    )
    assert restored.status == EscrowStatus.PARTIAL_RELEASE
    assert restored.status_before_dispute is None


async def test_resolve_dispute_by_releasing_remaining(ledger, admin, marketplace, funded_escrow):
    await admin.open_dispute(funded_escrow.id, ADMIN_ID, reason='Disagreement')

    account = await admin.resolve_dispute(
        funded_escrow.id, ADMIN_ID, resolution='release_remaining', reason='Talent delivered'
    )

    assert account.status == EscrowStatus.COMPLETED
    assert account.released_amount == Decimal('1000.00')
    assert marketplace.status_updates[-1] == ('contract-1', 'completed')
    [resolved] = await history(ledger, funded_escrow.id, AuditAction.RESOLVED)
    assert resolved.metadata['resolution'] == 'release_remaining'


async def test_resolve_dispute_by_refunding_remaining(ledger, admin, gateway, funded_escrow):
    await ledger.release(funded_escrow.id, '400.00')
    await admin.open_dispute(funded_escrow.id, ADMIN_ID, reason='Disagreement')

    account = await admin.resolve_dispute(
        funded_escrow.id, ADMIN_ID, resolution='refund_remaining', reason='Manager was right'
    )

    assert account.status == EscrowStatus.REFUNDED
    assert account.refunded_amount == Decimal('600.00')
    assert gateway.refunds[0]['amount'] == Decimal('600.00')
    [refund_entry] = await history(ledger, funded_escrow.id, AuditAction.REFUNDED)
    assert refund_entry.performed_by == ADMIN_ID


async def test_resolve_requires_open_dispute(admin, funded_escrow):
    with pytest.raises(StateError):
        await admin.resolve_dispute(funded_escrow.id, ADMIN_ID, resolution='restore', reason='Nothing')


async def test_resolve_rejects_unknown_resolution(admin, funded_escrow):
    await admin.open_dispute(funded_escrow.id, ADMIN_ID, reason='Disagreement')
    with pytest.raises(ValidationError):
        await admin.resolve_dispute(funded_escrow.id, ADMIN_ID, resolution='split', reason='Halves')


# ==================== FEES / CONTROLS / NOTES / COMPLIANCE ====================

async def test_adjust_platform_fee_records_before_and_after(ledger, admin, created_escrow):
    account = await admin.adjust_platform_fee(
        created_escrow.id, ADMIN_ID, new_percentage='2.5', reason='Promotional rate'
    )

    assert account.platform_fee_percentage == Decimal('2.5')
    assert account.platform_fee_amount == Decimal('25.00')
    [entry] = await history(ledger, created_escrow.id, AuditAction.MANUAL_ADJUSTMENT)
    assert entry.metadata['before']['platform_fee_amount'] == '50.00'
    assert entry.metadata['after']['platform_fee_amount'] == '25.00'

    result = await ledger.fund(created_escrow.id, 'pm_card_visa')
    assert result.transaction.amount == Decimal('1025.00')


async def test_adjust_platform_fee_validates_range(admin, created_escrow):
    with pytest.raises(ValidationError):
        await admin.adjust_platform_fee(created_escrow.id, ADMIN_ID, new_percentage='120', reason='Typo')


async def test_configure_controls(ledger, admin, funded_escrow):
    account = await admin.configure_controls(
        funded_escrow.id, ADMIN_ID, reason='High value contract',
        auto_release_delay=24, priority_level='urgent', requires_manual_approval=True,
    )

    controls = account.admin_controls
    assert controls.auto_release_delay == 24
    assert controls.priority_level == PriorityLevel.URGENT
    assert controls.requires_manual_approval

    [entry] = await history(ledger, funded_escrow.id, AuditAction.MANUAL_ADJUSTMENT)
    assert entry.metadata['before']['priority_level'] == 'normal'
    assert entry.metadata['after']['priority_level'] == 'urgent'


@pytest.mark.parametrize('changes', [
    {'auto_release_delay': -1},
    {'auto_release_delay': '24'},
    {'priority_level': 'critical'},
    {'auto_release_enabled': 'yes'},
    {'is_frozen': True},
    {},
])
async def test_configure_controls_rejects_bad_values(admin, funded_escrow, changes):
    with pytest.raises(ValidationError):
        await admin.configure_controls(funded_escrow.id, ADMIN_ID, reason='Change', **changes)


async def test_admin_notes_are_appended_in_order(ledger, admin, funded_escrow):
    await admin.add_admin_note(funded_escrow.id, ADMIN_ID, note='Called the manager')
    account = await admin.add_admin_note(funded_escrow.id, ADMIN_ID, note='Waiting on documents')

    assert account.admin_controls.admin_notes == ['Called the manager', 'Waiting on documents']
    entries = await history(ledger, funded_escrow.id, AuditAction.NOTE_ADDED)
    assert [e.reason for e in entries] == ['Called the manager', 'Waiting on documents']


async def test_compliance_update(ledger, admin, funded_escrow):
    account = await admin.update_compliance_status(
        funded_escrow.id, ADMIN_ID, reason='KYC review', kyc_verified=True, risk_score=15,
    )

    assert account.compliance.kyc_verified
    assert account.compliance.risk_score == 15
    assert account.compliance.last_check == ledger.clock()

    with pytest.raises(ValidationError):
        await admin.update_compliance_status(funded_escrow.id, ADMIN_ID, reason='Oops', risk_score=101)


async def test_terminal_accounts_reject_control_changes(ledger, admin, funded_escrow):
    await ledger.release(funded_escrow.id, '1000.00')

    with pytest.raises(StateError):
        await admin.freeze(funded_escrow.id, ADMIN_ID, reason='Too late')
    with pytest.raises(StateError):
        await admin.adjust_platform_fee(funded_escrow.id, ADMIN_ID, new_percentage='1', reason='Too late')


async def test_only_successful_calls_update_last_admin_action(ledger, admin, funded_escrow):
    await admin.add_admin_note(funded_escrow.id, ADMIN_ID, note='First look')
    with pytest.raises(AuthorizationError):
        await admin.add_admin_note(funded_escrow.id, 'intruder', note='Sneaky')

    account = await ledger.get_account(funded_escrow.id)
    snapshot = account.admin_controls.last_admin_action
    assert snapshot.action == AuditAction.NOTE_ADDED
    assert snapshot.performed_by == ADMIN_ID
    assert account.admin_controls.admin_notes == ['First look']


# ==================== REPORTING / COMMISSION SETTINGS ====================

async def test_reporting_requires_admin(admin, funded_escrow):
    with pytest.raises(AuthorizationError):
        await admin.list_escrows(MANAGER_ID)
    with pytest.raises(AuthorizationError):
        await admin.get_statistics(MANAGER_ID)
    with pytest.raises(AuthorizationError):
        await admin.get_audit_trail(MANAGER_ID, funded_escrow.id)
    with pytest.raises(AuthorizationError):
        await admin.get_escrow(MANAGER_ID, funded_escrow.id)


async def test_admin_listing_and_audit_trail(admin, funded_escrow):
    listing = await admin.list_escrows(ADMIN_ID, status='funded')
    assert listing['total'] == 1

    trail = await admin.get_audit_trail(ADMIN_ID, funded_escrow.id)
    assert [e.action for e in trail] == [AuditAction.CREATED, AuditAction.FUNDED]

    with pytest.raises(NotFoundError):
        await admin.get_audit_trail(ADMIN_ID, 'missing')


async def test_admin_view_of_one_escrow(ledger, admin, funded_escrow):
    await ledger.release(funded_escrow.id, '250.00')

    view = await admin.get_escrow(ADMIN_ID, funded_escrow.id)

    assert view['escrow_account']['id'] == funded_escrow.id
    assert view['escrow_account']['available_balance'] == Decimal('750.00')
    assert [t['type'] for t in view['transactions']] == ['deposit', 'release']

    with pytest.raises(NotFoundError):
        await admin.get_escrow(ADMIN_ID, 'missing')


async def test_commission_settings_management(ledger, admin, marketplace):
    setting = await admin.save_commission_setting(ADMIN_ID, {
        'name': 'Manager launch rate',
        'user_type': 'manager',
        'commission_type': 'percentage',
        'base_rate': '2',
        'priority': 9,
    })
    assert setting.created_by == ADMIN_ID
    assert [s.id for s in await admin.list_commission_settings(ADMIN_ID)] == [setting.id]

    account = await ledger.create('contract-1')
    assert account.platform_fee_amount == Decimal('20.00')
    assert account.commission_setting_id == setting.id

    await admin.delete_commission_setting(ADMIN_ID, setting.id)
    with pytest.raises(NotFoundError):
        await admin.delete_commission_setting(ADMIN_ID, setting.id)


async def test_commission_settings_reject_invalid_rules(admin):
    with pytest.raises(ValidationError):
        await admin.save_commission_setting(ADMIN_ID, {
            'name': 'Broken', 'user_type': 'manager', 'commission_type': 'percentage', 'base_rate': '150',
        })
    with pytest.raises(AuthorizationError):
        await admin.save_commission_setting(MANAGER_ID, {
            'name': 'Mine', 'user_type': 'manager', 'commission_type': 'flat_fee', 'flat_fee': '0',
        })


async def test_seed_commission_defaults(admin):
    created = await admin.initialize_commission_defaults(ADMIN_ID)
    assert len(created) == 2
    assert await admin.initialize_commission_defaults(ADMIN_ID) == []


async def test_deposit_snapshots_commission_setting(ledger, admin, funded_escrow):
    [deposit] = [
        t for t in await ledger.list_transactions(funded_escrow.id) if t.type == TransactionType.DEPOSIT
    ]
    assert deposit.fee_amount == funded_escrow.platform_fee_amount
    assert deposit.commission_setting_id == funded_escrow.commission_setting_id
