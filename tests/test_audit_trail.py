from decimal import Decimal

from audit_trail import AuditTrail, new_entry
from escrow_errors import AuthorizationError
from escrow_memory_store import MemoryEscrowStore
from escrow_models import AuditAction
from utils import utc_now


def test_new_entry_sanitizes_reason():
    entry = new_entry('escrow-1', 'frozen', 'admin-1', '  <script>Review</script>  ', utc_now())

    assert entry.action == AuditAction.FROZEN
    assert entry.reason == 'scriptReview/script'
    assert entry.metadata == {}
    assert entry.id


async def test_rejection_is_appended_with_error_metadata():
    store = MemoryEscrowStore()
    trail = AuditTrail(store)

    entry = await trail.record_rejection(
        'escrow-1', AuditAction.EMERGENCY_RELEASE, 'user-9', 'Pay out', utc_now(),
        AuthorizationError("User user-9 is not an admin"), amount=Decimal('250.00'),
    )

    assert entry.rejected
    assert entry.metadata['error'] == 'Access denied'
    assert entry.amount == Decimal('250.00')
    assert await store.list_audit('escrow-1') == [entry]


async def test_history_filters():
    store = MemoryEscrowStore()
    trail = AuditTrail(store)
    now = utc_now()
    await store.append_audit(new_entry('escrow-1', AuditAction.FROZEN, 'admin-1', 'Review', now))
    await trail.record_rejection(
        'escrow-1', AuditAction.FROZEN, 'admin-1', 'Again', now, AuthorizationError("denied")
    )
    await store.append_audit(new_entry('escrow-1', AuditAction.UNFROZEN, 'admin-1', 'Cleared', now))

    assert len(await trail.history('escrow-1')) == 3
    assert [e.reason for e in await trail.history('escrow-1', action=AuditAction.FROZEN)] == ['Review', 'Again']
    assert [e.action for e in await trail.history('escrow-1', include_rejected=False)] == [
        AuditAction.FROZEN, AuditAction.UNFROZEN,
    ]
