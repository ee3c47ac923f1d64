"""
Domain model for the escrow ledger.

Escrow accounts, their money-movement transactions and audit entries,
plus the closed enumerations for every status and action kind. Records
round-trip through plain dicts (``to_dict`` / ``from_dict``) so the
PostgreSQL store can keep the nested admin/compliance blocks as JSONB.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from utils import to_decimal


class EscrowStatus(str, Enum):
    """Enumeration of escrow account states."""
    CREATED = "created"                  # Account opened, awaiting deposit
    FUNDED = "funded"                    # Deposit held in escrow
    PARTIAL_RELEASE = "partial_release"  # Some funds released to talent
    COMPLETED = "completed"              # Everything released (terminal)
    REFUNDED = "refunded"                # Everything settled with a refund (terminal)
    DISPUTED = "disputed"                # Admin dispute hold


TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.REFUNDED})
RELEASABLE_STATUSES = frozenset({EscrowStatus.FUNDED, EscrowStatus.PARTIAL_RELEASE})


class TransactionType(str, Enum):
    """Kinds of money movement recorded against an escrow account."""
    DEPOSIT = "deposit"
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """Lifecycle of a single transaction."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""
    CREATED = "created"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    FROZEN = "frozen"
    UNFROZEN = "unfrozen"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    EMERGENCY_RELEASE = "emergency_release"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    NOTE_ADDED = "note_added"


class DisputeResolution(str, Enum):
    """Possible outcomes when an admin resolves a dispute."""
    RESTORE = "restore"                      # Return to the pre-dispute status
    RELEASE_REMAINING = "release_remaining"  # Release the available balance to talent
    REFUND_REMAINING = "refund_remaining"    # Refund the available balance to manager


class PriorityLevel(str, Enum):
    """Admin triage priority of an escrow account."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ContractStatus(str, Enum):
    """Contract states the ledger reads or writes."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationEvent(str, Enum):
    """Events pushed to the notification collaborator."""
    ESCROW_FUNDED = "escrow_funded"
    FUNDS_RELEASED = "funds_released"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_DISPUTED = "escrow_disputed"
    ESCROW_FROZEN = "escrow_frozen"


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


@dataclass
class AdminActionSnapshot:
    """The last successful admin action on an account."""
    action: AuditAction
    performed_by: str
    reason: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'performed_by': self.performed_by,
            'reason': self.reason,
            'timestamp': _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AdminActionSnapshot':
        return cls(
            action=AuditAction(data['action']),
            performed_by=data['performed_by'],
            reason=data.get('reason', ''),
            timestamp=_dt(data['timestamp']),
        )


@dataclass
class AdminControls:
    """Admin override block of an escrow account."""
    is_frozen: bool = False
    frozen_reason: Optional[str] = None
    frozen_by: Optional[str] = None
    frozen_at: Optional[datetime] = None
    auto_release_enabled: bool = True
    auto_release_delay: int = 72  # hours
    dispute_resolution_mode: bool = False
    requires_manual_approval: bool = False
    priority_level: PriorityLevel = PriorityLevel.NORMAL
    admin_notes: List[str] = field(default_factory=list)
    last_admin_action: Optional[AdminActionSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_frozen': self.is_frozen,
            'frozen_reason': self.frozen_reason,
            'frozen_by': self.frozen_by,
            'frozen_at': _iso(self.frozen_at),
            'auto_release_enabled': self.auto_release_enabled,
            'auto_release_delay': self.auto_release_delay,
            'dispute_resolution_mode': self.dispute_resolution_mode,
            'requires_manual_approval': self.requires_manual_approval,
            'priority_level': self.priority_level.value,
            'admin_notes': list(self.admin_notes),
            'last_admin_action': (
                self.last_admin_action.to_dict() if self.last_admin_action else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AdminControls':
        if not data:
            return cls()
        last_action = data.get('last_admin_action')
        return cls(
            is_frozen=data.get('is_frozen', False),
            frozen_reason=data.get('frozen_reason'),
            frozen_by=data.get('frozen_by'),
            frozen_at=_dt(data.get('frozen_at')),
            auto_release_enabled=data.get('auto_release_enabled', True),
            auto_release_delay=int(data.get('auto_release_delay', 72)),
            dispute_resolution_mode=data.get('dispute_resolution_mode', False),
            requires_manual_approval=data.get('requires_manual_approval', False),
            priority_level=PriorityLevel(data.get('priority_level', 'normal')),
            admin_notes=list(data.get('admin_notes', [])),
            last_admin_action=(
                AdminActionSnapshot.from_dict(last_action) if last_action else None
            ),
        )


@dataclass
class ComplianceStatus:
    """KYC/AML screening flags attached to an escrow account."""
    kyc_verified: bool = False
    aml_checked: bool = False
    sanctions_cleared: bool = False
    risk_score: Optional[int] = None  # 0 (clean) - 100 (block)
    notes: Optional[str] = None
    last_check: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kyc_verified': self.kyc_verified,
            'aml_checked': self.aml_checked,
            'sanctions_cleared': self.sanctions_cleared,
            'risk_score': self.risk_score,
            'notes': self.notes,
            'last_check': _iso(self.last_check),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ComplianceStatus':
        if not data:
            return cls()
        return cls(
            kyc_verified=data.get('kyc_verified', False),
            aml_checked=data.get('aml_checked', False),
            sanctions_cleared=data.get('sanctions_cleared', False),
            risk_score=data.get('risk_score'),
            notes=data.get('notes'),
            last_check=_dt(data.get('last_check')),
        )


@dataclass
class EscrowAccount:
    """
    Ledger record holding one contract's funds in trust.

    Balances only ever move through the ledger service; the admin layer
    touches ``admin_controls`` and ``compliance``.
    """
    id: str
    contract_id: str
    manager_id: str
    talent_id: str
    total_amount: Decimal
    gateway_customer_ref: Optional[str] = None
    held_amount: Decimal = Decimal('0')
    released_amount: Decimal = Decimal('0')
    refunded_amount: Decimal = Decimal('0')
    currency: str = 'usd'
    status: EscrowStatus = EscrowStatus.CREATED
    platform_fee_percentage: Decimal = Decimal('0')
    platform_fee_amount: Decimal = Decimal('0')
    commission_setting_id: Optional[str] = None
    status_before_dispute: Optional[EscrowStatus] = None
    admin_controls: AdminControls = field(default_factory=AdminControls)
    compliance: ComplianceStatus = field(default_factory=ComplianceStatus)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None

    @property
    def available_balance(self) -> Decimal:
        """held - released - refunded: the most that can leave escrow right now."""
        return self.held_amount - self.released_amount - self.refunded_amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def invariant_violations(self) -> List[str]:
        """Return the balance invariants this account currently breaks."""
        problems = []
        for name in ('held_amount', 'released_amount', 'refunded_amount'):
            if getattr(self, name) < 0:
                problems.append(f"{name} is negative")
        if self.available_balance < 0:
            problems.append("released + refunded exceeds held")
        if self.held_amount > self.total_amount:
            problems.append("held exceeds total")
        return problems

    def clone(self) -> 'EscrowAccount':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'contract_id': self.contract_id,
            'manager_id': self.manager_id,
            'talent_id': self.talent_id,
            'gateway_customer_ref': self.gateway_customer_ref,
            'total_amount': self.total_amount,
            'held_amount': self.held_amount,
            'released_amount': self.released_amount,
            'refunded_amount': self.refunded_amount,
            'available_balance': self.available_balance,
            'currency': self.currency,
            'status': self.status.value,
            'platform_fee_percentage': self.platform_fee_percentage,
            'platform_fee_amount': self.platform_fee_amount,
            'commission_setting_id': self.commission_setting_id,
            'status_before_dispute': (
                self.status_before_dispute.value if self.status_before_dispute else None
            ),
            'admin_controls': self.admin_controls.to_dict(),
            'compliance': self.compliance.to_dict(),
            'version': self.version,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'funded_at': _iso(self.funded_at),
        }


@dataclass
class EscrowTransaction:
    """A single money movement belonging to one escrow account."""
    id: str
    escrow_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    gateway_ref: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: str = ''
    milestone_id: Optional[str] = None
    commission_setting_id: Optional[str] = None
    fee_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def clone(self) -> 'EscrowTransaction':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'escrow_id': self.escrow_id,
            'type': self.type.value,
            'amount': self.amount,
            'status': self.status.value,
            'gateway_ref': self.gateway_ref,
            'idempotency_key': self.idempotency_key,
            'description': self.description,
            'milestone_id': self.milestone_id,
            'commission_setting_id': self.commission_setting_id,
            'fee_amount': self.fee_amount,
            'created_at': _iso(self.created_at),
            'processed_at': _iso(self.processed_at),
        }


@dataclass(frozen=True)
class AuditTrailEntry:
    """One immutable line of an account's audit history."""
    id: str
    escrow_id: str
    action: AuditAction
    performed_by: str
    reason: str
    timestamp: datetime
    amount: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def rejected(self) -> bool:
        return bool(self.metadata.get('rejected'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'escrow_id': self.escrow_id,
            'action': self.action.value,
            'amount': self.amount,
            'performed_by': self.performed_by,
            'reason': self.reason,
            'timestamp': _iso(self.timestamp),
            'metadata': copy.deepcopy(self.metadata),
        }


@dataclass
class Contract:
    """Contract data supplied by the contract collaborator."""
    contract_id: str
    manager_id: str
    talent_id: str
    total_amount: Decimal
    title: str = ''
    status: str = ContractStatus.PENDING.value
    currency: str = 'usd'
    manager_email: Optional[str] = None
    manager_name: Optional[str] = None
    job_category: Optional[str] = None

    def __post_init__(self):
        self.total_amount = to_decimal(self.total_amount)


@dataclass(frozen=True)
class GatewayEvent:
    """
    An asynchronous confirmation pushed by the payment gateway.

    ``status`` is the gateway object's own status (refund updates carry
    their outcome there). ``transaction_id`` comes from the metadata the
    ledger attached when it created the gateway object, so an event can be
    matched even when its ref was never recorded.
    """
    event_id: str
    event_type: str
    ref: str
    amount: Optional[Decimal] = None
    failure_message: Optional[str] = None
    status: Optional[str] = None
    transaction_id: Optional[str] = None


def money_or_none(value: Any) -> Optional[Decimal]:
    """Decimal conversion that keeps None; used by the stores when hydrating rows."""
    return _money(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or ISO string (as stored in JSONB)."""
    return _dt(value)
