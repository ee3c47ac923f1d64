"""
Commission Engine for the escrow ledger.

Resolves which admin-managed commission rule applies to a user and a
transaction, and computes the platform fee under that rule.

Supported rule types:
    - percentage: amount * base_rate / 100
    - flat_fee:   constant fee
    - tiered:     volume brackets, each with its own rate and flat fee
    - hybrid:     percentage plus a flat fee

After the base fee, at most one payment-range adjustment is applied,
then the result is clamped to the rule's minimum/maximum and rounded
half-up to the smallest unit of the currency.

Dependencies:
    - escrow_memory_store.py / escrow_database.py: commission settings storage
    - contracts.py: user profiles for eligibility conditions
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from escrow_errors import ValidationError
from escrow_models import parse_datetime
from utils import quantize_money, to_decimal, utc_now

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')


class UserType(str, Enum):
    """Which side of the marketplace a rule applies to."""
    TALENT = "talent"
    MANAGER = "manager"
    BOTH = "both"


class CommissionType(str, Enum):
    """How the base fee is computed."""
    PERCENTAGE = "percentage"
    FLAT_FEE = "flat_fee"
    TIERED = "tiered"
    HYBRID = "hybrid"


class CommissionTransactionType(str, Enum):
    """Transaction kinds a rule can be restricted to."""
    JOB_PAYMENT = "job_payment"
    PACKAGE_PURCHASE = "package_purchase"
    ESCROW_RELEASE = "escrow_release"
    BONUS_PAYMENT = "bonus_payment"
    MILESTONE_PAYMENT = "milestone_payment"


def _rate(value: Any, label: str) -> Decimal:
    rate = to_decimal(value)
    if rate < 0 or rate > HUNDRED:
        raise ValidationError(f"{label} must be between 0 and 100, got {rate}")
    return rate


def _non_negative(value: Any, label: str) -> Decimal:
    amount = to_decimal(value)
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative, got {amount}")
    return amount


def _optional_money(value: Any, label: str) -> Optional[Decimal]:
    return None if value is None else _non_negative(value, label)


@dataclass
class CommissionTier:
    """A volume bracket: applies when min_volume <= amount < max_volume."""
    min_volume: Decimal
    rate: Decimal
    max_volume: Optional[Decimal] = None
    flat_fee: Decimal = Decimal('0')
    name: str = ''

    def __post_init__(self):
        self.min_volume = _non_negative(self.min_volume, "Tier min_volume")
        self.max_volume = _optional_money(self.max_volume, "Tier max_volume")
        self.rate = _rate(self.rate, "Tier rate")
        self.flat_fee = _non_negative(self.flat_fee, "Tier flat_fee")
        if self.max_volume is not None and self.max_volume <= self.min_volume:
            raise ValidationError(
                f"Tier '{self.name}' max_volume ({self.max_volume}) must exceed "
                f"min_volume ({self.min_volume})"
            )

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_volume:
            return False
        return self.max_volume is None or amount < self.max_volume

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'min_volume': str(self.min_volume),
            'max_volume': None if self.max_volume is None else str(self.max_volume),
            'rate': str(self.rate),
            'flat_fee': str(self.flat_fee),
        }


@dataclass
class PaymentRange:
    """Fee adjustment (+/- percent of the fee) for amounts inside a range."""
    min_amount: Decimal
    adjustment_percent: Decimal
    max_amount: Optional[Decimal] = None

    def __post_init__(self):
        self.min_amount = _non_negative(self.min_amount, "Payment range min_amount")
        self.max_amount = _optional_money(self.max_amount, "Payment range max_amount")
        self.adjustment_percent = to_decimal(self.adjustment_percent)

    def contains(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount is None or amount <= self.max_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'min_amount': str(self.min_amount),
            'max_amount': None if self.max_amount is None else str(self.max_amount),
            'adjustment_percent': str(self.adjustment_percent),
        }


@dataclass
class AppliesTo:
    """Optional restrictions on where a rule applies; empty lists mean 'everywhere'."""
    transaction_types: List[CommissionTransactionType] = field(default_factory=list)
    job_categories: List[str] = field(default_factory=list)
    payment_ranges: List[PaymentRange] = field(default_factory=list)


@dataclass
class CommissionConditions:
    """Eligibility conditions evaluated against the user at selection time."""
    enabled: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    minimum_user_rating: Optional[Decimal] = None
    minimum_account_age_days: int = 0
    premium_users_only: bool = False
    excluded_users: List[str] = field(default_factory=list)


@dataclass
class PromotionalTerms:
    """Promotion window and usage cap."""
    is_promotional: bool = False
    name: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_users: Optional[int] = None
    current_users: int = 0

    def is_live(self, now: datetime) -> bool:
        if not self.is_promotional:
            return True
        if self.starts_at and self.starts_at > now:
            return False
        if self.ends_at and self.ends_at < now:
            return False
        if self.max_users is not None and self.current_users >= self.max_users:
            return False
        return True


@dataclass
class CommissionSetting:
    """An admin-managed commission rule."""
    name: str
    user_type: UserType
    commission_type: CommissionType
    base_rate: Decimal = Decimal('0')
    flat_fee: Decimal = Decimal('0')
    minimum_commission: Optional[Decimal] = None
    maximum_commission: Optional[Decimal] = None
    currency: str = 'usd'
    tiers: List[CommissionTier] = field(default_factory=list)
    applies_to: AppliesTo = field(default_factory=AppliesTo)
    conditions: CommissionConditions = field(default_factory=CommissionConditions)
    promotional: PromotionalTerms = field(default_factory=PromotionalTerms)
    priority: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.user_type = UserType(self.user_type)
        self.commission_type = CommissionType(self.commission_type)
        self.base_rate = _rate(self.base_rate, "base_rate")
        self.flat_fee = _non_negative(self.flat_fee, "flat_fee")
        self.minimum_commission = _optional_money(self.minimum_commission, "minimum_commission")
        self.maximum_commission = _optional_money(self.maximum_commission, "maximum_commission")

        if (self.minimum_commission is not None and self.maximum_commission is not None
                and self.minimum_commission > self.maximum_commission):
            raise ValidationError(
                f"minimum_commission ({self.minimum_commission}) exceeds "
                f"maximum_commission ({self.maximum_commission})"
            )

        if self.commission_type == CommissionType.TIERED and not self.tiers:
            raise ValidationError(f"Tiered commission '{self.name}' needs at least one tier")

        validate_tiers(self.tiers)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe representation (Decimals as strings) for storage and the API."""
        return {
            'id': self.id,
            'name': self.name,
            'user_type': self.user_type.value,
            'commission_type': self.commission_type.value,
            'base_rate': str(self.base_rate),
            'flat_fee': str(self.flat_fee),
            'minimum_commission': (
                None if self.minimum_commission is None else str(self.minimum_commission)
            ),
            'maximum_commission': (
                None if self.maximum_commission is None else str(self.maximum_commission)
            ),
            'currency': self.currency,
            'tiers': [tier.to_dict() for tier in self.tiers],
            'applies_to': {
                'transaction_types': [t.value for t in self.applies_to.transaction_types],
                'job_categories': list(self.applies_to.job_categories),
                'payment_ranges': [r.to_dict() for r in self.applies_to.payment_ranges],
            },
            'conditions': {
                'enabled': self.conditions.enabled,
                'start_date': _iso(self.conditions.start_date),
                'end_date': _iso(self.conditions.end_date),
                'minimum_user_rating': (
                    None if self.conditions.minimum_user_rating is None
                    else str(self.conditions.minimum_user_rating)
                ),
                'minimum_account_age_days': self.conditions.minimum_account_age_days,
                'premium_users_only': self.conditions.premium_users_only,
                'excluded_users': list(self.conditions.excluded_users),
            },
            'promotional': {
                'is_promotional': self.promotional.is_promotional,
                'name': self.promotional.name,
                'starts_at': _iso(self.promotional.starts_at),
                'ends_at': _iso(self.promotional.ends_at),
                'max_users': self.promotional.max_users,
                'current_users': self.promotional.current_users,
            },
            'priority': self.priority,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommissionSetting':
        """
        Build a setting from stored or API data.

        Raises:
            ValidationError: If the data describes an invalid rule
        """
        applies = data.get('applies_to') or {}
        conditions = data.get('conditions') or {}
        promo = data.get('promotional') or {}

        try:
            transaction_types = [
                CommissionTransactionType(t) for t in applies.get('transaction_types', [])
            ]
            rating = conditions.get('minimum_user_rating')
            kwargs = dict(
                name=data['name'],
                user_type=UserType(data['user_type']),
                commission_type=CommissionType(data['commission_type']),
                base_rate=data.get('base_rate', 0),
                flat_fee=data.get('flat_fee', 0),
                minimum_commission=data.get('minimum_commission'),
                maximum_commission=data.get('maximum_commission'),
                currency=data.get('currency', 'usd'),
                tiers=[
                    CommissionTier(
                        name=t.get('name', ''),
                        min_volume=t['min_volume'],
                        max_volume=t.get('max_volume'),
                        rate=t['rate'],
                        flat_fee=t.get('flat_fee', 0),
                    )
                    for t in data.get('tiers', [])
                ],
                applies_to=AppliesTo(
                    transaction_types=transaction_types,
                    job_categories=list(applies.get('job_categories', [])),
                    payment_ranges=[
                        PaymentRange(
                            min_amount=r['min_amount'],
                            max_amount=r.get('max_amount'),
                            adjustment_percent=r['adjustment_percent'],
                        )
                        for r in applies.get('payment_ranges', [])
                    ],
                ),
                conditions=CommissionConditions(
                    enabled=conditions.get('enabled', True),
                    start_date=parse_datetime(conditions.get('start_date')),
                    end_date=parse_datetime(conditions.get('end_date')),
                    minimum_user_rating=None if rating is None else to_decimal(rating),
                    minimum_account_age_days=int(conditions.get('minimum_account_age_days') or 0),
                    premium_users_only=conditions.get('premium_users_only', False),
                    excluded_users=[str(u) for u in conditions.get('excluded_users', [])],
                ),
                promotional=PromotionalTerms(
                    is_promotional=promo.get('is_promotional', False),
                    name=promo.get('name'),
                    starts_at=parse_datetime(promo.get('starts_at')),
                    ends_at=parse_datetime(promo.get('ends_at')),
                    max_users=promo.get('max_users'),
                    current_users=int(promo.get('current_users') or 0),
                ),
                priority=int(data.get('priority', 1)),
                created_by=data.get('created_by'),
            )
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid commission setting: {e}") from e

        if data.get('id'):
            kwargs['id'] = data['id']
        if data.get('created_at'):
            kwargs['created_at'] = parse_datetime(data['created_at'])
        return cls(**kwargs)


@dataclass(frozen=True)
class CommissionQuote:
    """Result of a commission calculation, snapshotted onto the escrow."""
    amount: Decimal
    effective_rate: Decimal
    setting_id: Optional[str] = None
    tier_applied: Optional[str] = None
    range_adjustment: Decimal = Decimal('0')
    is_default: bool = False


@dataclass
class UserProfile:
    """The slice of a marketplace user that eligibility conditions look at."""
    user_id: str
    rating: Decimal = Decimal('0')
    created_at: Optional[datetime] = None
    is_premium: bool = False


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def validate_tiers(tiers: List[CommissionTier]) -> None:
    """
    Reject tier lists that are unsorted or overlapping.

    Overlap makes the bracket for an amount ambiguous, so it is refused
    here rather than resolved by list order.

    Raises:
        ValidationError: On unsorted or overlapping tiers
    """
    for previous, current in zip(tiers, tiers[1:]):
        if current.min_volume < previous.min_volume:
            raise ValidationError(
                f"Tiers must be sorted by min_volume: '{current.name}' "
                f"({current.min_volume}) follows '{previous.name}' ({previous.min_volume})"
            )
        if previous.max_volume is None or current.min_volume < previous.max_volume:
            raise ValidationError(
                f"Tiers overlap: '{previous.name}' "
                f"[{previous.min_volume}, {previous.max_volume or 'inf'}) and "
                f"'{current.name}' starting at {current.min_volume}"
            )


def _effective_rate(fee: Decimal, amount: Decimal) -> Decimal:
    if amount <= 0:
        return Decimal('0')
    return (fee / amount * HUNDRED).quantize(Decimal('0.0001'))


def calculate(setting: CommissionSetting, amount: Any) -> CommissionQuote:
    """
    Compute the commission for ``amount`` under ``setting``.

    Pure function: no storage access and no clock.

    Args:
        setting: The rule to apply
        amount: Transaction amount in major units

    Returns:
        CommissionQuote with the rounded fee

    Example:
        >>> rule = CommissionSetting(name='std', user_type='manager',
        ...                          commission_type='percentage', base_rate=5)
        >>> calculate(rule, Decimal('10000')).amount
        Decimal('500.00')
    """
    amount = to_decimal(amount)
    if amount < 0:
        raise ValidationError(f"Amount cannot be negative, got {amount}")

    tier_applied = None
    kind = setting.commission_type

    if kind == CommissionType.PERCENTAGE:
        fee = amount * setting.base_rate / HUNDRED

    elif kind == CommissionType.FLAT_FEE:
        fee = setting.flat_fee

    elif kind == CommissionType.TIERED:
        tier = next((t for t in setting.tiers if t.contains(amount)), None)
        if tier is not None:
            fee = amount * tier.rate / HUNDRED + tier.flat_fee
            tier_applied = tier.name or f"{tier.min_volume}+"
        else:
            fee = amount * setting.base_rate / HUNDRED

    elif kind == CommissionType.HYBRID:
        fee = amount * setting.base_rate / HUNDRED + setting.flat_fee

    else:  # pragma: no cover - closed enum
        raise ValidationError(f"Unknown commission type: {kind}")

    range_adjustment = Decimal('0')
    payment_range = next(
        (r for r in setting.applies_to.payment_ranges if r.contains(amount)), None
    )
    if payment_range is not None:
        fee += fee * payment_range.adjustment_percent / HUNDRED
        range_adjustment = payment_range.adjustment_percent

    if setting.minimum_commission is not None and fee < setting.minimum_commission:
        fee = setting.minimum_commission
    if setting.maximum_commission is not None and fee > setting.maximum_commission:
        fee = setting.maximum_commission

    fee = quantize_money(fee, setting.currency)

    return CommissionQuote(
        amount=fee,
        effective_rate=_effective_rate(fee, amount),
        setting_id=setting.id,
        tier_applied=tier_applied,
        range_adjustment=range_adjustment,
    )


def default_quote(amount: Any, percentage: Decimal, currency: str = 'usd') -> CommissionQuote:
    """The documented fallback when no rule qualifies: a flat percentage."""
    amount = to_decimal(amount)
    fee = quantize_money(amount * percentage / HUNDRED, currency)
    return CommissionQuote(
        amount=fee,
        effective_rate=to_decimal(percentage),
        is_default=True,
    )


class CommissionEngine:
    """
    Rule selection and fee quoting on top of a commission settings store.

    Attributes:
        store: Commission settings storage (memory or PostgreSQL)
        users: User directory providing profiles for eligibility checks
        default_percentage: Rate used when no rule qualifies
        clock: Callable returning the current aware datetime
    """

    def __init__(
        self,
        store,
        users=None,
        default_percentage: Decimal = Decimal('5.0'),
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.users = users
        self.default_percentage = to_decimal(default_percentage)
        self.clock = clock

    async def select(
        self,
        user_id: str,
        user_type: UserType,
        amount: Any,
        transaction_type: Optional[CommissionTransactionType] = None,
        job_category: Optional[str] = None
    ) -> Optional[CommissionSetting]:
        """
        Pick the commission rule that applies to a user and transaction.

        Candidates must match the user type (or 'both'), be enabled and
        inside their date window, not exclude the user, satisfy the
        user-profile conditions and the promotional window/cap, and, when
        the rule restricts them, list the transaction type and job category.
        Survivors are ordered by priority, then by recency.

        Returns:
            The winning setting, or None when nothing qualifies
        """
        user_type = UserType(user_type)
        now = self.clock()
        settings = await self.store.list_settings()

        profile = None
        if self.users is not None:
            profile = await self.users.get_user_profile(user_id)

        candidates = [
            s for s in settings
            if self._is_candidate(s, str(user_id), user_type, now, profile,
                                  transaction_type, job_category)
        ]

        if not candidates:
            logger.debug(f"No commission rule applies to user {user_id} ({user_type.value})")
            return None

        candidates.sort(key=lambda s: s.created_at, reverse=True)
        candidates.sort(key=lambda s: s.priority, reverse=True)

        chosen = candidates[0]
        logger.debug(
            f"Commission rule '{chosen.name}' ({chosen.id}) selected for user {user_id} "
            f"out of {len(candidates)} candidate(s)"
        )
        return chosen

    def _is_candidate(
        self,
        setting: CommissionSetting,
        user_id: str,
        user_type: UserType,
        now: datetime,
        profile: Optional[UserProfile],
        transaction_type: Optional[CommissionTransactionType],
        job_category: Optional[str]
    ) -> bool:
        if setting.user_type not in (user_type, UserType.BOTH):
            return False

        conditions = setting.conditions
        if not conditions.enabled:
            return False
        if conditions.start_date and conditions.start_date > now:
            return False
        if conditions.end_date and conditions.end_date <= now:
            return False
        if user_id in conditions.excluded_users:
            return False

        needs_profile = (
            conditions.minimum_user_rating is not None
            or conditions.minimum_account_age_days
            or conditions.premium_users_only
        )
        if needs_profile:
            if profile is None:
                return False
            if (conditions.minimum_user_rating is not None
                    and profile.rating < conditions.minimum_user_rating):
                return False
            if conditions.minimum_account_age_days:
                if profile.created_at is None:
                    return False
                age = now - profile.created_at
                if age < timedelta(days=conditions.minimum_account_age_days):
                    return False
            if conditions.premium_users_only and not profile.is_premium:
                return False

        if not setting.promotional.is_live(now):
            return False

        applies = setting.applies_to
        if transaction_type and applies.transaction_types:
            if CommissionTransactionType(transaction_type) not in applies.transaction_types:
                return False
        if job_category and applies.job_categories:
            if job_category not in applies.job_categories:
                return False

        return True

    async def quote(
        self,
        user_id: str,
        user_type: UserType,
        amount: Any,
        transaction_type: Optional[CommissionTransactionType] = None,
        job_category: Optional[str] = None,
        currency: str = 'usd'
    ) -> CommissionQuote:
        """
        Select the applicable rule and compute the fee, falling back to
        the default percentage when no rule qualifies.
        """
        setting = await self.select(user_id, user_type, amount, transaction_type, job_category)
        if setting is None:
            return default_quote(amount, self.default_percentage, currency)

        result = calculate(setting, amount)
        if setting.promotional.is_promotional:
            await self.store.increment_promotional_usage(setting.id)
        return result


async def initialize_defaults(store, created_by: str) -> List[CommissionSetting]:
    """
    Seed the standard talent and manager rules if they are missing.

    Returns:
        The settings that were created
    """
    defaults = [
        CommissionSetting(
            name='Default Talent Commission',
            user_type=UserType.TALENT,
            commission_type=CommissionType.PERCENTAGE,
            base_rate=Decimal('5.0'),
            minimum_commission=Decimal('0.50'),
            applies_to=AppliesTo(transaction_types=[
                CommissionTransactionType.JOB_PAYMENT,
                CommissionTransactionType.ESCROW_RELEASE,
                CommissionTransactionType.MILESTONE_PAYMENT,
            ]),
            priority=5,
            created_by=created_by,
        ),
        CommissionSetting(
            name='Default Manager Commission',
            user_type=UserType.MANAGER,
            commission_type=CommissionType.PERCENTAGE,
            base_rate=Decimal('3.0'),
            minimum_commission=Decimal('0.30'),
            applies_to=AppliesTo(transaction_types=[
                CommissionTransactionType.JOB_PAYMENT,
                CommissionTransactionType.PACKAGE_PURCHASE,
            ]),
            priority=5,
            created_by=created_by,
        ),
    ]

    existing = {s.name for s in await store.list_settings()}
    created = []
    for setting in defaults:
        if setting.name not in existing:
            await store.save_setting(setting)
            created.append(setting)
            logger.info(f"Seeded commission setting '{setting.name}'")
    return created
