"""
Shared fixtures for the escrow ledger tests.

Everything runs against the in-memory store with a fake gateway, an
in-memory marketplace and a notifier that records what it was asked to
send. The clock is fixed and advanced explicitly by tests.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from commission_engine import CommissionEngine
from contracts import InMemoryMarketplace
from escrow_admin import EscrowAdmin
from escrow_errors import GatewayError
from escrow_memory_store import MemoryCommissionSettingsStore, MemoryEscrowStore
from escrow_models import Contract, ContractStatus
from escrow_service import EscrowLedger, LedgerSettings
from notifications import Notifier
from payment_gateway import (
    INTENT_SUCCEEDED,
    REFUND_SUCCEEDED,
    PaymentGateway,
    PaymentIntentResult,
    RefundResult,
)
from utils import utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

MANAGER_ID = "manager-1"
TALENT_ID = "talent-1"
ADMIN_ID = "admin-1"
CONTRACT_ID = "contract-1"


class FakeClock:
    """Settable clock; starts at the real current time so scheduled jobs stay in the future."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utc_now().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """
    Scriptable gateway.

    Set ``intent_status`` / ``refund_status`` to control the outcome of the
    next calls, or ``intent_error`` / ``refund_error`` to make them raise.
    """

    def __init__(self):
        self.intent_status = INTENT_SUCCEEDED
        self.refund_status = REFUND_SUCCEEDED
        self.intent_error: Optional[GatewayError] = None
        self.refund_error: Optional[GatewayError] = None
        self.customers: List[str] = []
        self.intents: Dict[str, str] = {}
        self.charges: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.refund_states: Dict[str, str] = {}

    def create_customer(self, email: str, name: Optional[str] = None) -> str:
        self.customers.append(email)
        return f"cus_{len(self.customers)}"

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_ref: Optional[str],
        payment_method_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> PaymentIntentResult:
        if self.intent_error is not None:
            raise self.intent_error
        ref = f"pi_{len(self.intents) + 1}"
        self.intents[ref] = self.intent_status
        self.charges.append({
            'ref': ref,
            'amount': amount,
            'currency': currency,
            'customer_ref': customer_ref,
            'idempotency_key': idempotency_key,
            'metadata': metadata or {},
        })
        secret = None if self.intent_status == INTENT_SUCCEEDED else f"{ref}_secret"
        return PaymentIntentResult(ref=ref, status=self.intent_status, client_secret=secret)

    def retrieve_payment_intent(self, ref: str) -> str:
        return self.intents[ref]

    def find_payment_intent(self, transaction_id: str) -> Optional[PaymentIntentResult]:
        for charge in self.charges:
            if charge['metadata'].get('transaction_id') == transaction_id:
                return PaymentIntentResult(ref=charge['ref'], status=self.intents[charge['ref']])
        return None

    def refund_payment(
        self,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        if self.refund_error is not None:
            raise self.refund_error
        ref = f"re_{len(self.refunds) + 1}"
        self.refund_states[ref] = self.refund_status
        self.refunds.append({
            'ref': ref,
            'payment_ref': payment_ref,
            'amount': amount,
            'idempotency_key': idempotency_key,
            'metadata': metadata or {},
        })
        return RefundResult(ref=ref, status=self.refund_status)

    def retrieve_refund(self, ref: str) -> str:
        return self.refund_states[ref]

    def find_refund(self, payment_ref: str, transaction_id: str) -> Optional[RefundResult]:
        for refund in self.refunds:
            if refund['payment_ref'] == payment_ref and refund['metadata'].get('transaction_id') == transaction_id:
                return RefundResult(ref=refund['ref'], status=self.refund_states[refund['ref']])
        return None


class RecordingNotifier(Notifier):
    """Keeps every delivered notification in ``sent``."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def _deliver(self, event, user_id, title, message, data) -> None:
        self.sent.append({
            'event': event,
            'user_id': user_id,
            'title': title,
            'message': message,
            'data': data,
        })

    def events_for(self, user_id: str) -> List[str]:
        return [n['event'].value for n in self.sent if n['user_id'] == user_id]


def make_contract(
    contract_id: str = CONTRACT_ID,
    total_amount: str = '1000.00',
    status: ContractStatus = ContractStatus.ACCEPTED,
    manager_id: str = MANAGER_ID,
    talent_id: str = TALENT_ID
) -> Contract:
    return Contract(
        contract_id=contract_id,
        manager_id=manager_id,
        talent_id=talent_id,
        total_amount=Decimal(total_amount),
        title=f"Contract {contract_id}",
        status=status.value,
        manager_email=f"{manager_id}@example.com",
        manager_name="Morgan Manager",
        job_category="web_development",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryEscrowStore()


@pytest.fixture
def settings_store():
    return MemoryCommissionSettingsStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def marketplace():
    market = InMemoryMarketplace()
    market.add_contract(make_contract())
    return market


@pytest.fixture
def ledger_settings():
    return LedgerSettings(
        lock_timeout=1.0,
        conflict_max_retries=3,
        conflict_backoff_base=0.001,
    )


@pytest.fixture
def ledger(store, gateway, marketplace, settings_store, notifier, clock, ledger_settings):
    commission = CommissionEngine(settings_store, users=marketplace, clock=clock)
    return EscrowLedger(
        store,
        gateway,
        marketplace,
        commission,
        notifier=notifier,
        clock=clock,
        settings=ledger_settings,
    )


@pytest.fixture
def admin(ledger, settings_store):
    return EscrowAdmin(ledger, [ADMIN_ID], settings_store=settings_store)


@pytest_asyncio.fixture
async def created_escrow(ledger):
    return await ledger.create(CONTRACT_ID)


@pytest_asyncio.fixture
async def funded_escrow(ledger, created_escrow):
    result = await ledger.fund(created_escrow.id, "pm_card_visa")
    return result.account
