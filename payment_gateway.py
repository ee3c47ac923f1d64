"""
Payment Gateway Adapter.

Talks to the card processor (Stripe REST API) on behalf of the escrow
ledger: customer creation, payment intents for escrow funding, intent
status lookups for reconciliation and refunds back to the manager, with
refund lookups so in-flight refunds can be reconciled too.

All calls are blocking ``requests`` calls; the ledger runs them in a worker
thread and never holds an account lock across them. Every mutating call
carries an ``Idempotency-Key`` header so the session's automatic retries
(and any caller retry with the same key) cannot double charge.

Example:
    >>> gateway = StripeGateway(api_key='sk_test_...')
    >>> intent = gateway.create_payment_intent(
    ...     amount=Decimal('1050.00'),
    ...     currency='usd',
    ...     customer_ref='cus_123',
    ...     payment_method_ref='pm_card_visa',
    ...     idempotency_key='deposit-...',
    ...     metadata={'escrow_id': '...'}
    ... )
    >>> print(intent.status)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from escrow_errors import GatewayError
from escrow_models import GatewayEvent
from utils import from_minor_units, mask_sensitive_data, to_minor_units

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5
RETRYABLE_STATUS_CODES = [408, 409, 429, 500, 502, 503, 504]

# Payment intent statuses the ledger acts on
INTENT_SUCCEEDED = "succeeded"
INTENT_REQUIRES_ACTION = "requires_action"
INTENT_PROCESSING = "processing"
INTENT_FAILED_STATUSES = frozenset({"requires_payment_method", "canceled"})

REFUND_SUCCEEDED = "succeeded"
REFUND_PENDING = "pending"
REFUND_FAILED_STATUSES = frozenset({"failed", "canceled"})

# Webhook event types handled by the ledger
EVENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_INTENT_FAILED = "payment_intent.payment_failed"
EVENT_REFUND_UPDATED = "refund.updated"
EVENT_CHARGE_REFUND_UPDATED = "charge.refund.updated"
EVENT_REFUND_FAILED = "refund.failed"
INTENT_EVENTS = frozenset({EVENT_INTENT_SUCCEEDED, EVENT_INTENT_FAILED})
# Refund outcomes arrive as updates carrying the refund status
REFUND_EVENTS = frozenset({EVENT_REFUND_UPDATED, EVENT_CHARGE_REFUND_UPDATED, EVENT_REFUND_FAILED})
HANDLED_EVENTS = INTENT_EVENTS | REFUND_EVENTS

SETTLED = "settled"
FAILED = "failed"


@dataclass(frozen=True)
class PaymentIntentResult:
    """Outcome of creating a payment intent."""
    ref: str
    status: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    """Outcome of requesting a refund."""
    ref: str
    status: str


class PaymentGateway(ABC):
    """Interface the ledger uses to move real money."""

    @abstractmethod
    def create_customer(self, email: str, name: Optional[str] = None) -> str:
        """Create a gateway customer and return its reference."""

    @abstractmethod
    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_ref: Optional[str],
        payment_method_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> PaymentIntentResult:
        """Charge the manager; ``amount`` is in major units."""

    @abstractmethod
    def retrieve_payment_intent(self, ref: str) -> str:
        """Return the current status of a payment intent."""

    @abstractmethod
    def find_payment_intent(self, transaction_id: str) -> Optional[PaymentIntentResult]:
        """Find the intent created for a ledger transaction by its metadata, if any."""

    @abstractmethod
    def refund_payment(
        self,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        """Refund part of a captured payment back to the manager."""

    @abstractmethod
    def retrieve_refund(self, ref: str) -> str:
        """Return the current status of a refund."""

    @abstractmethod
    def find_refund(self, payment_ref: str, transaction_id: str) -> Optional[RefundResult]:
        """Find the refund of ``payment_ref`` created for a ledger transaction, if any."""


def get_session_with_retry() -> requests.Session:
    """
    Create a requests session with automatic retry logic.

    POST is retried too; it is safe because every POST carries an
    Idempotency-Key.

    Returns:
        requests.Session: Configured session with retry adapter.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=RETRY_BACKOFF,
        status_forcelist=RETRYABLE_STATUS_CODES,
        allowed_methods=["GET", "POST"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


class StripeGateway(PaymentGateway):
    """
    Stripe REST API client.

    Attributes:
        api_key: Secret API key
        base_url: API root (override for a mock server)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = 'https://api.stripe.com/v1',
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        if not api_key:
            raise GatewayError("Gateway API key is not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or get_session_with_retry()

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Perform an API call and translate failures into GatewayError.

        Raises:
            GatewayError: retryable for network errors, 429 and 5xx;
                terminal for card errors and invalid requests
        """
        headers = {'Authorization': f'Bearer {self.api_key}'}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key

        url = f"{self.base_url}{path}"

        try:
            response = self.session.request(
                method,
                url,
                data=data,
                params=params,
                headers=headers,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Gateway timeout on {method} {path}: {e}")
            raise GatewayError(f"Request timeout: {e}", retryable=True) from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Gateway connection error on {method} {path}: {e}")
            raise GatewayError(f"Connection error: {e}", retryable=True) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway request error on {method} {path}: {e}")
            raise GatewayError(f"Request failed: {e}", retryable=True) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get('error', {}) if isinstance(body, dict) else {}
            message = error.get('message') or f"HTTP {response.status_code}"
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            logger.error(
                f"Gateway rejected {method} {path}: {response.status_code} "
                f"{error.get('type', 'unknown')} - {message}"
            )
            raise GatewayError(
                f"Payment gateway error: {message}",
                retryable=retryable,
                details={
                    'status_code': response.status_code,
                    'type': error.get('type'),
                    'code': error.get('code') or error.get('decline_code'),
                }
            )

        return body

    def create_customer(self, email: str, name: Optional[str] = None) -> str:
        data = {'email': email}
        if name:
            data['name'] = name
        customer = self._request('POST', '/customers', data=data)
        logger.info(f"Gateway customer created: {customer['id']}")
        return customer['id']

    def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        customer_ref: Optional[str],
        payment_method_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> PaymentIntentResult:
        data = {
            'amount': to_minor_units(amount, currency),
            'currency': currency.lower(),
            'payment_method': payment_method_ref,
            'confirm': 'true',
            'automatic_payment_methods[enabled]': 'true',
            'automatic_payment_methods[allow_redirects]': 'never',
        }
        if customer_ref:
            data['customer'] = customer_ref
        for key, value in (metadata or {}).items():
            data[f'metadata[{key}]'] = str(value)

        logger.info(
            f"Creating payment intent: amount={amount} {currency.upper()}, "
            f"method={mask_sensitive_data(payment_method_ref)}"
        )
        intent = self._request('POST', '/payment_intents', data=data,
                               idempotency_key=idempotency_key)

        logger.info(f"Payment intent {intent['id']} status: {intent['status']}")
        return PaymentIntentResult(
            ref=intent['id'],
            status=intent['status'],
            client_secret=intent.get('client_secret'),
        )

    def retrieve_payment_intent(self, ref: str) -> str:
        intent = self._request('GET', f'/payment_intents/{ref}')
        return intent['status']

    def find_payment_intent(self, transaction_id: str) -> Optional[PaymentIntentResult]:
        found = self._request(
            'GET',
            '/payment_intents/search',
            params={'query': f"metadata['transaction_id']:'{transaction_id}'", 'limit': 1},
        )
        matches = found.get('data') or []
        if not matches:
            return None
        intent = matches[0]
        logger.info(f"Found payment intent {intent['id']} for transaction {transaction_id}")
        return PaymentIntentResult(
            ref=intent['id'],
            status=intent['status'],
            client_secret=intent.get('client_secret'),
        )

    def refund_payment(
        self,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        # Currency of the refund is the intent's; the amount is sent in its minor units
        currency = self._request('GET', f'/payment_intents/{payment_ref}').get('currency', 'usd')
        data = {'payment_intent': payment_ref, 'amount': to_minor_units(amount, currency)}
        for key, value in (metadata or {}).items():
            data[f'metadata[{key}]'] = str(value)
        refund = self._request('POST', '/refunds', data=data, idempotency_key=idempotency_key)
        logger.info(f"Refund {refund['id']} for {payment_ref} status: {refund['status']}")
        return RefundResult(ref=refund['id'], status=refund['status'])

    def retrieve_refund(self, ref: str) -> str:
        refund = self._request('GET', f'/refunds/{ref}')
        return refund['status']

    def find_refund(self, payment_ref: str, transaction_id: str) -> Optional[RefundResult]:
        refunds = self._request(
            'GET', '/refunds', params={'payment_intent': payment_ref, 'limit': 100}
        )
        for refund in refunds.get('data') or []:
            if (refund.get('metadata') or {}).get('transaction_id') == transaction_id:
                logger.info(f"Found refund {refund['id']} for transaction {transaction_id}")
                return RefundResult(ref=refund['id'], status=refund['status'])
        return None


def parse_webhook_event(payload: Dict[str, Any]) -> Optional[GatewayEvent]:
    """
    Turn a gateway webhook body into a GatewayEvent.

    Returns:
        GatewayEvent, or None for event types the ledger does not handle

    Raises:
        GatewayError: If the payload is malformed
    """
    event_type = payload.get('type')
    if event_type not in HANDLED_EVENTS:
        return None

    try:
        obj = payload['data']['object']
        ref = obj['id']
        event_id = payload['id']
    except (KeyError, TypeError) as e:
        raise GatewayError(f"Malformed webhook payload: missing {e}") from e

    amount = None
    if obj.get('amount') is not None:
        amount = from_minor_units(obj['amount'], obj.get('currency', 'usd'))

    status = obj.get('status')
    failure_message = None
    if event_type == EVENT_INTENT_FAILED:
        failure_message = (obj.get('last_payment_error') or {}).get('message')
    elif event_type == EVENT_REFUND_FAILED or status in REFUND_FAILED_STATUSES:
        failure_message = obj.get('failure_reason')

    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        ref=ref,
        amount=amount,
        failure_message=failure_message,
        status=status,
        transaction_id=(obj.get('metadata') or {}).get('transaction_id'),
    )


def settlement_outcome(event: GatewayEvent) -> Optional[str]:
    """
    What an event means for its pending transaction.

    Returns:
        ``settled``, ``failed``, or None while the gateway object is still in flight
    """
    if event.event_type == EVENT_INTENT_SUCCEEDED:
        return SETTLED
    if event.event_type in (EVENT_INTENT_FAILED, EVENT_REFUND_FAILED):
        return FAILED
    if event.event_type in REFUND_EVENTS:
        if event.status == REFUND_SUCCEEDED:
            return SETTLED
        if event.status in REFUND_FAILED_STATUSES:
            return FAILED
    return None
