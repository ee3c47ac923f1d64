from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from escrow_errors import GatewayError
from payment_gateway import (
    EVENT_CHARGE_REFUND_UPDATED,
    EVENT_INTENT_FAILED,
    EVENT_INTENT_SUCCEEDED,
    EVENT_REFUND_FAILED,
    EVENT_REFUND_UPDATED,
    FAILED,
    SETTLED,
    StripeGateway,
    parse_webhook_event,
    settlement_outcome,
)


def response(status_code, body):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def gateway(session):
    return StripeGateway(api_key='sk_test_123', base_url='https://gateway.test/v1/', session=session)


def test_missing_api_key_is_rejected():
    with pytest.raises(GatewayError):
        StripeGateway(api_key='')


def test_payment_intent_is_sent_in_minor_units(gateway, session):
    session.request.return_value = response(200, {
        'id': 'pi_1', 'status': 'requires_action', 'client_secret': 'pi_1_secret',
    })

    result = gateway.create_payment_intent(
        amount=Decimal('1050.00'),
        currency='USD',
        customer_ref='cus_1',
        payment_method_ref='pm_card_visa',
        idempotency_key='deposit-abc',
        metadata={'escrow_id': 'escrow-1'},
    )

    assert result.ref == 'pi_1'
    assert result.client_secret == 'pi_1_secret'
    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, url) == ('POST', 'https://gateway.test/v1/payment_intents')
    assert kwargs['data']['amount'] == 105000
    assert kwargs['data']['currency'] == 'usd'
    assert kwargs['data']['customer'] == 'cus_1'
    assert kwargs['data']['metadata[escrow_id]'] == 'escrow-1'
    assert kwargs['headers']['Idempotency-Key'] == 'deposit-abc'
    assert kwargs['headers']['Authorization'] == 'Bearer sk_test_123'


def test_zero_decimal_currency(gateway, session):
    session.request.return_value = response(200, {'id': 'pi_2', 'status': 'succeeded'})

    gateway.create_payment_intent(Decimal('5000'), 'jpy', None, 'pm_card_visa', 'deposit-jpy')

    data = session.request.call_args.kwargs['data']
    assert data['amount'] == 5000
    assert 'customer' not in data


@pytest.mark.parametrize('exc', [
    requests.exceptions.Timeout('read timed out'),
    requests.exceptions.ConnectionError('connection refused'),
])
def test_network_failures_are_retryable(gateway, session, exc):
    session.request.side_effect = exc

    with pytest.raises(GatewayError) as excinfo:
        gateway.retrieve_payment_intent('pi_1')

    assert excinfo.value.retryable


def test_card_decline_is_terminal(gateway, session):
    session.request.return_value = response(402, {'error': {
        'type': 'card_error', 'message': 'Your card was declined.', 'decline_code': 'generic_decline',
    }})

    with pytest.raises(GatewayError) as excinfo:
        gateway.create_payment_intent(Decimal('10'), 'usd', None, 'pm_card_declined', 'key-1')

    error = excinfo.value
    assert not error.retryable
    assert 'declined' in error.message
    assert error.details['status_code'] == 402
    assert error.details['code'] == 'generic_decline'


def test_server_error_is_retryable(gateway, session):
    session.request.return_value = response(503, {})

    with pytest.raises(GatewayError) as excinfo:
        gateway.create_customer('manager@example.com')

    assert excinfo.value.retryable
    assert 'HTTP 503' in excinfo.value.message


def test_refund_uses_the_intent_currency(gateway, session):
    session.request.side_effect = [
        response(200, {'id': 'pi_1', 'status': 'succeeded', 'currency': 'jpy'}),
        response(200, {'id': 're_1', 'status': 'pending'}),
    ]

    result = gateway.refund_payment('pi_1', Decimal('300'), 'refund-abc')

    assert result.ref == 're_1'
    assert result.status == 'pending'
    first, second = session.request.call_args_list
    assert first.args[0] == 'GET'
    assert second.args == ('POST', 'https://gateway.test/v1/refunds')
    assert second.kwargs['data'] == {'payment_intent': 'pi_1', 'amount': 300}
    assert second.kwargs['headers']['Idempotency-Key'] == 'refund-abc'


def test_refund_carries_transaction_metadata(gateway, session):
    session.request.side_effect = [
        response(200, {'id': 'pi_1', 'status': 'succeeded', 'currency': 'usd'}),
        response(200, {'id': 're_1', 'status': 'succeeded'}),
    ]

    gateway.refund_payment('pi_1', Decimal('12.50'), 'refund-abc', {'transaction_id': 'txn-1'})

    data = session.request.call_args.kwargs['data']
    assert data['amount'] == 1250
    assert data['metadata[transaction_id]'] == 'txn-1'


def test_find_payment_intent_searches_by_transaction(gateway, session):
    session.request.return_value = response(200, {'data': [{'id': 'pi_7', 'status': 'succeeded'}]})

    intent = gateway.find_payment_intent('txn-1')

    assert (intent.ref, intent.status) == ('pi_7', 'succeeded')
    method, url = session.request.call_args.args
    assert (method, url) == ('GET', 'https://gateway.test/v1/payment_intents/search')
    assert session.request.call_args.kwargs['params']['query'] == "metadata['transaction_id']:'txn-1'"


def test_find_payment_intent_without_match(gateway, session):
    session.request.return_value = response(200, {'data': []})

    assert gateway.find_payment_intent('txn-1') is None


def test_find_refund_matches_metadata(gateway, session):
    session.request.return_value = response(200, {'data': [
        {'id': 're_1', 'status': 'succeeded', 'metadata': {'transaction_id': 'txn-other'}},
        {'id': 're_2', 'status': 'pending', 'metadata': {'transaction_id': 'txn-1'}},
    ]})

    refund = gateway.find_refund('pi_1', 'txn-1')

    assert (refund.ref, refund.status) == ('re_2', 'pending')
    assert session.request.call_args.kwargs['params']['payment_intent'] == 'pi_1'
    assert gateway.find_refund('pi_1', 'txn-missing') is None


def test_retrieve_refund(gateway, session):
    session.request.return_value = response(200, {'id': 're_1', 'status': 'failed'})

    assert gateway.retrieve_refund('re_1') == 'failed'
    assert session.request.call_args.args == ('GET', 'https://gateway.test/v1/refunds/re_1')


def test_create_customer(gateway, session):
    session.request.return_value = response(200, {'id': 'cus_9'})

    assert gateway.create_customer('manager@example.com', name='Manager') == 'cus_9'
    assert session.request.call_args.kwargs['data'] == {'email': 'manager@example.com', 'name': 'Manager'}


class TestParseWebhookEvent:

    def test_refund_update_carries_status_and_transaction(self):
        event = parse_webhook_event({
            'id': 'evt_1',
            'type': EVENT_REFUND_UPDATED,
            'data': {'object': {
                'id': 're_1', 'amount': 30000, 'currency': 'usd', 'status': 'succeeded',
                'metadata': {'transaction_id': 'txn-9'},
            }},
        })
        assert event.event_id == 'evt_1'
        assert event.ref == 're_1'
        assert event.amount == Decimal('300.00')
        assert event.status == 'succeeded'
        assert event.transaction_id == 'txn-9'
        assert event.failure_message is None
        assert settlement_outcome(event) == SETTLED

    def test_refund_failure_carries_reason(self):
        event = parse_webhook_event({
            'id': 'evt_5',
            'type': EVENT_REFUND_FAILED,
            'data': {'object': {'id': 're_2', 'status': 'failed', 'failure_reason': 'expired_or_canceled_card'}},
        })
        assert event.failure_message == 'expired_or_canceled_card'
        assert settlement_outcome(event) == FAILED

    @pytest.mark.parametrize('event_type, status, outcome', [
        (EVENT_REFUND_UPDATED, 'pending', None),
        (EVENT_REFUND_UPDATED, 'canceled', FAILED),
        (EVENT_CHARGE_REFUND_UPDATED, 'succeeded', SETTLED),
        (EVENT_INTENT_SUCCEEDED, 'succeeded', SETTLED),
    ])
    def test_settlement_outcome(self, event_type, status, outcome):
        event = parse_webhook_event({
            'id': 'evt_6', 'type': event_type, 'data': {'object': {'id': 'obj_1', 'status': status}},
        })
        assert settlement_outcome(event) == outcome

    def test_refund_succeeded_is_not_a_gateway_event(self):
        assert parse_webhook_event({
            'id': 'evt_7', 'type': 'refund.succeeded', 'data': {'object': {'id': 're_1'}},
        }) is None

    def test_payment_failure_carries_message(self):
        event = parse_webhook_event({
            'id': 'evt_2',
            'type': EVENT_INTENT_FAILED,
            'data': {'object': {'id': 'pi_1', 'last_payment_error': {'message': 'Card expired'}}},
        })
        assert event.failure_message == 'Card expired'
        assert event.amount is None

    def test_unhandled_type_is_ignored(self):
        assert parse_webhook_event({'id': 'evt_3', 'type': 'customer.created'}) is None

    def test_malformed_payload(self):
        with pytest.raises(GatewayError):
            parse_webhook_event({'id': 'evt_4', 'type': EVENT_REFUND_UPDATED, 'data': {}})
