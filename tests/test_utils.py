import json
import logging
from decimal import Decimal

import pytest

from utils import (
    JsonFormatter,
    format_currency,
    from_minor_units,
    mask_sensitive_data,
    quantize_money,
    to_decimal,
    to_minor_units,
    validate_amount,
)


def test_to_decimal_avoids_float_drift():
    assert to_decimal(0.1) == Decimal('0.1')
    assert to_decimal('1,050.00') == Decimal('1050.00')


@pytest.mark.parametrize('bad', ['abc', None, True, ''])
def test_to_decimal_rejects_non_numbers(bad):
    with pytest.raises(ValueError):
        to_decimal(bad)


def test_quantize_rounds_half_up():
    assert quantize_money(Decimal('10.005')) == Decimal('10.01')
    assert quantize_money(Decimal('10.004')) == Decimal('10.00')
    assert quantize_money(Decimal('99.5'), 'jpy') == Decimal('100')


def test_minor_units():
    assert to_minor_units(Decimal('12.34')) == 1234
    assert to_minor_units(Decimal('1500'), 'JPY') == 1500
    assert from_minor_units(1234) == Decimal('12.34')


@pytest.mark.parametrize('amount, error', [
    ('10.005', 'more precision'),
    ('0', 'at least USD 0.01'),
    ('-5', 'at least'),
    ('NaN', 'Invalid amount'),
    ('ten', 'Invalid amount'),
    ('1e30', 'Invalid amount'),
    ('Infinity', 'Invalid amount'),
])
def test_validate_amount_errors(amount, error):
    is_valid, value, message = validate_amount(amount)
    assert not is_valid
    assert value is None
    assert error in message


def test_validate_amount_upper_bound():
    assert validate_amount('600.00', max_amount=Decimal('600.00')) == (True, Decimal('600.00'), None)
    is_valid, _, message = validate_amount('600.01', max_amount=Decimal('600.00'))
    assert not is_valid
    assert 'USD 600.00' in message


def test_format_currency():
    assert format_currency(Decimal('1234567.5')) == 'USD 1,234,567.50'
    assert format_currency(Decimal('5000'), 'jpy') == 'JPY 5,000'


def test_mask_sensitive_data():
    assert mask_sensitive_data('pm_card_visa') == '********visa'
    assert mask_sensitive_data('abc') == '***'


def test_json_formatter_keeps_quotes_valid():
    record = logging.LogRecord(
        'escrow_service', logging.WARNING, __file__, 1, 'Reason was "%s"', ('late delivery',), None
    )
    entry = json.loads(JsonFormatter().format(record))
    assert entry['level'] == 'WARNING'
    assert entry['logger'] == 'escrow_service'
    assert entry['message'] == 'Reason was "late delivery"'
