import json
from datetime import date, timedelta
from decimal import Decimal

import pytest

from transit_ledger.errors import CapacityExceeded, MalformedInput
from transit_ledger.models.core import JourneyType, SourceFormat
from transit_ledger.utils.money import exact_sum

TFL_CSV = b"""Date,Journey/Action,Charge
15/01/2024,Bus journey route 73,\xc2\xa31.75
15/01/2024,Victoria to Oxford Circus,
16/01/2024,Underground Zone 1-2,\xc2\xa32.80
"""


def test_csv_row_missing_amount_is_skipped(parser):
    result = parser.parse(TFL_CSV, 'csv', 'alice')

    assert len(result.transactions) == 2
    assert result.diagnostics.skipped_rows == 1
    assert result.diagnostics.skipped[0].reason == 'missing_amount'
    assert result.diagnostics.skipped[0].line == 3


def test_csv_fields_are_inferred_from_journey_text(parser):
    bus, tube = parser.parse(TFL_CSV, 'csv', 'alice').transactions

    assert bus.date == date(2024, 1, 15)
    assert bus.amount == Decimal('1.75')
    assert bus.journey_type is JourneyType.BUS
    assert tube.date == date(2024, 1, 16)
    assert tube.journey_type is JourneyType.TUBE
    assert tube.zone_range == (1, 2)


def test_invoice_total_is_exact_sum_of_transactions(parser):
    result = parser.parse(TFL_CSV, 'csv', 'alice')

    assert result.invoice.total_amount == Decimal('4.55')
    assert abs(result.invoice.total_amount - exact_sum(t.amount for t in result.transactions)) <= Decimal('0.005')
    assert result.invoice.transaction_count == 2
    assert result.invoice.source_format is SourceFormat.CSV
    assert result.invoice.period_start == date(2024, 1, 15)
    assert result.invoice.period_end == date(2024, 1, 16)


def test_parsing_same_file_twice_is_idempotent(parser):
    first = parser.parse(TFL_CSV, 'csv', 'alice')
    second = parser.parse(TFL_CSV, 'csv', 'alice')

    assert first.invoice.id == second.invoice.id
    assert first.transactions == second.transactions
    assert len({t.id for t in first.transactions}) == 2


def test_invoice_id_depends_on_owner(parser):
    assert parser.parse(TFL_CSV, 'csv', 'alice').invoice.id != parser.parse(TFL_CSV, 'csv', 'bob').invoice.id


def test_declared_total_mismatch_is_reported_not_corrected(parser):
    raw = TFL_CSV + b'Total,,\xc2\xa35.00\n'
    invoice = parser.parse(raw, 'csv', 'alice').invoice

    assert invoice.total_amount == Decimal('4.55')
    assert invoice.declared_total == Decimal('5.00')
    assert len(invoice.warnings) == 1
    assert invoice.warnings[0].difference == Decimal('0.45')
    assert invoice.to_dict()['warnings'][0]['type'] == 'reconciliation_mismatch'


def test_matching_declared_total_has_no_warning(parser):
    raw = TFL_CSV + b'Total,,4.55\n'
    invoice = parser.parse(raw, 'csv', 'alice').invoice

    assert invoice.declared_total == Decimal('4.55')
    assert invoice.warnings == []


def test_csv_negative_and_non_numeric_amounts_are_skipped(parser):
    raw = b'date,amount,mode\n2024-02-01,(1.50),bus\n2024-02-01,n/a,bus\n2024-02-02,2.80,tube\n'
    result = parser.parse(raw, 'csv', 'alice')

    assert [t.amount for t in result.transactions] == [Decimal('2.80')]
    assert [s.reason for s in result.diagnostics.skipped] == ['negative_amount', 'amount_not_numeric']


def test_csv_date_contradicting_timestamp_is_skipped(parser):
    raw = (b'Date,Timestamp,Amount\n'
           b'2024-03-01,2024-03-02T10:00:00,2.80\n'
           b'2024-03-01,2024-03-01T10:00:00,2.80\n')
    result = parser.parse(raw, 'csv', 'alice')

    assert len(result.transactions) == 1
    assert result.transactions[0].timestamp.hour == 10
    assert result.diagnostics.skipped[0].reason == 'date_timestamp_mismatch'


def test_iso_dates_are_not_read_day_first(parser):
    raw = b'date,amount\n2024-01-02,1.00\n'
    assert parser.parse(raw, 'csv', 'alice').transactions[0].date == date(2024, 1, 2)


def test_json_object_with_camel_case_keys_and_timezone(parser):
    payload = {
        'periodStart': '2024-06-01',
        'periodEnd': '2024-06-30',
        'timezone': 'Europe/London',
        'total': '6.10',
        'transactions': [
            {'timestamp': '2024-06-15T23:30:00Z', 'amount': 2.8, 'journeyType': 'tube', 'zones': '1-2', 'peak': False},
            {'date': '2024-06-17', 'amount': '3.30', 'mode': 'Bus'},
            'garbage',
            {'date': '2024-06-18', 'amount': '-1.00'},
        ],
    }
    result = parser.parse(json.dumps(payload).encode('utf-8'), SourceFormat.JSON, 'alice')

    tube, bus = result.transactions
    # 23:30 UTC is already the next day in London during summer time
    assert tube.date == date(2024, 6, 16)
    assert tube.timestamp.utcoffset() == timedelta(hours=1)
    assert tube.journey_type is JourneyType.TUBE
    assert tube.zone_range == (1, 2)
    assert tube.peak is False
    assert bus.journey_type is JourneyType.BUS
    assert result.invoice.timezone == 'Europe/London'
    assert result.invoice.period_start == date(2024, 6, 1)
    assert result.invoice.total_amount == Decimal('6.10')
    assert result.invoice.warnings == []
    assert [(s.line, s.reason) for s in result.diagnostics.skipped] == [(3, 'entry_not_object'), (4, 'negative_amount')]


def test_explicit_timezone_overrides_file(parser):
    raw = json.dumps([{'timestamp': '2024-06-15T23:30:00+00:00', 'amount': '2.80'}]).encode('utf-8')

    assert parser.parse(raw, 'json', 'alice').transactions[0].date == date(2024, 6, 15)
    assert parser.parse(raw, 'json', 'alice', timezone='Europe/London').transactions[0].date == date(2024, 6, 16)


def test_pdf_statement_text(parser):
    text = '\n'.join([
        'Transport for London',
        'Statement period 01/01/2024 - 31/01/2024',
        '15/01/2024 08:12 - 08:40 Bus journey, route 73 £1.75',
        '15/01/2024 Paddington to Liverpool Street £2.80',
        '16-Jan-2024 Bus journey £1.75',
        '17/01/2024 Refund pending',
        'Total charges £6.30',
    ])
    result = parser.parse_text(text, 'alice')

    assert len(result.transactions) == 3
    assert result.diagnostics.skipped_rows == 1
    assert result.diagnostics.skipped[0].reason == 'unrecognised_line'
    first = result.transactions[0]
    assert first.journey_type is JourneyType.BUS
    assert first.timestamp.hour == 8 and first.timestamp.minute == 12
    assert result.transactions[-1].date == date(2024, 1, 16)
    assert result.invoice.declared_total == Decimal('6.30')
    assert result.invoice.warnings == []
    assert result.invoice.period_start == date(2024, 1, 1)
    assert result.invoice.period_end == date(2024, 1, 31)


def test_transactions_are_ordered_by_date_then_timestamp(parser):
    raw = (b'date,start time,amount\n'
           b'2024-01-16,09:00,1.00\n'
           b'2024-01-15,18:00,2.00\n'
           b'2024-01-15,07:30,3.00\n')
    amounts = [t.amount for t in parser.parse(raw, 'csv', 'alice').transactions]

    assert amounts == [Decimal('3.00'), Decimal('2.00'), Decimal('1.00')]


def test_file_without_transactions_is_malformed(parser):
    with pytest.raises(MalformedInput):
        parser.parse(b'Date,Charge\n', 'csv', 'alice')


def test_unknown_format_is_malformed(parser):
    with pytest.raises(MalformedInput):
        parser.parse(b'anything', 'xlsx', 'alice')


def test_invalid_json_is_malformed(parser):
    with pytest.raises(MalformedInput):
        parser.parse(b'{"transactions": [', 'json', 'alice')


def test_unreadable_pdf_is_malformed(parser):
    with pytest.raises(MalformedInput):
        parser.parse(b'not a pdf at all', 'pdf', 'alice')


def test_oversized_file_is_rejected(parser):
    with pytest.raises(CapacityExceeded):
        parser.parse(b'x' * (1024 * 1024 + 1), 'csv', 'alice')
