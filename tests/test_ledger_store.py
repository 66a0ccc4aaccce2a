from datetime import date
from decimal import Decimal

import pytest

from transit_ledger.errors import TenancyViolation, UpstreamUnavailable
from transit_ledger.services.ledger_store import LedgerStore

from conftest import FakeOpenSearchClient

CSV = b"""Date,Journey/Action,Charge
15/01/2024,Bus journey route 73,1.75
15/01/2024,Underground Zone 1-2 Victoria to Oxford Circus,2.80
16/01/2024,Overground train to Highbury,3.10
"""


@pytest.fixture
def stored(parser, ledger):
    result = parser.parse(CSV, 'csv', 'alice')
    ledger.store(result.invoice, result.transactions)
    return result


def test_store_then_read_back(stored, ledger):
    transactions = ledger.get_by_invoice(stored.invoice.id, 'alice')

    assert transactions == list(stored.transactions)
    invoice = ledger.get_invoice(stored.invoice.id, 'alice')
    assert invoice.total_amount == Decimal('7.65')
    assert invoice.period_start == date(2024, 1, 15)
    assert invoice.transaction_count == 3


def test_amounts_survive_storage_exactly(parser, ledger):
    result = parser.parse(b'date,amount\n2024-01-15,0.105\n', 'csv', 'alice')
    ledger.store(result.invoice, result.transactions)

    assert ledger.get_by_invoice(result.invoice.id, 'alice')[0].amount == Decimal('0.105')


def test_unknown_invoice_is_empty(ledger):
    assert ledger.get_by_invoice('inv_missing', 'alice') == []
    assert ledger.get_invoice('inv_missing', 'alice') is None


def test_other_owner_cannot_read_invoice(stored, ledger):
    with pytest.raises(TenancyViolation):
        ledger.get_by_invoice(stored.invoice.id, 'mallory')
    with pytest.raises(TenancyViolation):
        ledger.get_invoice(stored.invoice.id, 'mallory')


def test_blank_owner_is_rejected(stored, ledger):
    with pytest.raises(TenancyViolation):
        ledger.get_by_invoice(stored.invoice.id, '')


def test_failed_invoice_write_rolls_back_transactions(parser, fake_opensearch, ledger):
    result = parser.parse(CSV, 'csv', 'alice')
    fake_opensearch.fail_on.add(('index', 'invoice'))

    with pytest.raises(UpstreamUnavailable):
        ledger.store(result.invoice, result.transactions)

    assert fake_opensearch.indices['transaction'] == {}
    assert fake_opensearch.indices['invoice'] == {}
    assert ledger.get_by_invoice(result.invoice.id, 'alice') == []


def test_orphan_transactions_are_invisible(parser, fake_opensearch, ledger):
    result = parser.parse(CSV, 'csv', 'alice')
    fake_opensearch.fail_on.update({('index', 'invoice'), ('delete', 'transaction')})

    with pytest.raises(UpstreamUnavailable):
        ledger.store(result.invoice, result.transactions)

    # Rollback failed too, but nothing is readable without the invoice summary
    assert len(fake_opensearch.indices['transaction']) == 3
    assert ledger.get_by_invoice(result.invoice.id, 'alice') == []
    assert ledger.find_similar('alice', 'bus journey') == []


def test_embedding_outage_stores_without_vectors(parser, fake_opensearch, fake_embed, ledger):
    result = parser.parse(CSV, 'csv', 'alice')
    fake_embed.fail = True

    assert ledger.store(result.invoice, result.transactions) is False

    assert all('embedding' not in doc for doc in fake_opensearch.indices['transaction'].values())
    assert ledger.get_by_invoice(result.invoice.id, 'alice') == list(result.transactions)
    assert ledger.get_invoice(result.invoice.id, 'alice').total_amount == Decimal('7.65')


def test_store_reports_embedded_transactions(parser, fake_opensearch, ledger):
    result = parser.parse(CSV, 'csv', 'alice')

    assert ledger.store(result.invoice, result.transactions) is True
    assert all('embedding' in doc for doc in fake_opensearch.indices['transaction'].values())


def test_large_invoice_is_read_back_completely(parser, ledger):
    rows = b''.join(b'2024-01-%02d,%d.%02d\n' % (i % 28 + 1, i // 100, i % 100) for i in range(10050))
    result = parser.parse(b'date,amount\n' + rows, 'csv', 'alice')
    ledger.store(result.invoice, result.transactions)

    transactions = ledger.get_by_invoice(result.invoice.id, 'alice')

    assert len(result.transactions) == 10050
    assert len(transactions) == 10050


def test_storing_twice_is_idempotent(stored, parser, fake_opensearch, ledger):
    again = parser.parse(CSV, 'csv', 'alice')
    ledger.store(again.invoice, again.transactions)

    assert len(fake_opensearch.indices['transaction']) == 3
    assert len(fake_opensearch.indices['invoice']) == 1


def test_find_similar_ranks_matching_journeys(stored, ledger):
    hits = ledger.find_similar('alice', 'bus journey route 73', invoice_id=stored.invoice.id, k=3)

    assert hits[0].transaction.description == 'Bus journey route 73'
    assert all(hit.transaction.owner_id == 'alice' for hit in hits)


def test_find_similar_on_foreign_invoice_is_a_tenancy_violation(stored, ledger):
    with pytest.raises(TenancyViolation):
        ledger.find_similar('mallory', 'bus', invoice_id=stored.invoice.id)


def test_find_similar_drops_foreign_hits_from_a_leaky_index(parser, fake_embed):
    leaky = FakeOpenSearchClient(leaky=True)
    store = LedgerStore(leaky, fake_embed)
    for owner in ('alice', 'mallory'):
        result = parser.parse(CSV, 'csv', owner)
        store.store(result.invoice, result.transactions)

    hits = store.find_similar('alice', 'bus journey route 73', k=10)

    assert len(hits) == 3
    assert {hit.transaction.owner_id for hit in hits} == {'alice'}
