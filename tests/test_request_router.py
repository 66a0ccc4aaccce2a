import threading
from decimal import Decimal

import pytest

from transit_ledger.errors import MalformedInput, TenancyViolation
from transit_ledger.models.requests import RequestEnvelope, RequestKind
from transit_ledger.services.context_formatting import DOCUMENT_GREETING

INVOICE_CSV = b"""Date,Journey/Action,Charge,Mode
2024-01-15,Victoria to Oxford Circus,8.50,tube
2024-01-15,Bus journey route 73,2.30,bus
2024-01-16,Victoria to Brixton,4.40,tube
2024-01-16,,,tube
"""


def _upload(router, **extra):
    envelope = RequestEnvelope.create('alice', 's1', file_bytes=INVOICE_CSV, filename='january.csv', **extra)
    return router.handle(envelope)


def _states(response):
    return [s.value for s in response.states]


@pytest.fixture
def invoice_id(router):
    return _upload(router).invoice.id


def test_upload_only_skips_generation_and_memory(router, fake_llm, fake_opensearch):
    response = _upload(router)

    assert response.kind is RequestKind.INVOICE_UPLOAD
    assert _states(response) == ['received', 'classified', 'invoice_upload', 'responded']
    assert response.invoice.total_amount == Decimal('15.20')
    assert response.diagnostics.skipped_rows == 1
    assert response.to_dict()['diagnostics']['skipped_rows'] == 1
    assert fake_llm.calls == []
    assert fake_opensearch.indices['memory'] == {}


def test_upload_with_dates_cascades_into_calculation(router, fake_llm):
    response = _upload(router, dates=['2024-01-15', '2024-01-17'])

    assert response.cascaded is not None
    assert response.cascaded.kind is RequestKind.COST_CALCULATION
    assert response.cascaded.breakdown.total_amount == Decimal('10.80')
    assert fake_llm.calls == []


def test_cost_calculation(router, invoice_id, fake_llm, fake_opensearch):
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, dates=['2024-01-15', '2024-01-17'])
    response = router.handle(envelope)

    assert _states(response) == ['received', 'classified', 'date_scoped', 'responded']
    assert response.breakdown.total_amount == Decimal('10.80')
    assert [d.isoformat() for d in response.breakdown.unmatched_dates] == ['2024-01-17']
    assert 'unmatched_dates' in [w.type for w in response.warnings]
    assert response.answer is None
    assert fake_llm.calls == []
    assert fake_opensearch.indices['memory'] == {}


def test_cost_calculation_for_unknown_invoice(router):
    envelope = RequestEnvelope.create('alice', 's1', invoice_id='inv_missing', dates=['2024-01-15'])

    with pytest.raises(MalformedInput):
        router.handle(envelope)


def test_invoice_chat_streams_and_remembers(router, invoice_id, fake_llm):
    deltas = []
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, query='How much did the bus journey cost?')
    response = router.handle(envelope, on_delta=deltas.append)

    assert response.answer == 'The answer is here.'
    assert deltas == ['The answer ', 'is here.']
    assert response.memory_stored is True
    assert _states(response) == ['received', 'classified', 'chat', 'memory_updated', 'responded']
    assert {s.kind for s in response.sources} == {'transaction'}
    assert len(fake_llm.calls) == 1

    recent = router.memory.load_recent('s1', 'alice')
    assert recent[-1].assistant_response == 'The answer is here.'
    assert recent[-1].referenced_invoice_id == invoice_id


def test_follow_up_question_sees_previous_turn(router, invoice_id, fake_llm):
    router.handle(RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, query='first question'))
    router.handle(RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, query='second question'))

    messages = fake_llm.calls[-1]['messages']
    assert messages[0]['content'][0]['text'] == 'first question'
    assert messages[1]['role'] == 'assistant'


def test_combined_request_grounds_answer_in_breakdown(router, invoice_id, fake_llm):
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, dates=['2024-01-15'], query='Why so expensive?')
    response = router.handle(envelope)

    assert response.kind is RequestKind.COMBINED_CALCULATION_AND_CHAT
    assert response.breakdown.total_amount == Decimal('10.80')
    assert response.answer == 'The answer is here.'
    prompt = fake_llm.calls[0]['messages'][-1]['content'][0]['text']
    assert 'Total cost for the selected dates: £10.80.' in prompt


def test_generation_failure_degrades_to_mechanical_response(router, invoice_id, fake_llm, llm_failure, fake_opensearch):
    fake_llm.error = llm_failure
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, dates=['2024-01-15'], query='Why so expensive?')

    response = router.handle(envelope)

    assert response.breakdown.total_amount == Decimal('10.80')
    assert response.answer is None
    assert response.sources
    assert 'generation_unavailable' in [w.type for w in response.warnings]
    assert response.memory_stored is False
    assert fake_opensearch.indices['memory'] == {}


def test_cancellation_mid_stream_keeps_breakdown_and_skips_memory(router, invoice_id, fake_opensearch):
    cancel = threading.Event()
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, dates=['2024-01-15'], query='Why so expensive?')

    response = router.handle(envelope, on_delta=lambda _: cancel.set(), cancel_event=cancel)

    assert response.cancelled is True
    assert response.breakdown.total_amount == Decimal('10.80')
    assert response.memory_stored is False
    assert 'memory_updated' not in _states(response)
    assert fake_opensearch.indices['memory'] == {}


def test_memory_write_failure_still_returns_answer(router, invoice_id, fake_opensearch):
    fake_opensearch.fail_on.add(('index', 'memory'))
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, query='How much?')

    response = router.handle(envelope)

    assert response.answer == 'The answer is here.'
    assert response.memory_stored is False
    assert 'memory_not_stored' in [w.type for w in response.warnings]


def test_document_chat_without_context_greets(router, fake_llm):
    response = router.handle(RequestEnvelope.create('alice', 's1', query='Hello there'))

    assert response.kind is RequestKind.GENERAL_DOCUMENT_CHAT
    assert response.answer == DOCUMENT_GREETING
    assert fake_llm.calls == []


def test_document_chat_uses_owner_documents(router, fake_llm):
    router.documents.ingest('alice', b'Refunds are issued within five working days.', 'refunds.txt')

    response = router.handle(RequestEnvelope.create('alice', 's1', query='When are refunds issued?'))

    assert response.answer == 'The answer is here.'
    assert [s.kind for s in response.sources] == ['document']
    assert fake_llm.calls[0]['messages'][-1]['content'][0]['text'].count('five working days') == 1


def test_chat_about_another_owners_invoice_is_rejected(router, invoice_id, fake_llm):
    envelope = RequestEnvelope.create('mallory', 's9', invoice_id=invoice_id, query='What did alice spend?')

    with pytest.raises(TenancyViolation):
        router.handle(envelope)
    assert fake_llm.calls == []


def test_response_to_dict_carries_diagnostics(router, invoice_id):
    envelope = RequestEnvelope.create('alice', 's1', invoice_id=invoice_id, dates=['2024-01-15', '2024-01-20'])
    rendered = router.handle(envelope).to_dict()

    assert rendered['kind'] == 'cost_calculation'
    assert rendered['breakdown']['total_amount'] == '10.80'
    assert rendered['breakdown']['unmatched_dates'] == ['2024-01-20']
    assert rendered['invoice']['id'] == invoice_id
    assert rendered['states'][-1] == 'responded'


def test_upload_during_embedding_outage_is_stored_and_calculated(router, fake_embed, fake_opensearch):
    fake_embed.fail = True

    response = _upload(router, dates=['2024-01-15'])

    assert response.invoice.total_amount == Decimal('15.20')
    assert response.diagnostics.skipped_rows == 1
    assert 'embedding_unavailable' in [w.type for w in response.warnings]
    assert len(fake_opensearch.indices['invoice']) == 1
    assert response.cascaded.breakdown.total_amount == Decimal('10.80')


def test_failed_follow_up_still_returns_the_upload(router, fake_opensearch):
    response = _upload(router, dates=['not-a-date'])

    assert response.invoice is not None
    assert response.diagnostics.skipped_rows == 1
    assert response.cascaded is None
    assert 'cascade_failed' in [w.type for w in response.warnings]
    assert _states(response) == ['received', 'classified', 'invoice_upload', 'responded']
    assert len(fake_opensearch.indices['invoice']) == 1
