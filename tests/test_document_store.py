import pytest

from transit_ledger.errors import MalformedInput, TenancyViolation
from transit_ledger.services.document_store import DocumentStore, chunk_text

from conftest import FakeOpenSearchClient

POLICY = b"""Refund policy

Refunds for incomplete journeys are issued within five working days.

Daily caps

Pay as you go fares are capped each day once you reach the daily limit for the zones you travel in.
"""


def test_chunk_text_packs_paragraphs_within_bound():
    chunks = chunk_text('a' * 10 + '\n\n' + 'b' * 10 + '\n\n' + 'c' * 30, max_chars=25)

    assert chunks == ['a' * 10 + '\n\n' + 'b' * 10, 'c' * 25, 'c' * 5]
    assert all(len(c) <= 25 for c in chunks)


def test_chunk_text_ignores_blank_input():
    assert chunk_text('\n\n   \n') == []


def test_ingest_and_find_similar(document_store):
    chunks = document_store.ingest('alice', POLICY, 'policy.md')

    assert chunks[0].document_id.startswith('doc_')
    assert [c.ordinal for c in chunks] == list(range(len(chunks)))
    hits = document_store.find_similar('alice', 'how are daily caps applied to fares', k=1)
    assert 'capped each day' in hits[0].chunk.text


def test_ingest_rejects_unsupported_format(document_store):
    with pytest.raises(MalformedInput):
        document_store.ingest('alice', b'PK...', 'notes.docx')


def test_ingest_rejects_empty_document(document_store):
    with pytest.raises(MalformedInput):
        document_store.ingest('alice', b'   \n\n', 'empty.txt')


def test_ingest_requires_owner(document_store):
    with pytest.raises(TenancyViolation):
        document_store.ingest('', POLICY, 'policy.md')


def test_find_similar_drops_other_owners(fake_embed):
    store = DocumentStore(FakeOpenSearchClient(leaky=True), fake_embed)
    store.ingest('mallory', b'daily caps are secret', 'secret.txt')
    store.ingest('alice', POLICY, 'policy.md')

    hits = store.find_similar('alice', 'daily caps', k=10)

    assert hits
    assert {hit.chunk.owner_id for hit in hits} == {'alice'}
