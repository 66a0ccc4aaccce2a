"""
Shared fixtures: in-memory stand-ins for OpenSearch, Bedrock embeddings and Bedrock generation.
"""

import copy
import math
import re
import zlib
from datetime import date
from decimal import Decimal

import pytest

from transit_ledger.errors import GenerationCancelled
from transit_ledger.models.core import JourneyType, Transaction
from transit_ledger.services.cost_calculator import CostCalculator
from transit_ledger.services.date_selector import DateSelector
from transit_ledger.services.document_store import DocumentStore
from transit_ledger.services.invoice_parser import InvoiceParser
from transit_ledger.services.ledger_store import LedgerStore
from transit_ledger.services.memory_management import ConversationMemoryService
from transit_ledger.services.request_router import RequestRouter
from transit_ledger.utils.bedrock_embed import BedrockEmbedError
from transit_ledger.utils.bedrock_llm import BedrockLLMError
from transit_ledger.utils.opensearch_client import OpenSearchError

DIMENSION = 256
# OpenSearch default index.max_result_window
MAX_RESULT_WINDOW = 10000


class FakeOpenSearchClient:
    """Dictionary-backed replacement for ``OpenSearchClient``.

    ``leaky=True`` ignores the owner filter in searches, standing in for a
    misconfigured index so the services' own post-filtering can be tested.
    """

    def __init__(self, leaky=False):
        self.leaky = leaky
        self.indices = {'document': {}, 'invoice': {}, 'transaction': {}, 'memory': {}}
        self.fail_on = set()  # (operation, index_type) pairs that raise
        self.calls = []

    def index_name(self, index_type):
        return f'test_{index_type}'

    def _maybe_fail(self, operation, index_type):
        self.calls.append((operation, index_type))
        if (operation, index_type) in self.fail_on:
            raise OpenSearchError(f'{operation} on {index_type} failed')

    def create_index_if_not_exists(self, index_type):
        return 'exists'

    def ensure_indices(self, index_types):
        for index_type in index_types:
            self.create_index_if_not_exists(index_type)

    def index_document(self, document, index_type, doc_id=None):
        self._maybe_fail('index', index_type)
        doc_id = doc_id or document.get('id')
        self.indices[index_type][doc_id] = copy.deepcopy(document)
        return True

    def bulk_index(self, documents, index_type):
        self._maybe_fail('bulk', index_type)
        for doc_id, document in documents:
            self.indices[index_type][doc_id] = copy.deepcopy(document)
        return len(documents)

    def get_by_id(self, doc_id, index_type):
        self._maybe_fail('get', index_type)
        doc = self.indices[index_type].get(doc_id)
        return _without_embedding(doc) if doc is not None else None

    def vector_search(self, query_vector, owner_id, top_k=10, index_type='transaction', filters=None):
        self._maybe_fail('search', index_type)
        hits = []
        for doc_id, doc in self._matching(index_type, owner_id, filters):
            hits.append({'id': doc_id, 'score': _cosine(query_vector, doc.get('embedding', [])), 'document': _without_embedding(doc)})
        hits.sort(key=lambda h: (-h['score'], h['id']))
        return hits[:top_k]

    def term_search(self, owner_id, index_type, filters=None, size=100, sort=None):
        self._maybe_fail('search', index_type)
        size = min(size, MAX_RESULT_WINDOW)
        docs = [(doc_id, doc) for doc_id, doc in self._matching(index_type, owner_id, filters)]
        for clause in reversed(sort or []):
            (field, options), = clause.items()
            docs.sort(key=lambda item: item[1].get(field) or '', reverse=options.get('order') == 'desc')
        return [{'id': doc_id, 'score': None, 'document': _without_embedding(doc)} for doc_id, doc in docs[:size]]

    def scan_search(self, owner_id, index_type, filters=None, page_size=1000):
        self._maybe_fail('search', index_type)
        return [{'id': doc_id, 'score': None, 'document': _without_embedding(doc)} for doc_id, doc in self._matching(index_type, owner_id, filters)]

    def delete_by_query(self, index_type, owner_id=None, filters=None, before=None):
        self._maybe_fail('delete', index_type)
        doomed = []
        for doc_id, doc in self.indices[index_type].items():
            if owner_id is not None and doc.get('owner_id') != owner_id:
                continue
            if any(doc.get(k) != v for k, v in (filters or {}).items()):
                continue
            if before is not None:
                field, cutoff = before
                if not doc.get(field) or doc[field] >= cutoff:
                    continue
            doomed.append(doc_id)
        for doc_id in doomed:
            del self.indices[index_type][doc_id]
        return len(doomed)

    def health_check(self):
        return True

    def _matching(self, index_type, owner_id, filters):
        for doc_id, doc in self.indices[index_type].items():
            if not self.leaky and doc.get('owner_id') != owner_id:
                continue
            if any(value is not None and doc.get(field) != value for field, value in (filters or {}).items()):
                continue
            yield doc_id, doc


def _without_embedding(doc):
    return {k: copy.deepcopy(v) for k, v in doc.items() if k != 'embedding'}


def _cosine(a, b):
    if not a or not b:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeEmbed:
    """Deterministic bag-of-words vectors."""

    def __init__(self, dimension=DIMENSION):
        self.dimension = dimension
        self.calls = 0
        self.fail = False

    def _vector(self, text):
        self.calls += 1
        if self.fail:
            raise BedrockEmbedError('embedding unavailable')
        vector = [0.0] * self.dimension
        for token in re.findall(r'[a-z0-9]+', text.lower()):
            vector[zlib.crc32(token.encode('utf-8')) % self.dimension] += 1.0
        return vector

    def embed_document(self, text):
        return self._vector(text)

    def embed_query(self, text):
        return self._vector(text)


class FakeLLM:
    """Streams canned chunks; can fail or honour cancellation like ``BedrockLLM``."""

    def __init__(self, chunks=('The answer ', 'is here.')):
        self.chunks = list(chunks)
        self.error = None
        self.calls = []

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None, on_delta=None,
                          cancel_event=None):
        self.calls.append({'messages': messages, 'system_prompt': system_prompt})
        if self.error is not None:
            raise self.error
        text = ''
        for chunk in self.chunks:
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled('Generation cancelled by caller')
            text += chunk
            if on_delta is not None:
                on_delta(chunk)
        return text, {'inputTokens': 10, 'outputTokens': len(self.chunks)}


@pytest.fixture
def fake_opensearch():
    return FakeOpenSearchClient()


@pytest.fixture
def fake_embed():
    return FakeEmbed()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def parser():
    return InvoiceParser(default_timezone='UTC', dayfirst=True, tolerance=Decimal('0.005'), max_upload_bytes=1024 * 1024)


@pytest.fixture
def ledger(fake_opensearch, fake_embed):
    return LedgerStore(fake_opensearch, fake_embed)


@pytest.fixture
def memory_service(fake_opensearch, fake_embed):
    return ConversationMemoryService(fake_opensearch, fake_embed)


@pytest.fixture
def document_store(fake_opensearch, fake_embed):
    return DocumentStore(fake_opensearch, fake_embed)


@pytest.fixture
def router(parser, ledger, memory_service, document_store, fake_llm):
    return RequestRouter(parser=parser,
                         ledger=ledger,
                         selector=DateSelector(max_dates=365),
                         calculator=CostCalculator(),
                         memory=memory_service,
                         documents=document_store,
                         llm=fake_llm)


@pytest.fixture
def make_transaction():
    """Factory for transactions with sensible defaults."""

    def _make(day, amount, txn_id=None, owner_id='alice', invoice_id='inv_test', journey_type=JourneyType.TUBE, zone_range=(1, 2),
              timestamp=None, peak=None):
        if isinstance(day, str):
            day = date.fromisoformat(day)
        return Transaction(id=txn_id or f'txn_{day.isoformat()}_{amount}',
                           invoice_id=invoice_id,
                           owner_id=owner_id,
                           date=day,
                           amount=Decimal(amount),
                           journey_type=journey_type,
                           zone_range=zone_range,
                           peak=peak,
                           timestamp=timestamp)

    return _make


@pytest.fixture
def llm_failure():
    return BedrockLLMError('Bedrock LLM failed after 2 attempts: throttled')
