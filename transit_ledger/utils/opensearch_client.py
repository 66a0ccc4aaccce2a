"""
OpenSearch client wrapper for owner-scoped storage and vector similarity search.
"""

import random
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..errors import TenancyViolation, UpstreamUnavailable
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

INDEX_TYPES = ('document', 'invoice', 'transaction', 'memory')

_KEYWORD = {'type': 'keyword'}
_TEXT = {'type': 'text'}
_DATE = {'type': 'date'}

# Per-collection fields; every record carries owner_id for filtering without re-embedding
INDEX_PROPERTIES = {
    'document': {
        'id': _KEYWORD,
        'owner_id': _KEYWORD,
        'document_id': _KEYWORD,
        'filename': _KEYWORD,
        'ordinal': {'type': 'integer'},
        'text': _TEXT,
        'created_at': _DATE,
    },
    'invoice': {
        'id': _KEYWORD,
        'owner_id': _KEYWORD,
        'period_start': _DATE,
        'period_end': _DATE,
        'total_amount': _KEYWORD,
        'declared_total': _KEYWORD,
        'source_format': _KEYWORD,
        'timezone': _KEYWORD,
        'transaction_count': {'type': 'integer'},
        'transaction_ids': _KEYWORD,
        'filename': _KEYWORD,
        'uploaded_at': _DATE,
    },
    'transaction': {
        'id': _KEYWORD,
        'owner_id': _KEYWORD,
        'invoice_id': _KEYWORD,
        'date': _DATE,
        'amount': _KEYWORD,
        'journey_type': _KEYWORD,
        'zone_low': {'type': 'integer'},
        'zone_high': {'type': 'integer'},
        'peak': {'type': 'boolean'},
        'timestamp': _DATE,
        'description': _TEXT,
        'text': _TEXT,
    },
    'memory': {
        'id': _KEYWORD,
        'owner_id': _KEYWORD,
        'session_id': _KEYWORD,
        'user_query': _TEXT,
        'assistant_response': _TEXT,
        'referenced_invoice_id': _KEYWORD,
        'referenced_transaction_ids': _KEYWORD,
        'timestamp': _DATE,
    },
}

# Indices with a knn_vector field
VECTOR_INDEX_TYPES = ('document', 'transaction', 'memory')


class OpenSearchError(UpstreamUnavailable):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication, owner filters and read retries."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 timeout=config.timeout,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        if index_type not in INDEX_TYPES:
            raise ValueError(f'Unknown index type: {index_type}')
        return f'{self.config.index_name}_{index_type}'

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: One of document, invoice, transaction, memory

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            properties = dict(INDEX_PROPERTIES[index_type])
            index_body: Dict[str, Any] = {'mappings': {'properties': properties}}
            if index_type in VECTOR_INDEX_TYPES:
                properties['embedding'] = {
                    'type': 'knn_vector',
                    'dimension': self.config.dimension,
                    'method': {
                        'name': 'hnsw',
                        'space_type': 'cosinesimil',
                        'engine': 'nmslib'
                    }
                }
                index_body['settings'] = {'index': {'knn': True, 'knn.algo_param.ef_search': 100}}

            response = self.client.indices.create(index=index_name, body=index_body)
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                if self.config.index_sync_wait > 0:
                    logger.info(f'Waiting {self.config.index_sync_wait}s for index {index_name} sync-up...')
                    time.sleep(self.config.index_sync_wait)
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def ensure_indices(self, index_types: Iterable[str]) -> None:
        for index_type in index_types:
            self.create_index_if_not_exists(index_type)

    def index_document(self, document: Dict[str, Any], index_type: str, doc_id: Optional[str] = None) -> bool:
        """
        Index one document, visible to searches once this returns.

        Returns:
            True if indexing was successful, False otherwise
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.index(index=index_name, body=document, id=doc_id, refresh=self.config.refresh)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def bulk_index(self, documents: List[Tuple[str, Dict[str, Any]]], index_type: str) -> int:
        """
        Index many (doc_id, document) pairs in one request.

        Returns:
            Number of documents indexed

        Raises:
            OpenSearchError: If any document failed
        """
        if not documents:
            return 0
        index_name = self.index_name(index_type)
        actions = [{'_index': index_name, '_id': doc_id, '_source': doc} for doc_id, doc in documents]

        try:
            success, errors = helpers.bulk(self.client, actions, refresh=self.config.refresh)
        except OpenSearchException as e:
            logger.error(f'Bulk indexing into {index_name} failed: {e}')
            raise OpenSearchError(f'Bulk indexing failed: {e}')
        if errors:
            raise OpenSearchError(f'Bulk indexing reported {len(errors)} errors')

        logger.debug(f'Bulk indexed {success} documents into {index_name}')
        return success

    def get_by_id(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        """Fetch a document's source by id; None if it does not exist."""
        index_name = self.index_name(index_type)

        def _get():
            try:
                return self.client.get(index=index_name, id=doc_id)
            except NotFoundError:
                return None

        response = self._with_retry(f'get {doc_id}', _get)
        if not response or not response.get('found', True):
            return None
        return response.get('_source')

    def vector_search(self,
                      query_vector: List[float],
                      owner_id: str,
                      top_k: int = 10,
                      index_type: str = 'transaction',
                      filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Perform vector similarity search restricted to one owner.

        Args:
            query_vector: Query vector for similarity search
            owner_id: Owner to filter results
            top_k: Number of results to return
            index_type: Collection to search
            filters: Extra exact-match filters, e.g. {'invoice_id': ...}

        Returns:
            List of {'id', 'score', 'document'} hits, best first
        """
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': top_k
                            }
                        }
                    }],
                    'filter': self._term_filters(owner_id, filters)
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        results = self._search(index_type, search_body)
        logger.debug(f'Vector search on {index_type} returned {len(results)} results for owner {owner_id}')
        return results

    def term_search(self,
                    owner_id: str,
                    index_type: str,
                    filters: Optional[Dict[str, Any]] = None,
                    size: int = 100,
                    sort: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """Exact-match search restricted to one owner."""
        search_body: Dict[str, Any] = {
            'size': size,
            'query': {
                'bool': {
                    'filter': self._term_filters(owner_id, filters)
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }
        if sort:
            search_body['sort'] = sort

        results = self._search(index_type, search_body)
        logger.debug(f'Term search on {index_type} returned {len(results)} results for owner {owner_id}')
        return results

    def scan_search(self, owner_id: str, index_type: str, filters: Optional[Dict[str, Any]] = None, page_size: int = 1000) -> List[Dict[str, Any]]:
        """
        Exact-match search restricted to one owner, returning every hit.

        Pages through the results with the scroll API, so the result is not
        bounded by the single-page hit limit.
        """
        index_name = self.index_name(index_type)
        query = {'query': {'bool': {'filter': self._term_filters(owner_id, filters)}}, '_source': {'excludes': ['embedding']}}

        hits = self._with_retry(f'scan {index_name}',
                                lambda: list(helpers.scan(self.client, query=query, index=index_name, size=page_size)))
        logger.debug(f'Scan on {index_type} returned {len(hits)} results for owner {owner_id}')
        return [{'id': hit['_id'], 'score': hit.get('_score'), 'document': hit['_source']} for hit in hits]

    def delete_by_query(self,
                        index_type: str,
                        owner_id: Optional[str] = None,
                        filters: Optional[Dict[str, Any]] = None,
                        before: Optional[Tuple[str, str]] = None) -> int:
        """
        Delete matching documents.

        Args:
            index_type: Collection to delete from
            owner_id: Restrict to one owner (all owners if None)
            filters: Extra exact-match filters
            before: (field, iso timestamp) deleting documents older than it

        Returns:
            Number of documents deleted
        """
        clauses = [{'term': {field: value}} for field, value in (filters or {}).items()]
        if owner_id is not None:
            clauses.append({'term': {'owner_id': owner_id}})
        if before is not None:
            field, cutoff = before
            clauses.append({'range': {field: {'lt': cutoff}}})
        if not clauses:
            raise ValueError('Refusing to delete without any filter')

        index_name = self.index_name(index_type)
        try:
            response = self.client.delete_by_query(index=index_name,
                                                   body={'query': {'bool': {'filter': clauses}}},
                                                   refresh=True)
            deleted = int(response.get('deleted', 0))
            logger.debug(f'Deleted {deleted} documents from {index_name}')
            return deleted
        except OpenSearchException as e:
            logger.error(f'Error deleting from {index_name}: {e}')
            raise OpenSearchError(f'Failed to delete documents: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('invoice'))
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

    def _term_filters(self, owner_id: str, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not owner_id or not owner_id.strip():
            raise TenancyViolation('Search without owner scope')
        clauses = [{'term': {'owner_id': owner_id}}]
        for field, value in (filters or {}).items():
            if value is not None:
                clauses.append({'term': {field: value}})
        return clauses

    def _search(self, index_type: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        index_name = self.index_name(index_type)
        response = self._with_retry(f'search {index_name}', lambda: self.client.search(index=index_name, body=body))
        return [{'id': hit['_id'], 'score': hit.get('_score'), 'document': hit['_source']} for hit in response['hits']['hits']]

    def _with_retry(self, operation: str, call):
        """Run an idempotent read, retrying with exponential backoff."""
        for attempt in range(self.config.retry_attempts):
            try:
                return call()
            except OpenSearchException as e:
                logger.warning(f'OpenSearch {operation} attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_delay)
                    time.sleep(delay)
                else:
                    raise OpenSearchError(f'OpenSearch {operation} failed after {self.config.retry_attempts} attempts: {e}')
        raise OpenSearchError(f'OpenSearch {operation} failed after {self.config.retry_attempts} attempts')
