"""
Conversational memory: per-session turns stored for recency and similarity recall.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..errors import TenancyViolation, UpstreamUnavailable
from ..models.core import MemoryEntry
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import config
from ..utils.logging_config import get_logger, log_security_event
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_iso_datetime, utc_now

logger = get_logger(__name__)


class MemoryManagementError(UpstreamUnavailable):
    """Custom exception for memory management errors."""
    pass


def _entry_to_document(entry: MemoryEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'owner_id': entry.owner_id,
        'session_id': entry.session_id,
        'user_query': entry.user_query,
        'assistant_response': entry.assistant_response,
        'referenced_invoice_id': entry.referenced_invoice_id,
        'referenced_transaction_ids': list(entry.referenced_transaction_ids),
        'timestamp': entry.timestamp.isoformat(),
    }


def _entry_from_document(doc: Dict[str, Any]) -> MemoryEntry:
    return MemoryEntry(id=doc['id'],
                       session_id=doc['session_id'],
                       owner_id=doc['owner_id'],
                       user_query=doc.get('user_query', ''),
                       assistant_response=doc.get('assistant_response', ''),
                       timestamp=parse_iso_datetime(doc['timestamp']),
                       referenced_invoice_id=doc.get('referenced_invoice_id'),
                       referenced_transaction_ids=tuple(doc.get('referenced_transaction_ids') or ()))


class ConversationMemoryService:
    """Append-only store of conversational turns, partitioned by owner and session."""

    def __init__(self, opensearch: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        """Initialize the memory service."""
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)

        try:
            self.opensearch.create_index_if_not_exists(index_type='memory')
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

        logger.info('Initialized ConversationMemoryService')

    @staticmethod
    def build_entry(session_id: str,
                    owner_id: str,
                    user_query: str,
                    assistant_response: str,
                    referenced_invoice_id: Optional[str] = None,
                    referenced_transaction_ids: Sequence[str] = (),
                    timestamp: Optional[datetime] = None) -> MemoryEntry:
        """Create a new entry with a fresh id."""
        return MemoryEntry(id=f'mem_{uuid.uuid4().hex}',
                           session_id=session_id,
                           owner_id=owner_id,
                           user_query=user_query,
                           assistant_response=assistant_response,
                           timestamp=timestamp or utc_now(),
                           referenced_invoice_id=referenced_invoice_id,
                           referenced_transaction_ids=tuple(referenced_transaction_ids))

    def append(self, entry: MemoryEntry) -> None:
        """Store one turn. It is visible to ``load_recent`` once this returns.

        Args:
            entry: MemoryEntry to store

        Raises:
            TenancyViolation: If the entry has no owner
            MemoryManagementError: If embedding or indexing fails
        """
        self._require_owner(entry.owner_id)

        document = _entry_to_document(entry)
        try:
            document['embedding'] = self.embed.embed_document(f'{entry.user_query}\n{entry.assistant_response}')
            self.opensearch.index_document(document, index_type='memory', doc_id=entry.id)
        except UpstreamUnavailable as e:
            logger.error(f'Failed to append memory {entry.id}: {e}')
            raise MemoryManagementError(f'Memory append failed: {e}')

        logger.debug(f'Appended memory {entry.id} to session {entry.session_id}')

    def load_recent(self, session_id: str, owner_id: str, window_size: Optional[int] = None) -> List[MemoryEntry]:
        """Return the newest ``window_size`` turns of a session, oldest first.

        Raises:
            TenancyViolation: If no owner is given
        """
        self._require_owner(owner_id)
        window_size = config.memory.recent_window if window_size is None else window_size
        if window_size <= 0:
            return []

        hits = self.opensearch.term_search(owner_id=owner_id,
                                           index_type='memory',
                                           filters={'session_id': session_id},
                                           size=window_size,
                                           sort=[{'timestamp': {'order': 'desc'}}])

        entries = self._owned_entries(hits, owner_id)
        entries.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        entries = entries[:window_size]
        entries.reverse()
        return entries

    def load_similar(self, owner_id: str, query_text: str, k: Optional[int] = None) -> List[MemoryEntry]:
        """Return past turns of this owner similar to ``query_text``, best first."""
        self._require_owner(owner_id)
        if not query_text or not query_text.strip():
            return []

        k = k or config.memory.similar_k
        query_vector = self.embed.embed_query(query_text)
        hits = self.opensearch.vector_search(query_vector=query_vector, owner_id=owner_id, top_k=k, index_type='memory')
        return self._owned_entries(hits, owner_id)[:k]

    def cleanup_expired(self, owner_id: Optional[str] = None, retention_days: Optional[int] = None) -> int:
        """Remove turns older than the retention period, optionally for one owner.

        Returns:
            Number of entries deleted

        Raises:
            MemoryManagementError: If cleanup fails
        """
        retention_days = config.memory.retention_days if retention_days is None else retention_days
        cutoff = utc_now() - timedelta(days=retention_days)
        try:
            deleted_count = self.opensearch.delete_by_query('memory', owner_id=owner_id, before=('timestamp', cutoff.isoformat()))
        except OpenSearchError as e:
            logger.error(f'OpenSearch error during memory cleanup: {e}')
            raise MemoryManagementError(f'Memory cleanup failed: {e}')

        if deleted_count > 0:
            logger.info(f'Cleaned up {deleted_count} expired memories')
        else:
            logger.debug('No expired memories found for cleanup')
        return deleted_count

    def _owned_entries(self, hits: List[Dict[str, Any]], owner_id: str) -> List[MemoryEntry]:
        entries = []
        for hit in hits:
            doc = hit['document']
            if doc.get('owner_id') != owner_id:
                log_security_event(logger, f'memory {hit["id"]} of another owner dropped for {owner_id}')
                continue
            entries.append(_entry_from_document(doc))
        return entries

    @staticmethod
    def _require_owner(owner_id: Optional[str]) -> None:
        if not owner_id or not owner_id.strip():
            log_security_event(logger, 'memory access without owner')
            raise TenancyViolation('Memory access requires an owner')
