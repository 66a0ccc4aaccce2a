"""
Ledger Store: owner-partitioned persistence of invoices and their transactions.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import TenancyViolation
from ..models.core import Invoice, JourneyType, ReconciliationWarning, SourceFormat, Transaction, transaction_order
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.logging_config import get_logger, log_security_event
from ..utils.money import approx_equal
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_iso_datetime

logger = get_logger(__name__)

class LedgerStoreError(OpenSearchError):
    """Raised when an invoice could not be stored."""
    pass


@dataclass(frozen=True)
class ScoredTransaction:
    """A similarity hit from the ledger."""
    transaction: Transaction
    score: float


def transaction_to_document(txn: Transaction) -> Dict[str, Any]:
    low, high = txn.zone_range if txn.zone_range else (None, None)
    return {
        'id': txn.id,
        'owner_id': txn.owner_id,
        'invoice_id': txn.invoice_id,
        'date': txn.date.isoformat(),
        'amount': str(txn.amount),  # exact, rounding happens at output
        'journey_type': txn.journey_type.value,
        'zone_low': low,
        'zone_high': high,
        'peak': txn.peak,
        'timestamp': txn.timestamp.isoformat() if txn.timestamp else None,
        'description': txn.description,
        'text': txn.describe(),
    }


def transaction_from_document(doc: Dict[str, Any]) -> Transaction:
    zone_range = None
    if doc.get('zone_low') is not None and doc.get('zone_high') is not None:
        zone_range = (int(doc['zone_low']), int(doc['zone_high']))
    return Transaction(id=doc['id'],
                       invoice_id=doc['invoice_id'],
                       owner_id=doc['owner_id'],
                       date=date.fromisoformat(doc['date']),
                       amount=Decimal(doc['amount']),
                       journey_type=JourneyType(doc.get('journey_type', JourneyType.OTHER.value)),
                       zone_range=zone_range,
                       peak=doc.get('peak'),
                       timestamp=parse_iso_datetime(doc.get('timestamp')),
                       description=doc.get('description', ''))


def invoice_to_document(invoice: Invoice, transaction_ids: Sequence[str]) -> Dict[str, Any]:
    return {
        'id': invoice.id,
        'owner_id': invoice.owner_id,
        'period_start': invoice.period_start.isoformat() if invoice.period_start else None,
        'period_end': invoice.period_end.isoformat() if invoice.period_end else None,
        'total_amount': str(invoice.total_amount),
        'declared_total': str(invoice.declared_total) if invoice.declared_total is not None else None,
        'source_format': invoice.source_format.value,
        'timezone': invoice.timezone,
        'transaction_count': invoice.transaction_count,
        'transaction_ids': list(transaction_ids),
        'filename': invoice.filename,
        'uploaded_at': invoice.uploaded_at.isoformat(),
    }


def invoice_from_document(doc: Dict[str, Any]) -> Invoice:
    declared = Decimal(doc['declared_total']) if doc.get('declared_total') is not None else None
    total = Decimal(doc['total_amount'])
    invoice = Invoice(id=doc['id'],
                      owner_id=doc['owner_id'],
                      period_start=date.fromisoformat(doc['period_start']) if doc.get('period_start') else None,
                      period_end=date.fromisoformat(doc['period_end']) if doc.get('period_end') else None,
                      total_amount=total,
                      source_format=SourceFormat(doc['source_format']),
                      uploaded_at=parse_iso_datetime(doc['uploaded_at']),
                      timezone=doc.get('timezone', 'UTC'),
                      transaction_count=int(doc.get('transaction_count', 0)),
                      declared_total=declared,
                      filename=doc.get('filename'))
    # Warnings are derived, so they are rebuilt rather than stored
    if declared is not None and not approx_equal(declared, total, config.ledger.reconciliation_tolerance):
        invoice.warnings.append(ReconciliationWarning(declared_total=declared, computed_total=total))
    return invoice


class LedgerStore:
    """Stores invoices and transactions in OpenSearch, scoped by owner.

    ``store`` writes the transactions first and the invoice summary last. The
    summary is the commit marker: readers ignore transactions whose invoice
    has no summary, and a failed write removes what it had already indexed.
    """

    def __init__(self, opensearch: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)

        try:
            self.opensearch.ensure_indices(('invoice', 'transaction'))
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

        logger.info('Initialized LedgerStore')

    def store(self, invoice: Invoice, transactions: Sequence[Transaction]) -> bool:
        """
        Persist an invoice and its transactions atomically.

        Args:
            invoice: Parsed invoice
            transactions: Its transactions

        Returns:
            False if the embedding service was unavailable and the transactions
            were stored without vectors, True otherwise

        Raises:
            TenancyViolation: If a transaction does not belong to the invoice's owner
            LedgerStoreError: If indexing fails; nothing stays visible
        """
        self._require_owner(invoice.owner_id)
        for txn in transactions:
            if txn.owner_id != invoice.owner_id or txn.invoice_id != invoice.id:
                log_security_event(logger, f'transaction {txn.id} does not belong to invoice {invoice.id}')
                raise TenancyViolation('Transaction does not belong to the invoice being stored', owner_id=invoice.owner_id)

        existing = self.opensearch.get_by_id(invoice.id, 'invoice')
        if existing is not None:
            if existing.get('owner_id') != invoice.owner_id:
                log_security_event(logger, f'owner {invoice.owner_id} tried to overwrite invoice {invoice.id}')
                raise TenancyViolation('Invoice belongs to another owner', owner_id=invoice.owner_id)
            logger.info(f'Invoice {invoice.id} already stored, skipping write')
            return True

        documents = [(txn.id, transaction_to_document(txn)) for txn in transactions]
        embedded = self._embed_documents(documents)

        try:
            self.opensearch.bulk_index(documents, index_type='transaction')
            self.opensearch.index_document(invoice_to_document(invoice, [t.id for t in transactions]),
                                           index_type='invoice',
                                           doc_id=invoice.id)
        except OpenSearchError as e:
            logger.error(f'Storing invoice {invoice.id} failed, rolling back: {e}')
            self._rollback(invoice)
            raise LedgerStoreError(f'Failed to store invoice {invoice.id}: {e}')

        logger.info(f'Stored invoice {invoice.id} with {len(transactions)} transactions for owner {invoice.owner_id}')
        return embedded

    def get_invoice(self, invoice_id: str, owner_id: str) -> Optional[Invoice]:
        """
        Fetch an invoice summary.

        Returns:
            The invoice, or None if it does not exist

        Raises:
            TenancyViolation: If the invoice belongs to another owner
        """
        doc = self._committed_invoice(invoice_id, owner_id)
        return invoice_from_document(doc) if doc is not None else None

    def get_by_invoice(self, invoice_id: str, owner_id: str) -> List[Transaction]:
        """
        Fetch all transactions of an invoice, ordered by date then timestamp.

        Returns:
            Transactions, or an empty list if the invoice is unknown

        Raises:
            TenancyViolation: If the invoice belongs to another owner
        """
        doc = self._committed_invoice(invoice_id, owner_id)
        if doc is None:
            return []

        committed_ids = set(doc.get('transaction_ids') or [])
        hits = self.opensearch.scan_search(owner_id=owner_id, index_type='transaction', filters={'invoice_id': invoice_id})

        transactions = []
        for hit in hits:
            txn = transaction_from_document(hit['document'])
            if txn.owner_id != owner_id:
                log_security_event(logger, f'transaction {txn.id} of another owner returned for {owner_id}')
                continue
            if committed_ids and txn.id not in committed_ids:
                continue
            transactions.append(txn)

        transactions.sort(key=transaction_order)
        logger.debug(f'Loaded {len(transactions)} transactions for invoice {invoice_id}')
        return transactions

    def find_similar(self, owner_id: str, query_text: str, invoice_id: Optional[str] = None, k: Optional[int] = None) -> List[ScoredTransaction]:
        """
        Semantic search over an owner's transactions.

        Args:
            owner_id: Owner to search within
            query_text: Free-text question
            invoice_id: Restrict to one invoice
            k: Number of hits (config default if None)

        Returns:
            Scored transactions, best first, all belonging to ``owner_id``
        """
        self._require_owner(owner_id)
        if invoice_id is not None:
            # Raises on a foreign invoice before any similarity search runs
            if self._committed_invoice(invoice_id, owner_id) is None:
                return []

        k = k or config.ledger.similar_k
        query_vector = self.embed.embed_query(query_text)
        hits = self.opensearch.vector_search(query_vector=query_vector,
                                             owner_id=owner_id,
                                             top_k=k,
                                             index_type='transaction',
                                             filters={'invoice_id': invoice_id} if invoice_id else None)

        committed: Dict[str, bool] = {}
        results = []
        for hit in hits:
            doc = hit['document']
            if doc.get('owner_id') != owner_id:
                log_security_event(logger, f'similarity hit {hit["id"]} of another owner dropped for {owner_id}')
                continue
            if invoice_id is not None and doc.get('invoice_id') != invoice_id:
                continue
            hit_invoice = doc.get('invoice_id')
            if hit_invoice not in committed:
                committed[hit_invoice] = self.opensearch.get_by_id(hit_invoice, 'invoice') is not None
            if not committed[hit_invoice]:
                continue
            results.append(ScoredTransaction(transaction=transaction_from_document(doc), score=float(hit.get('score') or 0.0)))

        logger.debug(f'Found {len(results)} similar transactions for owner {owner_id}')
        return results

    def _committed_invoice(self, invoice_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
        self._require_owner(owner_id)
        doc = self.opensearch.get_by_id(invoice_id, 'invoice')
        if doc is None:
            return None
        if doc.get('owner_id') != owner_id:
            log_security_event(logger, f'owner {owner_id} requested invoice {invoice_id} of another owner')
            raise TenancyViolation('Invoice belongs to another owner', owner_id=owner_id)
        return doc

    def _embed_documents(self, documents: List[Tuple[str, Dict[str, Any]]]) -> bool:
        """Attach vectors to every document, or to none of them if embedding fails."""
        try:
            vectors = [self.embed.embed_document(document['text']) for _, document in documents]
        except BedrockEmbedError as e:
            logger.warning(f'Embedding unavailable, storing transactions without vectors: {e}')
            return False
        for (_, document), vector in zip(documents, vectors):
            document['embedding'] = vector
        return True

    def _rollback(self, invoice: Invoice) -> None:
        try:
            removed = self.opensearch.delete_by_query('transaction', owner_id=invoice.owner_id, filters={'invoice_id': invoice.id})
            logger.info(f'Rolled back {removed} transactions of invoice {invoice.id}')
        except OpenSearchError as e:
            # Orphans stay invisible because the invoice summary was never written
            logger.error(f'Rollback of invoice {invoice.id} failed: {e}')

    @staticmethod
    def _require_owner(owner_id: Optional[str]) -> None:
        if not owner_id or not owner_id.strip():
            log_security_event(logger, 'ledger access without owner')
            raise TenancyViolation('Ledger access requires an owner')
