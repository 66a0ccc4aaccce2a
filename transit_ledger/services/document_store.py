"""
Document Store: reference documents a user can chat with outside any invoice.
"""

import hashlib
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import List, Optional

from ..errors import CapacityExceeded, MalformedInput, TenancyViolation
from ..models.core import DocumentChunk
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import config
from ..utils.logging_config import get_logger, log_security_event
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError
from ..utils.pdf_text import extract_pdf_text
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

TEXT_FORMATS = ('txt', 'md', 'csv')
SUPPORTED_FORMATS = TEXT_FORMATS + ('pdf',)
MAX_CHUNK_CHARS = 1500

_PARAGRAPH_BREAK = re.compile(r'\n\s*\n')


@dataclass(frozen=True)
class ScoredChunk:
    """A similarity hit from the document collection."""
    chunk: DocumentChunk
    score: float


def chunk_text(text: str, max_chars: int = MAX_CHUNK_CHARS) -> List[str]:
    """Split text into paragraph-aligned chunks of at most ``max_chars``.

    Paragraphs are packed together while they fit; a single paragraph longer
    than the bound is cut on line breaks, then hard-wrapped.
    """
    pieces: List[str] = []
    for paragraph in _PARAGRAPH_BREAK.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_chars:
            pieces.append(paragraph)
            continue
        for line in paragraph.splitlines():
            line = line.strip()
            while len(line) > max_chars:
                pieces.append(line[:max_chars])
                line = line[max_chars:]
            if line:
                pieces.append(line)

    chunks: List[str] = []
    current = ''
    for piece in pieces:
        candidate = f'{current}\n\n{piece}' if current else piece
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


class DocumentStore:
    """Chunks, embeds and indexes uploaded documents per owner."""

    def __init__(self, opensearch: Optional[OpenSearchClient] = None, embed: Optional[BedrockEmbed] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)

        try:
            self.opensearch.create_index_if_not_exists(index_type='document')
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

        logger.info('Initialized DocumentStore')

    def ingest(self, owner_id: str, raw_bytes: bytes, filename: str, declared_format: Optional[str] = None) -> List[DocumentChunk]:
        """
        Index a document for general-document chat.

        Args:
            owner_id: Owner of the document
            raw_bytes: File content
            filename: Original file name
            declared_format: txt, md, csv or pdf (inferred from ``filename`` if None)

        Returns:
            The indexed chunks, in document order

        Raises:
            TenancyViolation: If no owner is given
            CapacityExceeded: If the file is larger than allowed
            MalformedInput: If the format is unsupported or the document has no text
        """
        self._require_owner(owner_id)
        if len(raw_bytes) > config.ledger.max_upload_bytes:
            raise CapacityExceeded(f'Document is {len(raw_bytes)} bytes, maximum is {config.ledger.max_upload_bytes}')

        fmt = (declared_format or PurePath(filename).suffix.lstrip('.')).lower()
        if fmt not in SUPPORTED_FORMATS:
            raise MalformedInput(f'Unsupported document format: {fmt or filename}')

        if fmt == 'pdf':
            text = extract_pdf_text(raw_bytes)
        else:
            try:
                text = raw_bytes.decode('utf-8-sig')
            except UnicodeDecodeError:
                raise MalformedInput(f'{filename} is not UTF-8 text')

        pieces = chunk_text(text)
        if not pieces:
            raise MalformedInput(f'{filename} contains no text')

        document_id = 'doc_' + hashlib.sha256(owner_id.encode('utf-8') + b'\0' + raw_bytes).hexdigest()[:24]
        created_at = utc_now().isoformat()
        chunks = []
        documents = []
        for ordinal, piece in enumerate(pieces):
            chunk = DocumentChunk(id=f'{document_id}_{ordinal}',
                                  document_id=document_id,
                                  owner_id=owner_id,
                                  filename=filename,
                                  ordinal=ordinal,
                                  text=piece)
            chunks.append(chunk)
            documents.append((chunk.id, {
                'id': chunk.id,
                'owner_id': owner_id,
                'document_id': document_id,
                'filename': filename,
                'ordinal': ordinal,
                'text': piece,
                'created_at': created_at,
                'embedding': self.embed.embed_document(piece),
            }))

        self.opensearch.bulk_index(documents, index_type='document')
        logger.info(f'Ingested {filename} as {document_id} ({len(chunks)} chunks) for owner {owner_id}')
        return chunks

    def find_similar(self, owner_id: str, query_text: str, k: Optional[int] = None) -> List[ScoredChunk]:
        """Return this owner's document chunks most similar to ``query_text``."""
        self._require_owner(owner_id)
        k = k or config.ledger.similar_k
        query_vector = self.embed.embed_query(query_text)
        hits = self.opensearch.vector_search(query_vector=query_vector, owner_id=owner_id, top_k=k, index_type='document')

        results = []
        for hit in hits:
            doc = hit['document']
            if doc.get('owner_id') != owner_id:
                log_security_event(logger, f'document chunk {hit["id"]} of another owner dropped for {owner_id}')
                continue
            chunk = DocumentChunk(id=doc['id'],
                                  document_id=doc['document_id'],
                                  owner_id=doc['owner_id'],
                                  filename=doc.get('filename', ''),
                                  ordinal=int(doc.get('ordinal', 0)),
                                  text=doc.get('text', ''))
            results.append(ScoredChunk(chunk=chunk, score=float(hit.get('score') or 0.0)))
        return results

    @staticmethod
    def _require_owner(owner_id: Optional[str]) -> None:
        if not owner_id or not owner_id.strip():
            log_security_event(logger, 'document access without owner')
            raise TenancyViolation('Document access requires an owner')
