"""
Request Router: runs a classified request through the agent pipeline.
"""

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import CapacityExceeded, GenerationCancelled, MalformedInput, UpstreamUnavailable
from ..models.core import (CostBreakdown, Invoice, MemoryEntry, ParseDiagnostics, SelectedDateSet, SourceReference,
                           Transaction)
from ..models.requests import RequestEnvelope, RequestKind
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from .context_formatting import (DOCUMENT_GREETING, DOCUMENT_SYSTEM_PROMPT, INVOICE_GREETING, INVOICE_SYSTEM_PROMPT,
                                 build_context, build_messages)
from .cost_calculator import CostCalculator, default_cap_policy
from .date_selector import DateSelector
from .document_store import DocumentStore, ScoredChunk
from .invoice_parser import InvoiceParser
from .ledger_store import LedgerStore, ScoredTransaction
from .memory_management import ConversationMemoryService

logger = get_logger(__name__)

DeltaCallback = Callable[[str], None]


class PipelineState(str, Enum):
    """Stages a request passes through, in order."""
    RECEIVED = 'received'
    CLASSIFIED = 'classified'
    INVOICE_UPLOAD = 'invoice_upload'
    DATE_SCOPED = 'date_scoped'
    CHAT = 'chat'
    COMBINED = 'combined'
    MEMORY_UPDATED = 'memory_updated'
    RESPONDED = 'responded'


_PATH_STATES = {
    RequestKind.INVOICE_UPLOAD: PipelineState.INVOICE_UPLOAD,
    RequestKind.COST_CALCULATION: PipelineState.DATE_SCOPED,
    RequestKind.INVOICE_CHAT: PipelineState.CHAT,
    RequestKind.GENERAL_DOCUMENT_CHAT: PipelineState.CHAT,
    RequestKind.COMBINED_CALCULATION_AND_CHAT: PipelineState.COMBINED,
}


@dataclass(frozen=True)
class PipelineWarning:
    """A recoverable problem reported alongside a response."""
    type: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.type, 'message': self.message}


@dataclass(frozen=True)
class RouterResponse:
    """Everything a request produced, including diagnostics."""
    kind: RequestKind
    owner_id: str
    session_id: str
    states: Tuple[PipelineState, ...]
    invoice: Optional[Invoice] = None
    diagnostics: Optional[ParseDiagnostics] = None
    breakdown: Optional[CostBreakdown] = None
    answer: Optional[str] = None
    sources: Tuple[SourceReference, ...] = ()
    warnings: Tuple[PipelineWarning, ...] = ()
    memory_stored: bool = False
    cancelled: bool = False
    cascaded: Optional['RouterResponse'] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'session_id': self.session_id,
            'states': [s.value for s in self.states],
            'invoice': self.invoice.to_dict() if self.invoice else None,
            'diagnostics': self.diagnostics.to_dict() if self.diagnostics else None,
            'breakdown': self.breakdown.to_dict() if self.breakdown else None,
            'answer': self.answer,
            'sources': [s.to_dict() for s in self.sources],
            'warnings': [w.to_dict() for w in self.warnings],
            'memory_stored': self.memory_stored,
            'cancelled': self.cancelled,
            'cascaded': self.cascaded.to_dict() if self.cascaded else None,
        }


@dataclass(frozen=True)
class PipelineContext:
    """Accumulated per-stage outputs. Each stage returns a new context."""
    envelope: RequestEnvelope
    states: Tuple[PipelineState, ...] = ()
    invoice: Optional[Invoice] = None
    diagnostics: Optional[ParseDiagnostics] = None
    transactions: Tuple[Transaction, ...] = ()
    selected: Optional[SelectedDateSet] = None
    breakdown: Optional[CostBreakdown] = None
    similar_transactions: Tuple[ScoredTransaction, ...] = ()
    similar_chunks: Tuple[ScoredChunk, ...] = ()
    recent_memory: Tuple[MemoryEntry, ...] = ()
    similar_memory: Tuple[MemoryEntry, ...] = ()
    prompt_context: str = ''
    sources: Tuple[SourceReference, ...] = ()
    answer: Optional[str] = None
    generated: bool = False
    memory_stored: bool = False
    cancelled: bool = False
    warnings: Tuple[PipelineWarning, ...] = ()
    cascaded: Optional[RouterResponse] = None

    def advance(self, state: PipelineState, **changes: Any) -> 'PipelineContext':
        return replace(self, states=self.states + (state,), **changes)

    def warn(self, warning_type: str, message: str) -> 'PipelineContext':
        return replace(self, warnings=self.warnings + (PipelineWarning(warning_type, message),))

    def to_response(self) -> RouterResponse:
        return RouterResponse(kind=self.envelope.kind,
                              owner_id=self.envelope.owner_id,
                              session_id=self.envelope.session_id,
                              states=self.states,
                              invoice=self.invoice,
                              diagnostics=self.diagnostics,
                              breakdown=self.breakdown,
                              answer=self.answer,
                              sources=self.sources,
                              warnings=self.warnings,
                              memory_stored=self.memory_stored,
                              cancelled=self.cancelled,
                              cascaded=self.cascaded)


class RequestRouter:
    """Dispatch a ``RequestEnvelope`` to the parser, calculator and chat stages.

    Stages run strictly in order within a request. The router keeps no
    per-request state, so one instance can serve many threads.
    """

    def __init__(self,
                 parser: Optional[InvoiceParser] = None,
                 ledger: Optional[LedgerStore] = None,
                 selector: Optional[DateSelector] = None,
                 calculator: Optional[CostCalculator] = None,
                 memory: Optional[ConversationMemoryService] = None,
                 documents: Optional[DocumentStore] = None,
                 llm: Optional[BedrockLLM] = None):
        needs_clients = ledger is None or memory is None or documents is None
        opensearch = OpenSearchClient(config.opensearch) if needs_clients else None
        embed = BedrockEmbed(config.bedrock_embed) if needs_clients else None

        self.parser = parser or InvoiceParser()
        self.ledger = ledger or LedgerStore(opensearch, embed)
        self.selector = selector or DateSelector()
        self.calculator = calculator or CostCalculator(default_cap_policy())
        self.memory = memory or ConversationMemoryService(opensearch, embed)
        self.documents = documents or DocumentStore(opensearch, embed)
        self.llm = llm or BedrockLLM(config.bedrock_llm)

        logger.info('Initialized RequestRouter')

    def handle(self,
               envelope: RequestEnvelope,
               on_delta: Optional[DeltaCallback] = None,
               cancel_event: Optional[threading.Event] = None) -> RouterResponse:
        """
        Process one request.

        Args:
            envelope: Classified request
            on_delta: Receives generated text fragments as they stream
            cancel_event: When set, generation stops and no memory is written

        Returns:
            RouterResponse with the visited states and all diagnostics

        Raises:
            MalformedInput: If the input cannot be processed
            TenancyViolation: If the request touches another owner's data
            UpstreamUnavailable: If parsing storage or ledger reads fail
        """
        ctx = PipelineContext(envelope=envelope).advance(PipelineState.RECEIVED)
        ctx = ctx.advance(PipelineState.CLASSIFIED)
        logger.debug(f'Request for session {envelope.session_id} classified as {envelope.kind.value}')

        kind = envelope.kind
        ctx = ctx.advance(_PATH_STATES[kind])
        if kind is RequestKind.INVOICE_UPLOAD:
            ctx = self._upload(ctx)
            follow_up = envelope.cascade(ctx.invoice.id)
            if follow_up is not None:
                logger.debug(f'Cascading {follow_up.kind.value} after upload of {ctx.invoice.id}')
                ctx = self._cascade(ctx, follow_up, on_delta, cancel_event)
        elif kind is RequestKind.COST_CALCULATION:
            ctx = self._date_scoped(ctx)
        else:
            if kind is RequestKind.COMBINED_CALCULATION_AND_CHAT:
                ctx = self._date_scoped(ctx)
            ctx = self._chat(ctx, on_delta, cancel_event)

        if ctx.memory_stored:
            ctx = ctx.advance(PipelineState.MEMORY_UPDATED)
        return ctx.advance(PipelineState.RESPONDED).to_response()

    # Stages
    def _upload(self, ctx: PipelineContext) -> PipelineContext:
        envelope = ctx.envelope
        payload = envelope.payload
        result = self.parser.parse(payload.file_bytes,
                                   payload.declared_format,
                                   envelope.owner_id,
                                   timezone=payload.timezone,
                                   filename=payload.filename)
        embedded = self.ledger.store(result.invoice, result.transactions)

        ctx = replace(ctx, invoice=result.invoice, diagnostics=result.diagnostics, transactions=result.transactions)
        if not embedded:
            ctx = ctx.warn('embedding_unavailable', 'Transactions were stored without similarity search vectors')
        for warning in result.invoice.warnings:
            ctx = ctx.warn('reconciliation_mismatch',
                           f'Declared total {warning.declared_total} differs from computed total {warning.computed_total}')
        if result.diagnostics.skipped_rows:
            ctx = ctx.warn('skipped_rows', f'{result.diagnostics.skipped_rows} rows could not be parsed')
        return ctx

    def _cascade(self,
                 ctx: PipelineContext,
                 follow_up: RequestEnvelope,
                 on_delta: Optional[DeltaCallback],
                 cancel_event: Optional[threading.Event]) -> PipelineContext:
        # The invoice is already stored; its id and diagnostics must reach the caller
        try:
            return replace(ctx, cascaded=self.handle(follow_up, on_delta=on_delta, cancel_event=cancel_event))
        except (MalformedInput, CapacityExceeded, UpstreamUnavailable) as e:
            logger.warning(f'Cascaded {follow_up.kind.value} after upload of {ctx.invoice.id} failed: {e}')
            return ctx.warn('cascade_failed', f'{follow_up.kind.value} could not be completed: {e}')

    def _date_scoped(self, ctx: PipelineContext) -> PipelineContext:
        envelope = ctx.envelope
        invoice_id = envelope.payload.invoice_id
        invoice = self.ledger.get_invoice(invoice_id, envelope.owner_id)
        if invoice is None:
            raise MalformedInput(f'Unknown invoice: {invoice_id}')

        selected = self.selector.normalize(envelope.payload.dates, invoice_id, envelope.owner_id)
        transactions = tuple(self.ledger.get_by_invoice(invoice_id, envelope.owner_id))
        breakdown = self.calculator.calculate(transactions, selected)
        logger.info(f'Calculated {len(selected.dates)} dates of invoice {invoice_id}: total {breakdown.total_amount}')

        ctx = replace(ctx, invoice=invoice, selected=selected, transactions=transactions, breakdown=breakdown)
        if breakdown.unmatched_dates:
            ctx = ctx.warn('unmatched_dates', f'{len(breakdown.unmatched_dates)} selected dates have no transactions')
        if breakdown.capped_dates:
            ctx = ctx.warn('daily_cap_applied', f'Daily cap applied on {len(breakdown.capped_dates)} dates')
        return ctx

    def _chat(self, ctx: PipelineContext, on_delta: Optional[DeltaCallback], cancel_event: Optional[threading.Event]) -> PipelineContext:
        ctx = self._retrieve(ctx)
        ctx = self._format(ctx)
        ctx = self._generate(ctx, on_delta, cancel_event)
        return self._remember(ctx)

    def _retrieve(self, ctx: PipelineContext) -> PipelineContext:
        envelope = ctx.envelope
        owner_id = envelope.owner_id
        query = envelope.payload.query
        invoice_id = envelope.payload.invoice_id

        if envelope.kind is RequestKind.INVOICE_CHAT and ctx.invoice is None:
            ctx = replace(ctx, invoice=self.ledger.get_invoice(invoice_id, owner_id))

        try:
            if envelope.kind is RequestKind.GENERAL_DOCUMENT_CHAT:
                ctx = replace(ctx, similar_chunks=tuple(self.documents.find_similar(owner_id, query)))
            elif ctx.invoice is not None:
                ctx = replace(ctx, similar_transactions=tuple(self.ledger.find_similar(owner_id, query, invoice_id=invoice_id)))
        except UpstreamUnavailable as e:
            logger.warning(f'Similarity retrieval failed, continuing without it: {e}')
            ctx = ctx.warn('retrieval_unavailable', 'Similar records could not be retrieved')

        try:
            recent = self.memory.load_recent(envelope.session_id, owner_id)
            similar = self.memory.load_similar(owner_id, query)
        except UpstreamUnavailable as e:
            logger.warning(f'Memory retrieval failed, continuing without it: {e}')
            return ctx.warn('memory_unavailable', 'Conversation history could not be loaded')

        recent_ids = {entry.id for entry in recent}
        return replace(ctx,
                       recent_memory=tuple(recent),
                       similar_memory=tuple(entry for entry in similar if entry.id not in recent_ids))

    def _format(self, ctx: PipelineContext) -> PipelineContext:
        context, sources = build_context(invoice=ctx.invoice,
                                         breakdown=ctx.breakdown,
                                         transactions=ctx.similar_transactions,
                                         chunks=ctx.similar_chunks,
                                         similar_memory=ctx.similar_memory)
        return replace(ctx, prompt_context=context, sources=tuple(sources))

    def _generate(self, ctx: PipelineContext, on_delta: Optional[DeltaCallback], cancel_event: Optional[threading.Event]) -> PipelineContext:
        envelope = ctx.envelope
        document_chat = envelope.kind is RequestKind.GENERAL_DOCUMENT_CHAT

        if not ctx.prompt_context and not ctx.recent_memory:
            # Nothing to ground an answer in
            greeting = DOCUMENT_GREETING if document_chat else INVOICE_GREETING
            if on_delta is not None:
                on_delta(greeting)
            return replace(ctx, answer=greeting)

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f'Generation for session {envelope.session_id} cancelled before start')
            return replace(ctx, cancelled=True).warn('generation_cancelled', 'Generation was cancelled')

        messages = build_messages(envelope.payload.query, ctx.prompt_context, ctx.recent_memory)
        system_prompt = DOCUMENT_SYSTEM_PROMPT if document_chat else INVOICE_SYSTEM_PROMPT
        try:
            answer, metrics = self.llm.generate_response(messages=messages,
                                                         system_prompt=system_prompt,
                                                         on_delta=on_delta,
                                                         cancel_event=cancel_event)
        except GenerationCancelled:
            logger.info(f'Generation for session {envelope.session_id} cancelled')
            return replace(ctx, cancelled=True).warn('generation_cancelled', 'Generation was cancelled')
        except UpstreamUnavailable as e:
            logger.error(f'Generation failed, responding without narrative: {e}')
            return ctx.warn('generation_unavailable', 'The answer could not be generated; computed results are still included')

        logger.debug(f'Generated answer for session {envelope.session_id}: {metrics}')
        return replace(ctx, answer=answer, generated=True)

    def _remember(self, ctx: PipelineContext) -> PipelineContext:
        if not ctx.generated or ctx.cancelled:
            return ctx

        envelope = ctx.envelope
        entry = self.memory.build_entry(session_id=envelope.session_id,
                                        owner_id=envelope.owner_id,
                                        user_query=envelope.payload.query,
                                        assistant_response=ctx.answer,
                                        referenced_invoice_id=envelope.payload.invoice_id,
                                        referenced_transaction_ids=[s.id for s in ctx.sources if s.kind == 'transaction'])
        try:
            self.memory.append(entry)
        except UpstreamUnavailable as e:
            logger.warning(f'Failed to store conversation turn: {e}')
            return ctx.warn('memory_not_stored', 'This exchange was not saved to conversation memory')
        return replace(ctx, memory_stored=True)

