"""
Prompt and source-reference formatting for the chat paths.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.core import CostBreakdown, Invoice, MemoryEntry, SourceReference
from ..utils.money import format_money
from .document_store import ScoredChunk
from .ledger_store import ScoredTransaction

PREVIEW_CHARS = 120

INVOICE_GREETING = "Hello! I'm ready to answer questions about your transit invoice. What would you like to know?"
DOCUMENT_GREETING = 'Hello! Upload a document and ask me anything about it.'

INVOICE_SYSTEM_PROMPT = """You are a transit expense assistant. You answer questions about a user's public transport invoice.

## Rules
- Use only the invoice summary, cost breakdown and transactions given in the context.
- Money figures in the context are exact. Quote them as given, in pounds with two decimals.
- Never recompute a cost breakdown; if one is provided, it is authoritative.
- If a daily cap was applied, say so when discussing totals.
- If the context does not contain the answer, say that you cannot tell from the invoice.
- Be concise."""  # noqa: E501

DOCUMENT_SYSTEM_PROMPT = """You are a helpful assistant answering questions about documents the user uploaded.

## Rules
- Use only the document excerpts and conversation given in the context.
- If the excerpts do not contain the answer, say so.
- Be concise."""


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    text = ' '.join(text.split())
    return text if len(text) <= limit else text[:limit - 3] + '...'


def format_invoice_summary(invoice: Invoice) -> str:
    period = ''
    if invoice.period_start and invoice.period_end:
        period = f' covering {invoice.period_start.isoformat()} to {invoice.period_end.isoformat()}'
    lines = [f'Invoice {invoice.id}{period}: {invoice.transaction_count} transactions, '
             f'total £{format_money(invoice.total_amount)} (timezone {invoice.timezone}).']
    for warning in invoice.warnings:
        lines.append(f'Note: the invoice states a total of £{format_money(warning.declared_total)}, '
                     f'but its transactions sum to £{format_money(warning.computed_total)}.')
    return '\n'.join(lines)


def format_breakdown(breakdown: CostBreakdown) -> str:
    """Render a cost breakdown as plain text for the model."""
    lines = []
    if breakdown.date_range:
        start, end = breakdown.date_range
        lines.append(f'Selected dates from {start.isoformat()} to {end.isoformat()} ({len(breakdown.per_day)} days).')
    lines.append(f'Total cost for the selected dates: £{format_money(breakdown.total_amount)}.')
    if breakdown.raw_total != breakdown.total_amount:
        lines.append(f'Spend before daily caps: £{format_money(breakdown.raw_total)}.')

    for day, record in breakdown.per_day.items():
        if not record.matched:
            continue
        line = f'- {day.isoformat()}: {record.transaction_count} journeys, £{format_money(record.daily_total)}'
        if record.capped:
            line += f' (capped from £{format_money(record.raw_total)})'
        lines.append(line)

    if breakdown.by_journey_type:
        parts = ', '.join(f'{jt.value} £{format_money(v)}' for jt, v in breakdown.by_journey_type.items())
        lines.append(f'By journey type (before caps): {parts}.')
    if breakdown.by_zone_range:
        parts = ', '.join(f'{zone} £{format_money(v)}' for zone, v in breakdown.by_zone_range.items())
        lines.append(f'By zones (before caps): {parts}.')
    if breakdown.unmatched_dates:
        lines.append('No travel on: ' + ', '.join(d.isoformat() for d in breakdown.unmatched_dates) + '.')
    return '\n'.join(lines)


def build_context(invoice: Optional[Invoice] = None,
                  breakdown: Optional[CostBreakdown] = None,
                  transactions: Sequence[ScoredTransaction] = (),
                  chunks: Sequence[ScoredChunk] = (),
                  similar_memory: Sequence[MemoryEntry] = ()) -> Tuple[str, List[SourceReference]]:
    """
    Assemble the retrieval context placed in the prompt.

    Returns:
        Tuple of (context text, references for every retrieved record used);
        the text is empty when nothing was retrieved
    """
    sections = []
    sources: List[SourceReference] = []

    if invoice is not None:
        sections.append('## Invoice\n' + format_invoice_summary(invoice))
    if breakdown is not None:
        sections.append('## Cost breakdown\n' + format_breakdown(breakdown))

    if transactions:
        lines = []
        for hit in transactions:
            text = hit.transaction.describe()
            lines.append(f'- {text}')
            sources.append(SourceReference(kind='transaction', id=hit.transaction.id, preview=preview(text), score=hit.score))
        sections.append('## Relevant transactions\n' + '\n'.join(lines))

    if chunks:
        lines = []
        for hit in chunks:
            lines.append(f'[{hit.chunk.filename} #{hit.chunk.ordinal}]\n{hit.chunk.text}')
            sources.append(SourceReference(kind='document', id=hit.chunk.id, preview=preview(hit.chunk.text), score=hit.score))
        sections.append('## Document excerpts\n' + '\n\n'.join(lines))

    if similar_memory:
        lines = []
        for entry in similar_memory:
            lines.append(f'- Q: {entry.user_query}\n  A: {entry.assistant_response}')
            sources.append(SourceReference(kind='memory', id=entry.id, preview=preview(entry.user_query)))
        sections.append('## Related earlier questions\n' + '\n'.join(lines))

    return '\n\n'.join(sections), sources


def build_messages(query: str, context: str, recent: Sequence[MemoryEntry] = ()) -> List[Dict[str, Any]]:
    """Converse-format messages: recent turns oldest first, then the question with its context."""
    messages: List[Dict[str, Any]] = []
    for entry in recent:
        messages.append({'role': 'user', 'content': [{'text': entry.user_query}]})
        messages.append({'role': 'assistant', 'content': [{'text': entry.assistant_response or '...'}]})

    messages.append({'role': 'user', 'content': [{'text': f'<context>\n{context}\n</context>\n\n{query}'}]})
    return messages
