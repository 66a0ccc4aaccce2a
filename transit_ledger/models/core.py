"""
Core data models for the invoice ledger, cost breakdowns and memory.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.money import format_money


class JourneyType(str, Enum):
    """Mode of travel for one fare event."""
    BUS = 'bus'
    TUBE = 'tube'
    TRAIN = 'train'
    TRAM = 'tram'
    LIGHT_RAIL = 'light_rail'
    OTHER = 'other'


class SourceFormat(str, Enum):
    """File format an invoice was uploaded in."""
    CSV = 'csv'
    PDF = 'pdf'
    JSON = 'json'


@dataclass(frozen=True)
class Transaction:
    """One fare event parsed from an invoice. Immutable once created."""
    id: str  # Unique within its invoice, derived from content
    invoice_id: str
    owner_id: str
    date: date  # Calendar day in the invoice timezone
    amount: Decimal  # Exact, non-negative
    journey_type: JourneyType = JourneyType.OTHER
    zone_range: Optional[Tuple[int, int]] = None
    peak: Optional[bool] = None  # None means unknown
    timestamp: Optional[datetime] = None
    description: str = ''

    @property
    def zone_key(self) -> str:
        if self.zone_range is None:
            return 'unzoned'
        low, high = self.zone_range
        return str(low) if low == high else f'{low}-{high}'

    def describe(self) -> str:
        """Natural-language rendering used for embeddings and prompts."""
        parts = [self.date.isoformat(), self.journey_type.value, f'£{format_money(self.amount)}']
        if self.zone_range is not None:
            parts.append(f'zones {self.zone_key}')
        if self.peak is not None:
            parts.append('peak' if self.peak else 'off-peak')
        if self.description:
            parts.append(self.description)
        return ' '.join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'invoice_id': self.invoice_id,
            'date': self.date.isoformat(),
            'amount': format_money(self.amount),
            'journey_type': self.journey_type.value,
            'zone_range': list(self.zone_range) if self.zone_range else None,
            'peak': self.peak,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'description': self.description,
        }


def transaction_order(txn: Transaction) -> Tuple[date, int, float, str]:
    """Order by date, then timestamp (rows without one last), then id."""
    if txn.timestamp is None:
        return (txn.date, 1, 0.0, txn.id)
    return (txn.date, 0, txn.timestamp.timestamp(), txn.id)


@dataclass(frozen=True)
class ReconciliationWarning:
    """Declared invoice total disagrees with the sum of its transactions."""
    declared_total: Decimal
    computed_total: Decimal

    @property
    def difference(self) -> Decimal:
        return self.declared_total - self.computed_total

    def to_dict(self) -> Dict[str, str]:
        return {
            'type': 'reconciliation_mismatch',
            'declared_total': format_money(self.declared_total),
            'computed_total': format_money(self.computed_total),
            'difference': format_money(self.difference),
        }


@dataclass
class Invoice:
    """One uploaded transit statement. Totals come from its transactions only."""
    id: str
    owner_id: str
    period_start: Optional[date]
    period_end: Optional[date]
    total_amount: Decimal
    source_format: SourceFormat
    uploaded_at: datetime
    timezone: str = 'UTC'
    transaction_count: int = 0
    declared_total: Optional[Decimal] = None
    filename: Optional[str] = None
    warnings: List[ReconciliationWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'period_start': self.period_start.isoformat() if self.period_start else None,
            'period_end': self.period_end.isoformat() if self.period_end else None,
            'total_amount': format_money(self.total_amount),
            'source_format': self.source_format.value,
            'uploaded_at': self.uploaded_at.isoformat(),
            'timezone': self.timezone,
            'transaction_count': self.transaction_count,
            'declared_total': format_money(self.declared_total) if self.declared_total is not None else None,
            'filename': self.filename,
            'warnings': [w.to_dict() for w in self.warnings],
        }


@dataclass(frozen=True)
class SkippedRow:
    """A source row the parser ignored, and why."""
    line: int
    reason: str


@dataclass
class ParseDiagnostics:
    """Rows dropped while parsing an invoice."""
    skipped: List[SkippedRow] = field(default_factory=list)

    @property
    def skipped_rows(self) -> int:
        return len(self.skipped)

    def skip(self, line: int, reason: str) -> None:
        self.skipped.append(SkippedRow(line=line, reason=reason))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'skipped_rows': self.skipped_rows,
            'skipped': [{'line': s.line, 'reason': s.reason} for s in self.skipped],
        }


@dataclass(frozen=True)
class SelectedDateSet:
    """Sorted, deduplicated calendar dates chosen for one calculation."""
    dates: Tuple[date, ...]
    invoice_id: str
    owner_id: str

    @property
    def date_range(self) -> Optional[Tuple[date, date]]:
        if not self.dates:
            return None
        return (self.dates[0], self.dates[-1])


@dataclass(frozen=True)
class DayBreakdown:
    """Cost for one selected date. ``daily_total`` is capped, ``raw_total`` is not."""
    date: date
    transaction_count: int
    raw_total: Decimal
    daily_total: Decimal
    transactions: Tuple[Transaction, ...] = ()
    capped: bool = False
    cap: Optional[Decimal] = None

    @property
    def matched(self) -> bool:
        return self.transaction_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'transaction_count': self.transaction_count,
            'raw_total': format_money(self.raw_total),
            'daily_total': format_money(self.daily_total),
            'capped': self.capped,
            'cap': format_money(self.cap) if self.cap is not None else None,
            'transactions': [t.id for t in self.transactions],
        }


BREAKDOWN_NOTES = ('total_amount is the sum of daily totals after any daily cap; '
                   'by_journey_type and by_zone_range are uncapped raw spend.')


@dataclass
class CostBreakdown:
    """Itemized cost of a date selection. A view, never persisted."""
    total_amount: Decimal
    raw_total: Decimal
    per_day: Dict[date, DayBreakdown]
    by_journey_type: Dict[JourneyType, Decimal]
    by_zone_range: Dict[str, Decimal]
    date_range: Optional[Tuple[date, date]]
    unmatched_dates: List[date]
    notes: str = BREAKDOWN_NOTES

    @property
    def capped_dates(self) -> List[date]:
        return [day for day, record in self.per_day.items() if record.capped]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_amount': format_money(self.total_amount),
            'raw_total': format_money(self.raw_total),
            'per_day': {day.isoformat(): record.to_dict() for day, record in self.per_day.items()},
            'by_journey_type': {jt.value: format_money(v) for jt, v in self.by_journey_type.items()},
            'by_zone_range': {k: format_money(v) for k, v in self.by_zone_range.items()},
            'date_range': [d.isoformat() for d in self.date_range] if self.date_range else None,
            'unmatched_dates': [d.isoformat() for d in self.unmatched_dates],
            'capped_dates': [d.isoformat() for d in self.capped_dates],
            'notes': self.notes,
        }


@dataclass(frozen=True)
class MemoryEntry:
    """One stored conversational turn. Never mutated."""
    id: str
    session_id: str
    owner_id: str
    user_query: str
    assistant_response: str
    timestamp: datetime
    referenced_invoice_id: Optional[str] = None
    referenced_transaction_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DocumentChunk:
    """A slice of an uploaded reference document."""
    id: str
    document_id: str
    owner_id: str
    filename: str
    ordinal: int
    text: str


@dataclass(frozen=True)
class SourceReference:
    """A retrieved record that was placed in the generation prompt."""
    kind: str  # transaction, document or memory
    id: str
    preview: str
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'id': self.id, 'preview': self.preview, 'score': self.score}
