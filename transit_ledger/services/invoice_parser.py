"""
Invoice Parser: turns an uploaded CSV, PDF or JSON statement into transactions.
"""

import csv
import hashlib
import io
import json
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from ..errors import CapacityExceeded, MalformedInput
from ..models.core import (Invoice, JourneyType, ParseDiagnostics, ReconciliationWarning, SourceFormat, Transaction,
                           transaction_order)
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.money import approx_equal, exact_sum, parse_amount
from ..utils.pdf_text import extract_pdf_text
from ..utils.timestamp_utils import localize, resolve_timezone, utc_now

logger = get_logger(__name__)

# Header aliases, compared after lower-casing and turning '_' and camelCase into spaces
FIELD_ALIASES = {
    'date': ('date', 'travel date', 'journey date', 'day'),
    'amount': ('amount', 'charge', 'fare', 'cost', 'price'),
    'journey_type': ('journey type', 'mode', 'transport mode', 'type'),
    'journey': ('journey/action', 'journey', 'description', 'route', 'action'),
    'zones': ('zones', 'zone', 'zone range'),
    'peak': ('peak', 'is peak', 'peak/off-peak'),
    'timestamp': ('timestamp', 'datetime', 'date time'),
    'start_time': ('start time', 'time'),
}

JOURNEY_TYPE_ALIASES = {
    'bus': JourneyType.BUS,
    'tube': JourneyType.TUBE,
    'underground': JourneyType.TUBE,
    'london underground': JourneyType.TUBE,
    'train': JourneyType.TRAIN,
    'rail': JourneyType.TRAIN,
    'national rail': JourneyType.TRAIN,
    'overground': JourneyType.TRAIN,
    'elizabeth line': JourneyType.TRAIN,
    'tram': JourneyType.TRAM,
    'trams': JourneyType.TRAM,
    'dlr': JourneyType.LIGHT_RAIL,
    'light rail': JourneyType.LIGHT_RAIL,
    'lightrail': JourneyType.LIGHT_RAIL,
    'other': JourneyType.OTHER,
}

# Keyword order matters: "Bus journey" must win over any station names
JOURNEY_KEYWORDS = [
    (re.compile(r'\bbus\b', re.IGNORECASE), JourneyType.BUS),
    (re.compile(r'\btrams?\b', re.IGNORECASE), JourneyType.TRAM),
    (re.compile(r'\bdlr\b', re.IGNORECASE), JourneyType.LIGHT_RAIL),
    (re.compile(r'\b(overground|national rail|elizabeth line|rail|train)\b', re.IGNORECASE), JourneyType.TRAIN),
    (re.compile(r'\b(underground|tube)\b', re.IGNORECASE), JourneyType.TUBE),
]

PEAK_VALUES = {
    'true': True, 'yes': True, 'y': True, '1': True, 'peak': True,
    'false': False, 'no': False, 'n': False, '0': False, 'off-peak': False, 'off peak': False, 'offpeak': False,
}

CSV_TOTAL_LABELS = ('total', 'total charges', 'total amount', 'total spend')

ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
# Three date components, or a spelled month with day and year
PLAUSIBLE_DATE_RE = re.compile(r'\d{1,4}[-/. ][A-Za-z0-9]{1,9}\.?[-/. ]\d{2,4}|[A-Za-z]{3,9}\.? \d{1,2},? \d{4}')
ZONES_IN_TEXT_RE = re.compile(r'\bzones?\s*(\d{1,2})(?:\s*[-–]\s*(\d{1,2}))?', re.IGNORECASE)

# PDF statement lines
DATE_TOKEN = r'\d{4}-\d{2}-\d{2}|\d{1,2}[-/ ](?:\d{1,2}|[A-Za-z]{3,9})[-/ ]\d{2,4}'
MONEY_TOKEN = r'-?£?\s?\d[\d,]*\.\d{2}'
PDF_ROW_RE = re.compile(rf'^\s*(?P<date>{DATE_TOKEN})\s+'
                        r'(?:(?P<time>\d{1,2}:\d{2})(?:\s*-\s*\d{1,2}:\d{2})?\s+)?'
                        rf'(?P<text>.*?)\s*(?P<amount>{MONEY_TOKEN})(?:\s.*)?$')
PDF_TOTAL_RE = re.compile(r'^\s*total(?:\s+(?:charges?|amount|spend))?\b[^\d£-]*£?\s*(?P<amount>\d[\d,]*\.\d{2})', re.IGNORECASE)
PDF_PERIOD_RE = re.compile(rf'period\b[^\d]*(?P<start>{DATE_TOKEN})\s*(?:-|–|to)\s*(?P<end>{DATE_TOKEN})', re.IGNORECASE)
HAS_DATE_RE = re.compile(DATE_TOKEN)
HAS_MONEY_RE = re.compile(r'£\s?\d|\d\.\d{2}\b')

_DATEUTIL_DEFAULT = datetime(2000, 1, 1)


@dataclass(frozen=True)
class ParseResult:
    """Invoice plus its transactions and the rows that were dropped."""
    invoice: Invoice
    transactions: Tuple[Transaction, ...]
    diagnostics: ParseDiagnostics


@dataclass
class _SourceMeta:
    declared_total: Optional[Decimal] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    timezone: Optional[str] = None


def _normalize_key(key: str) -> str:
    key = re.sub(r'(?<=[a-z])(?=[A-Z])', ' ', str(key))
    return re.sub(r'[\s_]+', ' ', key).strip().lower()


def _canonical_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """Map source column names onto the parser's field names."""
    by_key = {_normalize_key(k): v for k, v in record.items() if k is not None}
    fields = {}
    for name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = by_key.get(alias)
            if value is not None and not (isinstance(value, str) and not value.strip()):
                fields[name] = value
                break
    return fields


def _digest(*parts: Any) -> str:
    return hashlib.sha256('|'.join(str(p) for p in parts).encode('utf-8')).hexdigest()


class InvoiceParser:
    """Parse transit statements into an ``Invoice`` and its ``Transaction`` records.

    Bad rows are skipped and counted rather than failing the whole file; the
    parse only fails when nothing could be extracted.
    """

    def __init__(self,
                 default_timezone: Optional[str] = None,
                 dayfirst: Optional[bool] = None,
                 tolerance: Optional[Decimal] = None,
                 max_upload_bytes: Optional[int] = None):
        self.default_timezone = default_timezone or config.ledger.default_timezone
        self.dayfirst = config.ledger.dayfirst if dayfirst is None else dayfirst
        self.tolerance = tolerance if tolerance is not None else config.ledger.reconciliation_tolerance
        self.max_upload_bytes = max_upload_bytes if max_upload_bytes is not None else config.ledger.max_upload_bytes

    # Public API
    def parse(self,
              raw_bytes: bytes,
              declared_format: Union[SourceFormat, str],
              owner_id: str,
              timezone: Optional[str] = None,
              filename: Optional[str] = None) -> ParseResult:
        """
        Parse an uploaded invoice.

        Args:
            raw_bytes: File content
            declared_format: csv, pdf or json
            owner_id: Owner of the invoice
            timezone: IANA timezone of the statement (file value or config default if None)
            filename: Original file name, informational

        Returns:
            ParseResult with the invoice, ordered transactions and diagnostics

        Raises:
            CapacityExceeded: If the file is larger than allowed
            MalformedInput: If the file cannot be decoded or yields no transactions
        """
        if len(raw_bytes) > self.max_upload_bytes:
            raise CapacityExceeded(f'Invoice is {len(raw_bytes)} bytes, maximum is {self.max_upload_bytes}')
        try:
            fmt = SourceFormat(declared_format)
        except ValueError:
            raise MalformedInput(f'Unsupported invoice format: {declared_format}')

        diagnostics = ParseDiagnostics()
        if fmt is SourceFormat.CSV:
            records, meta = self._records_from_csv(self._decode(raw_bytes))
        elif fmt is SourceFormat.JSON:
            records, meta = self._records_from_json(self._decode(raw_bytes), diagnostics)
        else:
            records, meta = self._records_from_pdf_text(extract_pdf_text(raw_bytes), diagnostics)

        return self._assemble(raw_bytes, fmt, records, meta, diagnostics, owner_id, timezone, filename)

    def parse_text(self,
                   text: str,
                   owner_id: str,
                   timezone: Optional[str] = None,
                   filename: Optional[str] = None) -> ParseResult:
        """Parse text already extracted from a PDF statement."""
        diagnostics = ParseDiagnostics()
        records, meta = self._records_from_pdf_text(text, diagnostics)
        return self._assemble(text.encode('utf-8'), SourceFormat.PDF, records, meta, diagnostics, owner_id, timezone, filename)

    # Internals
    def _assemble(self, raw_bytes: bytes, fmt: SourceFormat, records: List[Tuple[int, Dict[str, Any]]], meta: _SourceMeta,
                  diagnostics: ParseDiagnostics, owner_id: str, timezone: Optional[str], filename: Optional[str]) -> ParseResult:
        tz_name = timezone or meta.timezone or self.default_timezone
        try:
            tz = resolve_timezone(tz_name)
        except ValueError as e:
            raise MalformedInput(str(e))

        invoice_id = 'inv_' + hashlib.sha256(owner_id.encode('utf-8') + b'\0' + raw_bytes).hexdigest()[:24]

        transactions = []
        for line, fields in records:
            txn = self._build_transaction(line, fields, invoice_id, owner_id, tz, diagnostics)
            if txn is not None:
                transactions.append(txn)

        if not transactions:
            raise MalformedInput(f'No transactions could be extracted ({diagnostics.skipped_rows} rows skipped)')

        transactions.sort(key=transaction_order)
        total = exact_sum(t.amount for t in transactions)

        invoice = Invoice(id=invoice_id,
                          owner_id=owner_id,
                          period_start=meta.period_start or transactions[0].date,
                          period_end=meta.period_end or transactions[-1].date,
                          total_amount=total,
                          source_format=fmt,
                          uploaded_at=utc_now(),
                          timezone=tz.key,
                          transaction_count=len(transactions),
                          declared_total=meta.declared_total,
                          filename=filename)

        if meta.declared_total is not None and not approx_equal(meta.declared_total, total, self.tolerance):
            warning = ReconciliationWarning(declared_total=meta.declared_total, computed_total=total)
            invoice.warnings.append(warning)
            logger.warning(f'Invoice {invoice_id} declares {meta.declared_total} but transactions sum to {total}')

        if diagnostics.skipped_rows:
            logger.info(f'Parsed invoice {invoice_id}: {len(transactions)} transactions, {diagnostics.skipped_rows} rows skipped')
        else:
            logger.debug(f'Parsed invoice {invoice_id}: {len(transactions)} transactions')
        return ParseResult(invoice=invoice, transactions=tuple(transactions), diagnostics=diagnostics)

    def _decode(self, raw_bytes: bytes) -> str:
        for encoding in ('utf-8-sig', 'cp1252'):
            try:
                return raw_bytes.decode(encoding)
            except UnicodeDecodeError:
                continue
        raise MalformedInput('Invoice is not readable text')

    def _records_from_csv(self, text: str) -> Tuple[List[Tuple[int, Dict[str, Any]]], _SourceMeta]:
        reader = csv.DictReader(io.StringIO(text))
        meta = _SourceMeta()
        records = []
        for row in reader:
            values = [str(v).strip() for k, v in row.items() if k is not None and v is not None and str(v).strip()]
            if not values:
                continue
            fields = _canonical_fields(row)
            # A trailing "Total" row is informational only
            if values[0].lower().rstrip(':') in CSV_TOTAL_LABELS and 'amount' in fields:
                meta.declared_total = parse_amount(fields['amount'])
                continue
            records.append((reader.line_num, fields))
        return records, meta

    def _records_from_json(self, text: str, diagnostics: ParseDiagnostics) -> Tuple[List[Tuple[int, Dict[str, Any]]], _SourceMeta]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedInput(f'Invalid JSON invoice: {e}')

        meta = _SourceMeta()
        if isinstance(data, dict):
            header = {_normalize_key(k): v for k, v in data.items()}
            entries = header.get('transactions')
            total = header.get('total', header.get('total amount'))
            if total is not None:
                meta.declared_total = parse_amount(total)
            meta.period_start = self._parse_date(header.get('period start'))
            meta.period_end = self._parse_date(header.get('period end'))
            if isinstance(header.get('timezone'), str):
                meta.timezone = header['timezone']
        else:
            entries = data

        if not isinstance(entries, list):
            raise MalformedInput('JSON invoice has no transaction list')

        records = []
        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                diagnostics.skip(index, 'entry_not_object')
                continue
            records.append((index, _canonical_fields(entry)))
        return records, meta

    def _records_from_pdf_text(self, text: str, diagnostics: ParseDiagnostics) -> Tuple[List[Tuple[int, Dict[str, Any]]], _SourceMeta]:
        meta = _SourceMeta()
        records = []
        for line_no, raw_line in enumerate(text.replace('\r', '').split('\n'), start=1):
            line = raw_line.strip()
            if not line:
                continue

            total_match = PDF_TOTAL_RE.match(line)
            if total_match:
                meta.declared_total = parse_amount(total_match.group('amount'))
                continue
            period_match = PDF_PERIOD_RE.search(line)
            if period_match:
                meta.period_start = self._parse_date(period_match.group('start'))
                meta.period_end = self._parse_date(period_match.group('end'))
                continue

            row_match = PDF_ROW_RE.match(line)
            if row_match:
                fields = {'date': row_match.group('date'), 'amount': row_match.group('amount')}
                if row_match.group('time'):
                    fields['start_time'] = row_match.group('time')
                if row_match.group('text'):
                    fields['journey'] = row_match.group('text').strip()
                records.append((line_no, fields))
            elif HAS_DATE_RE.search(line) or HAS_MONEY_RE.search(line):
                # Looks like a transaction row but lacks a required field
                diagnostics.skip(line_no, 'unrecognised_line')
        return records, meta

    def _build_transaction(self, line: int, fields: Dict[str, Any], invoice_id: str, owner_id: str, tz: ZoneInfo,
                           diagnostics: ParseDiagnostics) -> Optional[Transaction]:
        if 'amount' not in fields:
            diagnostics.skip(line, 'missing_amount')
            return None
        amount = parse_amount(fields['amount'])
        if amount is None:
            diagnostics.skip(line, 'amount_not_numeric')
            return None
        if amount < 0:
            diagnostics.skip(line, 'negative_amount')
            return None

        timestamp = None
        if 'timestamp' in fields:
            timestamp = self._parse_timestamp(fields['timestamp'], tz)
            if timestamp is None:
                diagnostics.skip(line, 'timestamp_unparseable')
                return None

        txn_date = None
        if 'date' in fields:
            txn_date = self._parse_date(fields['date'])
            if txn_date is None:
                diagnostics.skip(line, 'date_unparseable')
                return None

        if timestamp is not None:
            if txn_date is not None and txn_date != timestamp.date():
                diagnostics.skip(line, 'date_timestamp_mismatch')
                return None
            txn_date = timestamp.date()
        elif txn_date is None:
            diagnostics.skip(line, 'missing_date')
            return None
        elif 'start_time' in fields:
            start = self._parse_time(fields['start_time'])
            if start is not None:
                timestamp = datetime.combine(txn_date, start, tzinfo=tz)

        journey_text = str(fields.get('journey', '')).strip()
        journey_type = self._journey_type(fields.get('journey_type'), journey_text)
        zone_range = self._zone_range(fields.get('zones'), journey_text)
        peak = self._peak(fields.get('peak'), journey_text)

        txn_id = 'txn_' + _digest(invoice_id, line, txn_date.isoformat(), amount, timestamp.isoformat() if timestamp else '',
                                  journey_type.value, zone_range, peak, journey_text)[:20]
        return Transaction(id=txn_id,
                           invoice_id=invoice_id,
                           owner_id=owner_id,
                           date=txn_date,
                           amount=amount,
                           journey_type=journey_type,
                           zone_range=zone_range,
                           peak=peak,
                           timestamp=timestamp,
                           description=journey_text)

    def _parse_date(self, value: Any) -> Optional[date]:
        """Parse a calendar date; ISO dates never go through day-first guessing."""
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str) or not value.strip():
            return None
        text = value.strip()
        if ISO_DATE_RE.match(text):
            try:
                return date.fromisoformat(text)
            except ValueError:
                return None
        if not PLAUSIBLE_DATE_RE.search(text):
            return None
        try:
            return date_parser.parse(text, dayfirst=self.dayfirst, default=_DATEUTIL_DEFAULT).date()
        except (ValueError, TypeError, OverflowError):
            return None

    def _parse_timestamp(self, value: Any, tz: ZoneInfo) -> Optional[datetime]:
        """Parse a full instant and express it in the invoice timezone."""
        if isinstance(value, datetime):
            return localize(value, tz)
        if not isinstance(value, str) or not value.strip():
            return None
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            if not PLAUSIBLE_DATE_RE.search(text):
                return None
            try:
                parsed = date_parser.parse(text, dayfirst=self.dayfirst, default=_DATEUTIL_DEFAULT)
            except (ValueError, TypeError, OverflowError):
                return None
        return localize(parsed, tz)

    @staticmethod
    def _parse_time(value: Any) -> Optional[time]:
        match = re.match(r'^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$', str(value))
        if not match:
            return None
        hour, minute, second = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
        if hour > 23 or minute > 59 or second > 59:
            return None
        return time(hour, minute, second)

    @staticmethod
    def _journey_type(explicit: Any, journey_text: str) -> JourneyType:
        if explicit is not None:
            key = _normalize_key(str(explicit)).replace('_', ' ')
            if key in JOURNEY_TYPE_ALIASES:
                return JOURNEY_TYPE_ALIASES[key]
        for pattern, journey_type in JOURNEY_KEYWORDS:
            if pattern.search(journey_text):
                return journey_type
        return JourneyType.OTHER

    @staticmethod
    def _zone_range(explicit: Any, journey_text: str) -> Optional[Tuple[int, int]]:
        numbers: Iterable[int] = ()
        if isinstance(explicit, (list, tuple)):
            numbers = [int(n) for n in explicit if isinstance(n, int) or (isinstance(n, str) and n.strip().isdigit())]
        elif isinstance(explicit, int) and not isinstance(explicit, bool):
            numbers = [explicit]
        elif isinstance(explicit, str):
            numbers = [int(n) for n in re.findall(r'\d+', explicit)]
        else:
            match = ZONES_IN_TEXT_RE.search(journey_text)
            if match:
                numbers = [int(n) for n in match.groups() if n]

        numbers = list(numbers)
        if len(numbers) == 1:
            return (numbers[0], numbers[0])
        if len(numbers) == 2:
            return (min(numbers), max(numbers))
        return None

    @staticmethod
    def _peak(explicit: Any, journey_text: str) -> Optional[bool]:
        if isinstance(explicit, bool):
            return explicit
        if explicit is not None:
            return PEAK_VALUES.get(str(explicit).strip().lower())
        lowered = journey_text.lower()
        if 'off-peak' in lowered or 'off peak' in lowered:
            return False
        if re.search(r'\bpeak\b', lowered):
            return True
        return None
