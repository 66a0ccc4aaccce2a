"""
Request envelope: the router's classified, validated unit of work.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Optional, Sequence, Tuple, Union

from ..errors import CapacityExceeded, MalformedInput, TenancyViolation, TooManyDates
from ..utils.config import config
from .core import SourceFormat

RawDate = Union[str, date]


class RequestKind(str, Enum):
    """Kinds of request the router accepts."""
    INVOICE_UPLOAD = 'invoice_upload'
    COST_CALCULATION = 'cost_calculation'
    INVOICE_CHAT = 'invoice_chat'
    GENERAL_DOCUMENT_CHAT = 'general_document_chat'
    COMBINED_CALCULATION_AND_CHAT = 'combined_calculation_and_chat'


@dataclass(frozen=True)
class RequestPayload:
    """Variant-specific request data. Which fields are set decides the kind."""
    file_bytes: Optional[bytes] = None
    declared_format: Optional[SourceFormat] = None
    filename: Optional[str] = None
    dates: Tuple[RawDate, ...] = ()
    query: Optional[str] = None
    invoice_id: Optional[str] = None
    timezone: Optional[str] = None

    @property
    def has_file(self) -> bool:
        return bool(self.file_bytes)

    @property
    def has_dates(self) -> bool:
        return len(self.dates) > 0

    @property
    def has_query(self) -> bool:
        return bool(self.query and self.query.strip())

    def after_upload(self, invoice_id: str) -> Optional['RequestPayload']:
        """Payload left to run once an upload stored ``invoice_id``; None if nothing is left."""
        if not self.has_dates and not self.has_query:
            return None
        return replace(self, file_bytes=None, declared_format=None, filename=None, invoice_id=invoice_id)


def _calendar_key(raw: object) -> object:
    # Counts the same day once whatever form it was sent in
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, str):
        text = raw.strip().split('T', 1)[0]
        try:
            return date.fromisoformat(text)
        except ValueError:
            return text
    return raw


def classify(payload: RequestPayload) -> RequestKind:
    """Classify a payload. The checks run in this exact precedence order."""
    if payload.has_file:
        return RequestKind.INVOICE_UPLOAD
    if payload.has_dates and not payload.has_query:
        return RequestKind.COST_CALCULATION
    if payload.has_query and not payload.has_dates:
        if payload.invoice_id:
            return RequestKind.INVOICE_CHAT
        return RequestKind.GENERAL_DOCUMENT_CHAT
    if payload.has_dates and payload.has_query:
        return RequestKind.COMBINED_CALCULATION_AND_CHAT
    raise MalformedInput('Request carries no invoice file, date selection or query')


def infer_format(filename: Optional[str]) -> Optional[SourceFormat]:
    """Guess the invoice format from a file extension."""
    if not filename:
        return None
    suffix = PurePath(filename).suffix.lower().lstrip('.')
    try:
        return SourceFormat(suffix)
    except ValueError:
        return None


@dataclass(frozen=True)
class RequestEnvelope:
    """Classified request. Build with ``RequestEnvelope.create``."""
    kind: RequestKind
    owner_id: str
    session_id: str
    payload: RequestPayload

    @classmethod
    def create(cls,
               owner_id: str,
               session_id: str,
               file_bytes: Optional[bytes] = None,
               declared_format: Optional[Union[SourceFormat, str]] = None,
               filename: Optional[str] = None,
               dates: Optional[Sequence[RawDate]] = None,
               query: Optional[str] = None,
               invoice_id: Optional[str] = None,
               timezone: Optional[str] = None,
               max_dates: Optional[int] = None,
               max_upload_bytes: Optional[int] = None) -> 'RequestEnvelope':
        """Validate and classify an incoming request.

        Capacity limits are checked here, before any component runs.

        Raises:
            TenancyViolation: If no owner is given
            CapacityExceeded: If the file or the date selection is too large
            MalformedInput: If required fields for the request kind are missing
        """
        if not owner_id or not owner_id.strip():
            raise TenancyViolation('Request has no owner')
        if not session_id or not session_id.strip():
            raise MalformedInput('Request has no session')

        max_dates = max_dates if max_dates is not None else config.ledger.max_selected_dates
        max_upload_bytes = max_upload_bytes if max_upload_bytes is not None else config.ledger.max_upload_bytes

        fmt = None
        if file_bytes:
            if len(file_bytes) > max_upload_bytes:
                raise CapacityExceeded(f'Uploaded file is {len(file_bytes)} bytes, maximum is {max_upload_bytes}')
            if declared_format is not None:
                try:
                    fmt = SourceFormat(declared_format)
                except ValueError:
                    raise MalformedInput(f'Unsupported invoice format: {declared_format}')
            else:
                fmt = infer_format(filename)
            if fmt is None:
                raise MalformedInput(f'Cannot determine invoice format for {filename or "upload"}')

        raw_dates = tuple(dates or ())
        distinct = {_calendar_key(d) for d in raw_dates}
        if len(distinct) > max_dates:
            raise TooManyDates(len(distinct), max_dates)

        payload = RequestPayload(file_bytes=file_bytes or None,
                                 declared_format=fmt,
                                 filename=filename,
                                 dates=raw_dates,
                                 query=query.strip() if query and query.strip() else None,
                                 invoice_id=invoice_id or None,
                                 timezone=timezone)
        kind = classify(payload)

        if kind in (RequestKind.COST_CALCULATION, RequestKind.COMBINED_CALCULATION_AND_CHAT) and not payload.invoice_id:
            raise MalformedInput('A date selection needs an invoice to calculate against')

        return cls(kind=kind, owner_id=owner_id, session_id=session_id, payload=payload)

    def cascade(self, invoice_id: str) -> Optional['RequestEnvelope']:
        """Follow-up envelope for the dates/query that arrived alongside an upload."""
        remaining = self.payload.after_upload(invoice_id)
        if remaining is None:
            return None
        return RequestEnvelope(kind=classify(remaining), owner_id=self.owner_id, session_id=self.session_id, payload=remaining)
