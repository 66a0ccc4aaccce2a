"""
Date Selector: validates and normalizes a user's calendar selection.
"""

from datetime import date, datetime
from typing import Iterable, List, Optional, Union

from ..errors import InvalidDateFormat, TooManyDates
from ..models.core import SelectedDateSet
from ..utils.config import config
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class DateSelector:
    """Turn raw calendar input into a sorted, deduplicated ``SelectedDateSet``.

    Pure validation; the ledger is never consulted.
    """

    def __init__(self, max_dates: Optional[int] = None):
        self.max_dates = max_dates if max_dates is not None else config.ledger.max_selected_dates

    def normalize(self, raw_dates: Iterable[Union[str, date]], invoice_id: str, owner_id: str) -> SelectedDateSet:
        """
        Validate a selection.

        Args:
            raw_dates: ISO ``YYYY-MM-DD`` strings, dates or datetimes
            invoice_id: Invoice the selection is calculated against
            owner_id: Owner of the selection

        Returns:
            SelectedDateSet with unique dates in chronological order

        Raises:
            InvalidDateFormat: If any entry is not a calendar date
            TooManyDates: If the deduplicated set exceeds the maximum
        """
        parsed = set()
        invalid: List[object] = []
        for raw in raw_dates:
            value = self._parse(raw)
            if value is None:
                invalid.append(raw)
            else:
                parsed.add(value)

        if invalid:
            raise InvalidDateFormat(invalid)
        if len(parsed) > self.max_dates:
            raise TooManyDates(len(parsed), self.max_dates)

        dates = tuple(sorted(parsed))
        logger.debug(f'Normalized {len(dates)} selected dates for invoice {invoice_id}')
        return SelectedDateSet(dates=dates, invoice_id=invoice_id, owner_id=owner_id)

    @staticmethod
    def _parse(raw: object) -> Optional[date]:
        # datetime is a subclass of date, so test it first
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        if not isinstance(raw, str):
            return None
        text = raw.strip()
        # Browsers send toISOString() values; keep only the calendar part
        if 'T' in text:
            text = text.split('T', 1)[0]
        if len(text) != 10:
            return None
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None
