"""
Error taxonomy shared by the parser, ledger, calculator and router.
"""

from typing import Iterable, Optional


class TransitLedgerError(Exception):
    """Base exception for all transit ledger errors."""
    pass


class MalformedInput(TransitLedgerError):
    """Input could not be parsed (unreadable file, invalid date, ...)."""
    pass


class InvalidDateFormat(MalformedInput):
    """One or more selected dates are not well-formed calendar dates."""

    def __init__(self, invalid_entries: Iterable[object]):
        self.invalid_entries = [str(entry) for entry in invalid_entries]
        super().__init__(f'Invalid calendar date(s): {", ".join(self.invalid_entries)}')


class TenancyViolation(TransitLedgerError):
    """A query would cross an owner boundary. Never recovered."""

    def __init__(self, message: str, owner_id: Optional[str] = None):
        self.owner_id = owner_id
        super().__init__(message)


class UpstreamUnavailable(TransitLedgerError):
    """An embedding, search or generation capability failed or timed out."""
    pass


class GenerationCancelled(UpstreamUnavailable):
    """Generation was cancelled by the caller before it completed."""
    pass


class CapacityExceeded(TransitLedgerError):
    """Request is larger than the configured limits."""
    pass


class TooManyDates(CapacityExceeded):
    """The deduplicated date selection exceeds the configured maximum."""

    def __init__(self, count: int, maximum: int):
        self.count = count
        self.maximum = maximum
        super().__init__(f'{count} dates selected, maximum is {maximum}')
