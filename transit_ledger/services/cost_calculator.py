"""
Cost Calculator: matches ledger transactions to a date selection.
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence

from ..errors import TenancyViolation
from ..models.core import CostBreakdown, DayBreakdown, JourneyType, SelectedDateSet, Transaction, transaction_order
from ..utils.config import config
from ..utils.logging_config import get_logger, log_security_event
from ..utils.money import ZERO, exact_sum, round_money

logger = get_logger(__name__)


class FareCapPolicy(Protocol):
    """Pluggable fare rule deciding the cap for one day of travel."""

    def cap_for(self, day: date, transactions: Sequence[Transaction]) -> Optional[Decimal]:
        ...


class DailyCapPolicy:
    """Flat cap applied to every day's total."""

    def __init__(self, cap: Decimal):
        if cap < 0:
            raise ValueError('Daily cap must be non-negative')
        self.cap = cap

    def cap_for(self, day: date, transactions: Sequence[Transaction]) -> Optional[Decimal]:
        return self.cap


def default_cap_policy() -> Optional[FareCapPolicy]:
    """Cap policy from configuration, if a daily cap is set."""
    if config.ledger.daily_cap is None:
        return None
    return DailyCapPolicy(config.ledger.daily_cap)


class CostCalculator:
    """Deterministic, itemized cost breakdown for a ``SelectedDateSet``.

    Money is summed exactly as ``Decimal`` and rounded half-to-even once, when
    the breakdown is assembled. The headline total uses capped daily totals;
    the journey-type and zone-range subtotals are raw spend.
    """

    def __init__(self, cap_policy: Optional[FareCapPolicy] = None):
        self.cap_policy = cap_policy

    def calculate(self, transactions: Sequence[Transaction], selected: SelectedDateSet) -> CostBreakdown:
        """
        Calculate the cost of the selected dates.

        Args:
            transactions: Transactions of the selection's invoice
            selected: Normalized date selection

        Returns:
            CostBreakdown; dates without travel are listed in ``unmatched_dates``

        Raises:
            TenancyViolation: If a transaction belongs to another owner
        """
        by_date: Dict[date, List[Transaction]] = defaultdict(list)
        for txn in transactions:
            if txn.owner_id != selected.owner_id:
                log_security_event(logger, f'transaction {txn.id} of another owner passed to calculation for {selected.owner_id}')
                raise TenancyViolation('Transaction owner does not match selection owner', owner_id=selected.owner_id)
            by_date[txn.date].append(txn)

        per_day: Dict[date, DayBreakdown] = {}
        unmatched: List[date] = []
        by_journey_type: Dict[JourneyType, Decimal] = defaultdict(lambda: ZERO)
        by_zone_range: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        total = ZERO
        raw_total = ZERO

        for day in selected.dates:
            day_transactions = sorted(by_date.get(day, ()), key=transaction_order)
            if not day_transactions:
                unmatched.append(day)
                per_day[day] = DayBreakdown(date=day, transaction_count=0, raw_total=ZERO, daily_total=ZERO)
                continue

            day_raw = exact_sum(t.amount for t in day_transactions)
            daily_total = day_raw
            cap = self.cap_policy.cap_for(day, day_transactions) if self.cap_policy else None
            capped = cap is not None and day_raw > cap
            if capped:
                daily_total = cap
                logger.debug(f'Capped {day.isoformat()} from {day_raw} to {cap}')

            for txn in day_transactions:
                by_journey_type[txn.journey_type] += txn.amount
                by_zone_range[txn.zone_key] += txn.amount

            total += daily_total
            raw_total += day_raw
            per_day[day] = DayBreakdown(date=day,
                                        transaction_count=len(day_transactions),
                                        raw_total=round_money(day_raw),
                                        daily_total=round_money(daily_total),
                                        transactions=tuple(day_transactions),
                                        capped=capped,
                                        cap=round_money(cap) if cap is not None else None)

        return CostBreakdown(total_amount=round_money(total),
                             raw_total=round_money(raw_total),
                             per_day=per_day,
                             by_journey_type={jt: round_money(v) for jt, v in sorted(by_journey_type.items(), key=lambda kv: kv[0].value)},
                             by_zone_range={k: round_money(v) for k, v in sorted(by_zone_range.items())},
                             date_range=selected.date_range,
                             unmatched_dates=unmatched)
