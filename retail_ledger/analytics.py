"""
Analytics Aggregator Module

Read-only projections over the Transaction Log: monthly balance deltas,
income/expense category breakdowns, period summaries and spending trends.
Nothing here writes to storage, and every figure can be recomputed from the
log at any time.

The previous-month balance is reconstructed (current balance minus this
month's completed activity), not stored. That is only sound because log rows
are immutable and never back-dated.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
from enum import Enum
import calendar

from .accounts import AccountStore
from .currency import Currency, Money
from .errors import ValidationError
from .logging_config import get_logger
from .storage import StorageInterface
from .transactions import Transaction, TransactionFilter, TransactionLog, TransactionStatus, is_credit


INCOME = "income"
EXPENSE = "expense"
OTHER_CATEGORY = "other"

_PERCENT = Decimal("0.01")
_HUNDRED = Decimal("100")


class ReportPeriod(Enum):
    """Trailing report windows"""
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"

    @property
    def group_by(self) -> str:
        """Bucket size used for spending trends"""
        return {
            ReportPeriod.WEEK: "day",
            ReportPeriod.MONTH: "day",
            ReportPeriod.QUARTER: "week",
            ReportPeriod.YEAR: "month",
        }[self]

    def resolve(self, as_of: datetime) -> 'Period':
        """The window ending at `as_of`"""
        if self == ReportPeriod.WEEK:
            start = as_of - timedelta(days=7)
        elif self == ReportPeriod.MONTH:
            start = shift_months(as_of, -1)
        elif self == ReportPeriod.QUARTER:
            start = shift_months(as_of, -3)
        else:
            start = shift_months(as_of, -12)
        return Period(start, as_of)


@dataclass(frozen=True)
class Period:
    """Closed time window [start, end]"""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValidationError("Period start must not be after its end")

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def previous(self) -> 'Period':
        """The window of equal length immediately before this one"""
        length = self.end - self.start
        return Period(self.start - length, self.start)


@dataclass
class MonthlyDelta:
    account_id: str
    current_balance: Money
    previous_month_balance: Money
    change_amount: Money
    change_percent: Decimal
    as_of: datetime

    def to_dict(self) -> Dict:
        return {
            "account_id": self.account_id,
            "currency": self.current_balance.currency.code,
            "current_balance": str(self.current_balance.amount),
            "previous_month_balance": str(self.previous_month_balance.amount),
            "change_amount": str(self.change_amount.amount),
            "change_percent": str(self.change_percent),
            "as_of": self.as_of.isoformat(),
        }


@dataclass
class CategoryBucket:
    category: str
    amount: Money
    percentage: Decimal
    type: str  # income or expense

    def to_dict(self) -> Dict:
        return {
            "category": self.category,
            "amount": str(self.amount.amount),
            "currency": self.amount.currency.code,
            "percentage": str(self.percentage),
            "type": self.type,
        }


@dataclass
class PeriodSummary:
    owner_id: str
    period: Period
    total_income: Money
    total_spent: Money
    net_change: Money
    transaction_count: int
    top_category: Optional[str]
    previous_income: Money
    previous_spent: Money
    income_change_percent: Decimal
    spending_change_percent: Decimal

    def to_dict(self) -> Dict:
        return {
            "owner_id": self.owner_id,
            "start": self.period.start.isoformat(),
            "end": self.period.end.isoformat(),
            "currency": self.total_income.currency.code,
            "total_income": str(self.total_income.amount),
            "total_spent": str(self.total_spent.amount),
            "net_change": str(self.net_change.amount),
            "transaction_count": self.transaction_count,
            "top_category": self.top_category,
            "previous_income": str(self.previous_income.amount),
            "previous_spent": str(self.previous_spent.amount),
            "income_change_percent": str(self.income_change_percent),
            "spending_change_percent": str(self.spending_change_percent),
        }


@dataclass
class TrendPoint:
    label: str
    amount: Money

    def to_dict(self) -> Dict:
        return {"label": self.label, "amount": str(self.amount.amount)}


def shift_months(moment: datetime, months: int) -> datetime:
    """Same day-of-month `months` away, clamped to the month's last day"""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def change_percent(change: Decimal, previous: Decimal) -> Decimal:
    """
    Percentage change relative to |previous|, to two decimal places.

    A zero baseline gives +100, -100 or 0 by the sign of the change.
    """
    if previous == 0:
        if change > 0:
            return Decimal("100.00")
        if change < 0:
            return Decimal("-100.00")
        return Decimal("0.00")
    return (change / abs(previous) * _HUNDRED).quantize(_PERCENT, rounding=ROUND_HALF_UP)


def normalize_category(category: Optional[str]) -> str:
    cleaned = (category or "").strip().lower()
    return cleaned or OTHER_CATEGORY


class AnalyticsAggregator:
    """Derived, read-only views over accounts and the transaction log"""

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        transaction_log: TransactionLog,
        default_currency: Currency = Currency.USD,
        top_categories: int = 5,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.log = transaction_log
        self.default_currency = default_currency
        self.top_categories = top_categories
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("retail_ledger.analytics")

    def monthly_delta(self, account_id: str, as_of: Optional[datetime] = None) -> MonthlyDelta:
        """
        Balance change of one account over the calendar month containing `as_of`

        Args:
            account_id: Account to report on
            as_of: Reference instant (now if omitted)

        Returns:
            MonthlyDelta with current and reconstructed previous-month balance

        Raises:
            AccountNotFoundError: Unknown account
            ValidationError: The account did not exist at `as_of`
        """
        as_of = self._as_of(as_of)
        start = month_start(as_of)

        with self.storage.snapshot():
            account = self.accounts.get(account_id)
            history = self.log.list_for_account(
                account_id, TransactionFilter(status=TransactionStatus.COMPLETED)
            )

        if account.created_at > as_of:
            raise ValidationError(f"Account {account_id} did not exist at {as_of.isoformat()}")

        current = account.balance
        month_net = Money.zero(account.currency)
        for transaction in history:
            effect = transaction.signed_amount(account_id)
            if transaction.created_at > as_of:
                current = current - effect
            elif transaction.created_at >= start:
                month_net = month_net + effect

        if account.created_at >= start:
            previous = Money.zero(account.currency)
        else:
            previous = current - month_net

        change = current - previous
        return MonthlyDelta(
            account_id=account_id,
            current_balance=current,
            previous_month_balance=previous,
            change_amount=change,
            change_percent=change_percent(change.amount, previous.amount),
            as_of=as_of
        )

    def category_breakdown(
        self,
        owner_id: str,
        period: Union[ReportPeriod, Period, str] = ReportPeriod.MONTH,
        as_of: Optional[datetime] = None,
        currency: Optional[Currency] = None,
        top_n: Optional[int] = None
    ) -> List[CategoryBucket]:
        """
        Completed activity on the owner's accounts, bucketed by category and type

        Expense buckets come first, then income buckets, each sorted by amount.
        Percentages are relative to the total of the bucket's own type. Buckets
        beyond the top N of a type are folded into that type's "other" bucket.
        Transfers between two of the owner's own accounts count on both sides.
        """
        window = self._resolve_period(period, as_of)
        currency = currency or self.default_currency
        totals = self._category_totals(owner_id, window, currency)[0]
        limit = self.top_categories if top_n is None else top_n

        buckets = []
        for kind in (EXPENSE, INCOME):
            buckets.extend(self._collapse(totals[kind], kind, currency, limit))
        return buckets

    def period_summary(
        self,
        owner_id: str,
        period: Union[ReportPeriod, Period, str] = ReportPeriod.MONTH,
        as_of: Optional[datetime] = None,
        currency: Optional[Currency] = None
    ) -> PeriodSummary:
        """Income, spending and net change for a window, compared with the window before it"""
        window = self._resolve_period(period, as_of)
        currency = currency or self.default_currency

        totals, count = self._category_totals(owner_id, window, currency)
        previous_totals = self._category_totals(owner_id, window.previous(), currency)[0]

        income = self._sum(totals[INCOME].values())
        spent = self._sum(totals[EXPENSE].values())
        previous_income = self._sum(previous_totals[INCOME].values())
        previous_spent = self._sum(previous_totals[EXPENSE].values())

        top_category = None
        if totals[EXPENSE]:
            top_category = max(totals[EXPENSE].items(), key=lambda item: (item[1], item[0]))[0]

        return PeriodSummary(
            owner_id=owner_id,
            period=window,
            total_income=Money(income, currency),
            total_spent=Money(spent, currency),
            net_change=Money(income - spent, currency),
            transaction_count=count,
            top_category=top_category,
            previous_income=Money(previous_income, currency),
            previous_spent=Money(previous_spent, currency),
            income_change_percent=change_percent(income - previous_income, previous_income),
            spending_change_percent=change_percent(spent - previous_spent, previous_spent)
        )

    def spending_trend(
        self,
        owner_id: str,
        period: Union[ReportPeriod, str] = ReportPeriod.MONTH,
        as_of: Optional[datetime] = None,
        currency: Optional[Currency] = None
    ) -> List[TrendPoint]:
        """Expense totals per day, ISO week or month (by period length), oldest first"""
        report_period = self._report_period(period)
        window = report_period.resolve(self._as_of(as_of))
        currency = currency or self.default_currency
        label_format = {"day": "%Y-%m-%d", "week": "%G-W%V", "month": "%Y-%m"}[report_period.group_by]

        grouped: Dict[str, Decimal] = {}
        for transaction, account_id in self._owner_legs(owner_id, window, currency):
            if is_credit(transaction.effective_type(account_id)):
                continue
            label = transaction.created_at.strftime(label_format)
            grouped[label] = grouped.get(label, Decimal("0")) + transaction.amount.amount

        return [TrendPoint(label, Money(amount, currency)) for label, amount in sorted(grouped.items())]

    def replay_balance(self, account_id: str) -> Money:
        """Opening balance plus every completed row touching the account"""
        with self.storage.snapshot():
            account = self.accounts.get(account_id)
            history = self.log.list_for_account(
                account_id, TransactionFilter(status=TransactionStatus.COMPLETED)
            )

        balance = account.opening_balance
        for transaction in history:
            balance = balance + transaction.signed_amount(account_id)
        return balance

    def verify_balance(self, account_id: str) -> bool:
        """True when the stored balance equals the balance replayed from the log"""
        with self.storage.snapshot():
            stored = self.accounts.get(account_id).balance
            replayed = self.replay_balance(account_id)

        if stored != replayed:
            self.logger.error(
                f"Balance mismatch on account {account_id}: stored {stored.to_string()}, "
                f"replayed {replayed.to_string()}"
            )
            return False
        return True

    def _as_of(self, as_of: Optional[datetime]) -> datetime:
        if as_of is None:
            return self._clock()
        if as_of.tzinfo is None:
            return as_of.replace(tzinfo=timezone.utc)
        return as_of

    def _report_period(self, period: Union[ReportPeriod, str]) -> ReportPeriod:
        if isinstance(period, ReportPeriod):
            return period
        try:
            return ReportPeriod(period)
        except ValueError:
            raise ValidationError(f"Unknown period: {period}")

    def _resolve_period(self, period: Union[ReportPeriod, Period, str],
                        as_of: Optional[datetime]) -> Period:
        if isinstance(period, Period):
            return period
        return self._report_period(period).resolve(self._as_of(as_of))

    def _owner_legs(self, owner_id: str, window: Period,
                    currency: Currency) -> Iterable[Tuple[Transaction, str]]:
        """(transaction, account_id) for every side of a completed row on one of the owner's accounts"""
        with self.storage.snapshot():
            account_ids: Set[str] = {
                account.id for account in self.accounts.list_owner_accounts(owner_id)
                if account.currency == currency
            }
            history = self.log.list_for_accounts(
                account_ids, TransactionFilter(status=TransactionStatus.COMPLETED)
            ) if account_ids else []

        legs = []
        for transaction in history:
            if not window.contains(transaction.created_at):
                continue
            for account_id in (transaction.from_account_id, transaction.to_account_id):
                if account_id in account_ids:
                    legs.append((transaction, account_id))
        return legs

    def _category_totals(self, owner_id: str, window: Period,
                         currency: Currency) -> Tuple[Dict[str, Dict[str, Decimal]], int]:
        totals: Dict[str, Dict[str, Decimal]] = {INCOME: {}, EXPENSE: {}}
        seen = set()
        for transaction, account_id in self._owner_legs(owner_id, window, currency):
            kind = INCOME if is_credit(transaction.effective_type(account_id)) else EXPENSE
            category = normalize_category(transaction.category)
            totals[kind][category] = totals[kind].get(category, Decimal("0")) + transaction.amount.amount
            seen.add(transaction.transaction_id)
        return totals, len(seen)

    def _collapse(self, totals: Dict[str, Decimal], kind: str,
                  currency: Currency, limit: int) -> List[CategoryBucket]:
        if not totals:
            return []

        ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        if limit and len(ranked) > limit:
            kept = dict(ranked[:limit])
            overflow = sum((amount for _, amount in ranked[limit:]), Decimal("0"))
            kept[OTHER_CATEGORY] = kept.get(OTHER_CATEGORY, Decimal("0")) + overflow
            ranked = sorted(kept.items(), key=lambda item: (-item[1], item[0]))

        total = self._sum(totals.values())
        return [
            CategoryBucket(
                category=category,
                amount=Money(amount, currency),
                percentage=(amount / total * _HUNDRED).quantize(_PERCENT, rounding=ROUND_HALF_UP)
                if total else Decimal("0.00"),
                type=kind
            )
            for category, amount in ranked
        ]

    @staticmethod
    def _sum(values: Iterable[Decimal]) -> Decimal:
        return sum(values, Decimal("0"))
