"""
Account Store Module

Owns account records and their balances: the single source of truth for how
much money is in an account. `adjust_balance` is the only way a balance
changes, and the Transfer Processor is its only caller.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Union
from enum import Enum
import secrets
import uuid

from .currency import Money, Currency, fits_precision, to_decimal
from .errors import (
    AccountClosedError,
    AccountNotFoundError,
    AccountNumberUnavailableError,
    ConcurrentModificationError,
    InsufficientFundsError,
    ValidationError,
)
from .events import DomainEvent, EventDispatcher, create_account_event
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class AccountType(Enum):
    """Retail account products"""
    SAVINGS = "savings"
    CURRENT = "current"
    INVESTMENT = "investment"


class AccountStatus(Enum):
    """Account lifecycle status"""
    ACTIVE = "active"
    CLOSED = "closed"   # Terminal; rejects every transaction


@dataclass
class Account(StorageRecord):
    """
    Customer account. `balance` is mutated only through AccountStore.adjust_balance;
    `version` increases by one with every balance change.
    """
    owner_id: str
    number: str
    account_type: AccountType
    name: str
    currency: Currency
    balance: Money
    opening_balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    interest_rate: Optional[Decimal] = None
    daily_limit: Optional[Money] = None
    monthly_limit: Optional[Money] = None
    version: int = 0
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        for label, value in (("Balance", self.balance),
                             ("Opening balance", self.opening_balance),
                             ("Daily limit", self.daily_limit),
                             ("Monthly limit", self.monthly_limit)):
            if value is not None and value.currency != self.currency:
                raise ValueError(f"{label} currency must match account currency")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def can_transact(self) -> bool:
        """Check if account can process transactions"""
        return self.status == AccountStatus.ACTIVE


MoneyInput = Union[Money, Decimal, str, int]


class AccountStore:
    """
    Account lifecycle and balance ownership.

    Lifecycle operations (create, rename, close) take the per-account lock
    themselves. `adjust_balance` does not: the caller holds the locks of every
    account it touches and wraps the adjustments in `storage.atomic()`.
    """

    def __init__(
        self,
        storage: StorageInterface,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[AccountLockManager] = None,
        default_currency: Currency = Currency.USD,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.accounts_table = "accounts"
        self.default_currency = default_currency
        self.lock_manager = lock_manager or AccountLockManager()
        self._event_dispatcher = event_dispatcher
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("retail_ledger.accounts")

    def _publish_event(self, event_type: DomainEvent, account: Account) -> None:
        """Publish a domain event if event dispatcher is available"""
        if self._event_dispatcher:
            self._event_dispatcher.publish(create_account_event(event_type, account))

    def create_account(
        self,
        owner_id: str,
        account_type: AccountType,
        name: str,
        initial_balance: MoneyInput = Decimal("0"),
        currency: Optional[Currency] = None,
        policy=None,
        interest_rate: Optional[Decimal] = None,
        daily_limit: Optional[MoneyInput] = None,
        monthly_limit: Optional[MoneyInput] = None
    ) -> Account:
        """
        Open a new account

        Args:
            owner_id: Owner id supplied by the authentication service
            account_type: Product type
            name: Display label
            initial_balance: Opening balance (checked against the policy minimum)
            currency: Account currency (store default if omitted)
            policy: AccountOpeningPolicy; zero minimums and one-per-type if omitted
            interest_rate: Annual rate, informational
            daily_limit: Optional cap on debits per calendar day
            monthly_limit: Optional cap on debits per calendar month

        Returns:
            Created Account

        Raises:
            ValidationError: Bad input or the opening policy rejects the account
            AccountNumberUnavailableError: No free account number was found (retryable)
        """
        from .policies import AccountOpeningPolicy

        if not owner_id:
            raise ValidationError("owner_id is required")
        if not isinstance(account_type, AccountType):
            try:
                account_type = AccountType(account_type)
            except ValueError:
                raise ValidationError(f"Unknown account type: {account_type}")
        if not name or not name.strip():
            raise ValidationError("Account name is required")

        currency = currency or self.default_currency
        opening = self._to_money(initial_balance, currency, "initial_balance")
        daily = self._to_money(daily_limit, currency, "daily_limit") if daily_limit is not None else None
        monthly = self._to_money(monthly_limit, currency, "monthly_limit") if monthly_limit is not None else None
        try:
            rate = to_decimal(interest_rate) if interest_rate is not None else None
        except ValueError as e:
            raise ValidationError(f"Invalid interest_rate: {e}")
        policy = policy or AccountOpeningPolicy()

        with self.lock_manager.acquire([f"owner:{owner_id}"]):
            policy.check(account_type, opening, self.list_owner_accounts(owner_id))

            now = self._clock()
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                number=self._generate_account_number(),
                account_type=account_type,
                name=name.strip(),
                currency=currency,
                balance=opening,
                opening_balance=opening,
                interest_rate=rate,
                daily_limit=daily,
                monthly_limit=monthly
            )
            self.storage.insert(self.accounts_table, account.id, self._account_to_dict(account))

        log_action(
            self.logger, "info", f"Opened {account_type.value} account {account.id}",
            user_id=owner_id, action="account.create", resource=f"account:{account.id}",
            account_id=account.id, amount=opening, extra={"account_type": account_type.value}
        )
        self._publish_event(DomainEvent.ACCOUNT_CREATED, account)
        return account

    def get(self, account_id: str) -> Account:
        """Get account by ID or raise AccountNotFoundError"""
        data = self.storage.load(self.accounts_table, account_id) if account_id else None
        if not data:
            raise AccountNotFoundError(account_id)
        return self._account_from_dict(data)

    def get_by_number(self, number: str) -> Account:
        """Get account by external number or raise AccountNotFoundError"""
        records = self.storage.find(self.accounts_table, {"number": number}) if number else []
        if not records:
            raise AccountNotFoundError(number)
        return self._account_from_dict(records[0])

    def find_active_by_number(self, number: str) -> Optional[Account]:
        """Active account with this number, or None"""
        for data in self.storage.find(self.accounts_table, {"number": number}):
            account = self._account_from_dict(data)
            if account.is_active:
                return account
        return None

    def find_active_by_owners(self, owner_ids: Iterable[str]) -> List[Account]:
        """Active accounts held by any of the owners"""
        wanted = set(owner_ids)
        if not wanted:
            return []
        return [
            account for account in self.list_accounts()
            if account.owner_id in wanted and account.is_active
        ]

    def list_owner_accounts(self, owner_id: str,
                            status: Optional[AccountStatus] = None) -> List[Account]:
        """All accounts of an owner, optionally filtered by status"""
        filters = {"owner_id": owner_id}
        if status:
            filters["status"] = status.value
        return [self._account_from_dict(data) for data in self.storage.find(self.accounts_table, filters)]

    def list_accounts(self) -> List[Account]:
        return [self._account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def adjust_balance(
        self,
        account_id: str,
        delta: Money,
        expected_prior_balance: Optional[Money] = None
    ) -> Account:
        """
        Apply a signed delta to an account balance

        Must run with the account's lock held, normally inside a
        `storage.atomic()` block that also covers the other side of a transfer.

        Raises:
            AccountNotFoundError: Unknown account
            AccountClosedError: Account is closed
            ValidationError: Delta currency differs from the account currency
            ConcurrentModificationError: Balance is not the expected prior balance
            InsufficientFundsError: The balance would go negative
        """
        account = self.get(account_id)
        if not account.can_transact():
            raise AccountClosedError(account_id)
        if delta.currency != account.currency:
            raise ValidationError(
                f"Cannot apply {delta.currency.code} to {account.currency.code} account {account_id}"
            )
        if expected_prior_balance is not None and expected_prior_balance != account.balance:
            raise ConcurrentModificationError(
                f"Balance of account {account_id} changed concurrently",
                {
                    "account_id": account_id,
                    "expected": str(expected_prior_balance.amount),
                    "actual": str(account.balance.amount),
                }
            )

        new_balance = account.balance + delta
        if new_balance.is_negative():
            raise InsufficientFundsError(
                f"Insufficient funds in account {account_id}: balance "
                f"{account.balance.to_string()}, requested {abs(delta).to_string()}",
                {"account_id": account_id, "balance": str(account.balance.amount),
                 "requested": str(abs(delta).amount)}
            )

        account.balance = new_balance
        account.version += 1
        account.updated_at = self._clock()
        self._save_account(account)
        return account

    def rename_account(self, account_id: str, name: str) -> Account:
        """Change the display label of an account"""
        if not name or not name.strip():
            raise ValidationError("Account name is required")

        with self.lock_manager.acquire([account_id]):
            account = self.get(account_id)
            if not account.is_active:
                raise AccountClosedError(account_id)
            account.name = name.strip()
            account.updated_at = self._clock()
            self._save_account(account)

        self._publish_event(DomainEvent.ACCOUNT_UPDATED, account)
        return account

    def close_account(self, account_id: str, reason: Optional[str] = None) -> Account:
        """
        Close an account whose balance is zero

        Raises:
            AccountNotFoundError: Unknown account
            AccountClosedError: Account is already closed
            ValidationError: Balance is not zero
        """
        with self.lock_manager.acquire([account_id]):
            account = self.get(account_id)
            if not account.is_active:
                raise AccountClosedError(account_id)
            if not account.balance.is_zero():
                raise ValidationError(
                    f"Cannot close account with non-zero balance: {account.balance.to_string()}",
                    {"account_id": account_id, "balance": str(account.balance.amount)}
                )

            now = self._clock()
            account.status = AccountStatus.CLOSED
            account.closed_at = now
            account.updated_at = now
            self._save_account(account)

        log_action(
            self.logger, "info", f"Closed account {account_id}",
            user_id=account.owner_id, action="account.close", resource=f"account:{account_id}",
            account_id=account_id,
            extra={"reason": reason} if reason else None
        )
        self._publish_event(DomainEvent.ACCOUNT_CLOSED, account)
        return account

    def _to_money(self, value: MoneyInput, currency: Currency, field_name: str) -> Money:
        if isinstance(value, Money):
            if value.currency != currency:
                raise ValidationError(f"{field_name} currency must be {currency.code}")
            return value
        try:
            amount = to_decimal(value)
        except ValueError as e:
            raise ValidationError(f"Invalid {field_name}: {e}")
        if not fits_precision(amount, currency):
            raise ValidationError(f"Invalid {field_name}: more than {currency.precision} decimal places for {currency.code}")
        return Money(amount, currency)

    def _generate_account_number(self) -> str:
        """Random 10-digit number, unique across all accounts"""
        for _ in range(20):
            number = str(1000000000 + secrets.randbelow(9000000000))
            if not self.storage.find(self.accounts_table, {"number": number}):
                return number
        raise AccountNumberUnavailableError("Could not allocate a unique account number")

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        result['currency'] = account.currency.code
        result['status'] = account.status.value
        result['balance'] = str(account.balance.amount)
        result['opening_balance'] = str(account.opening_balance.amount)
        result['interest_rate'] = str(account.interest_rate) if account.interest_rate is not None else None
        result['daily_limit'] = str(account.daily_limit.amount) if account.daily_limit else None
        result['monthly_limit'] = str(account.monthly_limit.amount) if account.monthly_limit else None
        result['closed_at'] = account.closed_at.isoformat() if account.closed_at else None
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]

        def money(key: str) -> Optional[Money]:
            if data.get(key) is None:
                return None
            return Money(Decimal(data[key]), currency)

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            number=data['number'],
            account_type=AccountType(data['account_type']),
            name=data['name'],
            currency=currency,
            balance=money('balance'),
            opening_balance=money('opening_balance'),
            status=AccountStatus(data['status']),
            interest_rate=Decimal(data['interest_rate']) if data.get('interest_rate') else None,
            daily_limit=money('daily_limit'),
            monthly_limit=money('monthly_limit'),
            version=data.get('version', 0),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None
        )
