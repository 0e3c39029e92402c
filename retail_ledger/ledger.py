"""
Ledger Facade

Wires the storage backend, Account Store, Transaction Log, Transfer
Processor, Recipient Resolver, Analytics Aggregator and notifier together and
exposes the operations external collaborators (API, exporters, UI) call.
The owner id passed in is trusted: authentication happens upstream.
"""

from datetime import datetime
from typing import Callable, List, Optional

from .accounts import Account, AccountStatus, AccountStore, AccountType
from .analytics import AnalyticsAggregator, CategoryBucket, MonthlyDelta, PeriodSummary, TrendPoint
from .config import LedgerConfig, get_config
from .currency import Currency
from .customers import Customer, CustomerDirectory
from .errors import AccountNotFoundError, ValidationError
from .events import EventDispatcher
from .locks import AccountLockManager
from .logging_config import get_logger
from .notifications import (
    ChannelProvider,
    InAppChannelProvider,
    LogChannelProvider,
    TransactionNotifier,
    WebhookChannelProvider,
)
from .policies import AccountOpeningPolicy, DefaultOpeningPolicy
from .recipients import RecipientResolver
from .storage import StorageInterface, create_storage
from .transactions import Transaction, TransactionFilter, TransactionLog, TransactionType
from .transfers import TransferProcessor


MAX_PAGE_SIZE = 500


class Ledger:
    """Retail ledger with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LedgerConfig] = None,
        opening_policy: Optional[AccountOpeningPolicy] = None,
        notification_providers: Optional[List[ChannelProvider]] = None,
        enable_notifications: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.logger = get_logger("retail_ledger.ledger")

        currency = Currency.from_code(self.config.default_currency)
        self.events = EventDispatcher()
        self.locks = AccountLockManager(timeout=self.config.lock_timeout_seconds)

        self.customers = CustomerDirectory(self.storage)
        self.accounts = AccountStore(self.storage, self.events, self.locks, currency, clock)
        self.transactions = TransactionLog(self.storage)
        self.processor = TransferProcessor(
            self.storage, self.accounts, self.transactions, self.locks, self.events,
            lock_timeout=self.config.lock_timeout_seconds, clock=clock
        )
        self.recipients = RecipientResolver(self.accounts, self.customers)
        self.analytics = AnalyticsAggregator(
            self.storage, self.accounts, self.transactions, currency,
            top_categories=self.config.analytics_top_categories, clock=clock
        )
        self.opening_policy = opening_policy or DefaultOpeningPolicy.from_config(self.config)

        self.notifier: Optional[TransactionNotifier] = None
        if enable_notifications:
            providers = notification_providers
            if providers is None:
                providers = self._default_providers()
            self.notifier = TransactionNotifier(
                self.accounts, self.customers, providers,
                max_workers=self.config.notification_workers
            )
            self.notifier.attach(self.events)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'Ledger':
        """Build a ledger whose storage and policies come from configuration"""
        return cls(config=config or get_config())

    def _default_providers(self) -> List[ChannelProvider]:
        providers: List[ChannelProvider] = [LogChannelProvider(), InAppChannelProvider(self.storage)]
        if self.config.notification_webhook_url:
            providers.append(WebhookChannelProvider(
                self.config.notification_webhook_url, timeout=self.config.notification_timeout
            ))
        return providers

    # Owners

    def register_owner(self, full_name: str, phone: Optional[str] = None,
                       email: Optional[str] = None, owner_id: Optional[str] = None) -> Customer:
        return self.customers.create_customer(full_name, phone=phone, email=email, customer_id=owner_id)

    # Accounts

    def create_account(self, owner_id: str, account_type: AccountType, name: str,
                       initial_balance="0", currency: Optional[Currency] = None,
                       policy: Optional[AccountOpeningPolicy] = None, **options) -> Account:
        """Open an account; rejected below the type minimum or if the owner already has one of this type"""
        return self.accounts.create_account(
            owner_id, account_type, name, initial_balance,
            currency=currency, policy=policy or self.opening_policy, **options
        )

    def get_account(self, account_id: str, owner_id: Optional[str] = None) -> Account:
        """Account by id; when owner_id is given, accounts of other owners are reported as not found"""
        account = self.accounts.get(account_id)
        if owner_id is not None and account.owner_id != owner_id:
            raise AccountNotFoundError(account_id)
        return account

    def list_accounts(self, owner_id: str, status: Optional[AccountStatus] = None) -> List[Account]:
        return self.accounts.list_owner_accounts(owner_id, status)

    def rename_account(self, account_id: str, name: str, owner_id: Optional[str] = None) -> Account:
        self.get_account(account_id, owner_id)
        return self.accounts.rename_account(account_id, name)

    def close_account(self, account_id: str, owner_id: Optional[str] = None) -> Account:
        """Close an account; rejected unless its balance is zero"""
        self.get_account(account_id, owner_id)
        return self.accounts.close_account(account_id)

    # Money movement

    def transfer(self, from_account_id: str, to_account_id: str, amount, category: Optional[str] = "transfer",
                 description: str = "Fund transfer", transaction_id: Optional[str] = None,
                 owner_id: Optional[str] = None) -> Transaction:
        return self.processor.transfer(
            from_account_id, to_account_id, amount, category=category, description=description,
            transaction_id=transaction_id, owner_id=owner_id
        )

    def deposit(self, account_id: str, amount, category: Optional[str] = None, description: str = "Deposit",
                transaction_id: Optional[str] = None, owner_id: Optional[str] = None,
                transaction_type: TransactionType = TransactionType.DEPOSIT) -> Transaction:
        return self.processor.deposit(
            account_id, amount, category=category, description=description,
            transaction_id=transaction_id, owner_id=owner_id, transaction_type=transaction_type
        )

    def withdraw(self, account_id: str, amount, category: Optional[str] = None, description: str = "Withdrawal",
                 transaction_id: Optional[str] = None, owner_id: Optional[str] = None,
                 transaction_type: TransactionType = TransactionType.WITHDRAWAL) -> Transaction:
        return self.processor.withdraw(
            account_id, amount, category=category, description=description,
            transaction_id=transaction_id, owner_id=owner_id, transaction_type=transaction_type
        )

    def reverse(self, transaction_id: str, reason: str, owner_id: Optional[str] = None) -> Transaction:
        return self.processor.reverse(transaction_id, reason, owner_id=owner_id)

    def get_transaction(self, transaction_id: str, owner_id: Optional[str] = None) -> Transaction:
        """Transaction by id; when owner_id is given, rows touching none of their accounts are not found"""
        return self.processor.get_transaction(transaction_id, owner_id)

    def list_transactions(
        self,
        account_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        txn_filter: Optional[TransactionFilter] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Transaction]:
        """
        Transactions of one account, or of every account an owner holds, newest first

        When both ids are given the account must belong to the owner.
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")

        if account_id:
            self.get_account(account_id, owner_id)
            return self.transactions.list_for_account(account_id, txn_filter, limit, offset)
        if owner_id:
            account_ids = [account.id for account in self.accounts.list_owner_accounts(owner_id)]
            if not account_ids:
                return []
            return self.transactions.list_for_accounts(account_ids, txn_filter, limit, offset)
        raise ValidationError("Either account_id or owner_id is required")

    # Analytics

    def monthly_delta(self, account_id: str, as_of: Optional[datetime] = None,
                      owner_id: Optional[str] = None) -> MonthlyDelta:
        self.get_account(account_id, owner_id)
        return self.analytics.monthly_delta(account_id, as_of)

    def category_breakdown(self, owner_id: str, period="month", as_of: Optional[datetime] = None,
                           currency: Optional[Currency] = None) -> List[CategoryBucket]:
        return self.analytics.category_breakdown(owner_id, period, as_of=as_of, currency=currency)

    def period_summary(self, owner_id: str, period="month", as_of: Optional[datetime] = None,
                       currency: Optional[Currency] = None) -> PeriodSummary:
        return self.analytics.period_summary(owner_id, period, as_of=as_of, currency=currency)

    def spending_trend(self, owner_id: str, period="month", as_of: Optional[datetime] = None,
                       currency: Optional[Currency] = None) -> List[TrendPoint]:
        return self.analytics.spending_trend(owner_id, period, as_of=as_of, currency=currency)

    def verify_balance(self, account_id: str) -> bool:
        return self.analytics.verify_balance(account_id)

    # Recipients

    def find_recipient(self, phone: Optional[str] = None, account_number: Optional[str] = None,
                       exclude_owner_id: Optional[str] = None) -> List[Account]:
        return self.recipients.find(phone=phone, account_number=account_number,
                                    exclude_owner_id=exclude_owner_id)

    def list_notifications(self, owner_id: str) -> List[dict]:
        """In-app notifications delivered to an owner, newest first"""
        return InAppChannelProvider(self.storage).list_for_recipient(owner_id)

    def close(self) -> None:
        """Stop the notifier (waiting for queued sends) and close storage"""
        if self.notifier:
            self.notifier.shutdown(wait=True)
        self.storage.close()
