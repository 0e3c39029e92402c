"""
Transfer Processor Module

Validates and atomically applies money movements: transfers between two
accounts, and deposits, withdrawals and reversals against one. The balance
check and the mutation happen under the per-account locks of every account
involved, and the debit, the credit and the completed log row are written in
one storage transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union
import uuid

from .accounts import Account, AccountStore
from .currency import Money, fits_precision, to_decimal
from .errors import (
    AccountClosedError,
    DuplicateRecordError,
    DuplicateTransactionIdError,
    InsufficientFundsError,
    LedgerError,
    LimitExceededError,
    TransactionNotFoundError,
    ValidationError,
)
from .events import DomainEvent, EventDispatcher, create_transaction_event
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .transactions import (
    CREDIT_TYPES,
    Transaction,
    TransactionFilter,
    TransactionLog,
    TransactionStatus,
    TransactionType,
    generate_transaction_id,
    is_credit,
)


AmountInput = Union[Money, Decimal, str, int]

# Single-sided types accepted by deposit() and withdraw()
DEPOSIT_TYPES = frozenset(CREDIT_TYPES)
WITHDRAWAL_TYPES = frozenset({
    TransactionType.WITHDRAWAL,
    TransactionType.CARD_PAYMENT,
    TransactionType.FEE,
    TransactionType.PAYMENT,
    TransactionType.TRANSFER_OUT,
})

# Rejections recorded in the log as failed rows
_BUSINESS_REJECTIONS = (AccountClosedError, InsufficientFundsError, LimitExceededError)


class TransferProcessor:
    """
    Applies transactions to the Account Store and the Transaction Log as one unit.

    Locks are taken per account id (plus one per transaction id, so two
    submissions of the same idempotency key are serialized). Transfers over
    disjoint accounts run concurrently.
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        transaction_log: TransactionLog,
        lock_manager: Optional[AccountLockManager] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.log = transaction_log
        self.lock_manager = lock_manager or accounts.lock_manager
        self.lock_timeout = lock_timeout
        self._event_dispatcher = event_dispatcher
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("retail_ledger.transfers")

    def _publish_event(self, event_type: DomainEvent, transaction: Transaction) -> None:
        """Publish a domain event if event dispatcher is available"""
        if self._event_dispatcher:
            self._event_dispatcher.publish(create_transaction_event(event_type, transaction))

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountInput,
        category: Optional[str] = "transfer",
        description: str = "Fund transfer",
        transaction_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Move money between two ledger accounts

        Args:
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount (Money, Decimal or decimal string)
            category: Analytics tag
            description: Free text
            transaction_id: Caller-supplied idempotency key (generated if omitted)
            owner_id: Initiating owner; when given, must own the source account
            metadata: Extra data stored on the row

        Returns:
            The completed Transaction (or the original one for a replayed key)

        Raises:
            ValidationError: Bad amount, same account, currency mismatch, foreign source
            AccountNotFoundError: Either account is unknown
            AccountClosedError: Either account is closed
            InsufficientFundsError: Source balance is below the amount
            LimitExceededError: Source daily or monthly debit limit would be exceeded
            DuplicateTransactionIdError: The key was already used by a failed or different request
            LedgerTimeoutError: Locks could not be taken in time (retryable)
        """
        if not from_account_id or not to_account_id:
            raise ValidationError("Both from_account_id and to_account_id are required")
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account")

        return self._execute(
            TransactionType.TRANSFER_OUT, from_account_id, to_account_id, amount,
            category, description, transaction_id, owner_id, metadata
        )

    def deposit(
        self,
        account_id: str,
        amount: AmountInput,
        category: Optional[str] = None,
        description: str = "Deposit",
        transaction_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """Credit one account from outside the ledger (deposit, refund, interest, incoming transfer)"""
        if transaction_type not in DEPOSIT_TYPES:
            raise ValidationError(f"{transaction_type.value} is not a credit transaction type")
        if not account_id:
            raise ValidationError("account_id is required")

        # Deposits may come from anyone; owner_id is recorded, not enforced
        return self._execute(
            transaction_type, None, account_id, amount,
            category, description, transaction_id, owner_id, metadata
        )

    def withdraw(
        self,
        account_id: str,
        amount: AmountInput,
        category: Optional[str] = None,
        description: str = "Withdrawal",
        transaction_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        transaction_type: TransactionType = TransactionType.WITHDRAWAL,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """Debit one account to outside the ledger (withdrawal, card payment, fee, bill payment)"""
        if transaction_type not in WITHDRAWAL_TYPES:
            raise ValidationError(f"{transaction_type.value} is not a debit transaction type")
        if not account_id:
            raise ValidationError("account_id is required")

        return self._execute(
            transaction_type, account_id, None, amount,
            category, description, transaction_id, owner_id, metadata
        )

    def reverse(
        self,
        transaction_id: str,
        reason: str,
        owner_id: Optional[str] = None,
        reversal_id: Optional[str] = None
    ) -> Transaction:
        """
        Correct a completed transaction with a new, opposite transaction

        Deposits and other single-sided credits are undone by a `reversal`
        debit; withdrawals and other single-sided debits by a `refund` credit;
        transfers by a `transfer_out` in the opposite direction. The original
        row is never edited.

        When owner_id is given the caller must own the account the reversal
        debits (the recipient of a transfer, the credited account of a
        deposit) or, for a refund, the account it credits. Without owner_id
        the call is an operator correction and is not scoped.

        Raises:
            TransactionNotFoundError: Unknown transaction, or not one of the caller's
            ValidationError: Not completed, itself a reversal, already reversed,
                or the caller does not own the affected account
            InsufficientFundsError: The account to debit no longer holds the amount
        """
        if not reason or not reason.strip():
            raise ValidationError("A reversal reason is required")

        original = self.get_transaction(transaction_id, owner_id)
        if not original.is_completed:
            raise ValidationError(f"Only completed transactions can be reversed; {transaction_id} is {original.status.value}")
        if original.reverses:
            raise ValidationError(f"Transaction {transaction_id} is itself a reversal")

        if original.is_transfer:
            transaction_type = TransactionType.TRANSFER_OUT
            from_id, to_id = original.to_account_id, original.from_account_id
        elif is_credit(original.transaction_type):
            transaction_type = TransactionType.REVERSAL
            from_id, to_id = original.to_account_id, None
        else:
            transaction_type = TransactionType.REFUND
            from_id, to_id = None, original.from_account_id

        affected_id = from_id or to_id
        if owner_id is not None and self.accounts.get(affected_id).owner_id != owner_id:
            raise ValidationError(
                "Only the owner of the affected account can reverse this transaction",
                {"transaction_id": transaction_id, "account_id": affected_id}
            )

        reversal = self._execute(
            transaction_type, from_id, to_id, original.amount,
            original.category, f"Reversal of {transaction_id}: {reason.strip()}",
            reversal_id, None,
            {"reversal_reason": reason.strip(), "requested_by": owner_id},
            reverses=transaction_id
        )
        self._publish_event(DomainEvent.TRANSACTION_REVERSED, original)
        return reversal

    def get_transaction(self, transaction_id: str, owner_id: Optional[str] = None) -> Transaction:
        """
        Transaction by external id or raise TransactionNotFoundError

        When owner_id is given, transactions touching none of that owner's
        accounts are reported as not found.
        """
        transaction = self.log.get(transaction_id)
        if owner_id is None:
            return transaction

        for account_id in (transaction.from_account_id, transaction.to_account_id):
            if account_id and self.accounts.get(account_id).owner_id == owner_id:
                return transaction
        raise TransactionNotFoundError(transaction_id)

    def _execute(
        self,
        transaction_type: TransactionType,
        from_account_id: Optional[str],
        to_account_id: Optional[str],
        amount: AmountInput,
        category: Optional[str],
        description: Optional[str],
        transaction_id: Optional[str],
        owner_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
        reverses: Optional[str] = None
    ) -> Transaction:
        value = self._validate_amount(amount)
        supplied_id = bool(transaction_id)
        transaction_id = transaction_id or generate_transaction_id(self._clock())

        lock_keys = [from_account_id, to_account_id, f"txn:{transaction_id}"]
        if reverses:
            lock_keys.append(f"reverse:{reverses}")

        with self.lock_manager.acquire(lock_keys, timeout=self.lock_timeout):
            if supplied_id:
                replayed = self._replay(transaction_id, transaction_type, from_account_id,
                                        to_account_id, value)
                if replayed is not None:
                    return replayed

            if reverses and self.log.find_reversal(reverses):
                raise ValidationError(f"Transaction {reverses} has already been reversed")

            from_account = self.accounts.get(from_account_id) if from_account_id else None
            to_account = self.accounts.get(to_account_id) if to_account_id else None
            money = self._resolve_money(amount, value, from_account or to_account, to_account)

            if owner_id and from_account and from_account.owner_id != owner_id:
                raise ValidationError("Invalid source account", {"account_id": from_account_id})

            now = self._clock()
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                transaction_id=transaction_id,
                transaction_type=transaction_type,
                amount=money,
                currency=money.currency,
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                status=TransactionStatus.PENDING,
                category=(category or "").strip() or None,
                description=description or "",
                owner_id=owner_id or (from_account or to_account).owner_id,
                reverses=reverses,
                metadata=metadata or {}
            )

            try:
                self._check_business_rules(from_account, to_account, money, now)
                self._apply(transaction, from_account, to_account)
            except _BUSINESS_REJECTIONS as e:
                self._record_failure(transaction, e)
                raise

        log_action(
            self.logger, "info", f"Transaction completed: {transaction_type.value}",
            user_id=transaction.owner_id, action="transaction.complete",
            resource=f"transaction:{transaction_id}",
            transaction_id=transaction_id, account_id=from_account_id or to_account_id, amount=money,
            extra={
                "from_account": from_account_id,
                "to_account": to_account_id,
                "category": transaction.category,
                "reverses": reverses
            }
        )
        self._publish_event(DomainEvent.TRANSACTION_COMPLETED, transaction)
        return transaction

    def _validate_amount(self, amount: AmountInput) -> Decimal:
        if amount is None:
            raise ValidationError("amount is required")
        try:
            value = amount.amount if isinstance(amount, Money) else to_decimal(amount)
        except ValueError as e:
            raise ValidationError(f"Invalid amount: {e}")
        if value <= 0:
            raise ValidationError("Amount must be positive", {"amount": str(value)})
        return value

    def _resolve_money(self, amount: AmountInput, value: Decimal,
                       primary: Account, to_account: Optional[Account]) -> Money:
        currency = primary.currency
        if to_account is not None and to_account.currency != currency:
            raise ValidationError(
                f"Cannot transfer between accounts with different currencies: "
                f"{currency.code} -> {to_account.currency.code}"
            )
        if isinstance(amount, Money) and amount.currency != currency:
            raise ValidationError(f"Amount currency {amount.currency.code} does not match account currency {currency.code}")

        self._check_precision(value, currency)
        return Money(value, currency)

    @staticmethod
    def _check_precision(value: Decimal, currency) -> None:
        if not fits_precision(value, currency):
            raise ValidationError(
                f"Amount has more than {currency.precision} decimal places for {currency.code}",
                {"amount": str(value), "currency": currency.code}
            )

    def _check_business_rules(self, from_account: Optional[Account], to_account: Optional[Account],
                              money: Money, now: datetime) -> None:
        for account in (from_account, to_account):
            if account is not None and not account.can_transact():
                raise AccountClosedError(account.id)

        if from_account is None:
            return

        if from_account.balance < money:
            raise InsufficientFundsError(
                f"Insufficient balance: {from_account.balance.to_string()} available, "
                f"{money.to_string()} requested",
                {"account_id": from_account.id, "balance": str(from_account.balance.amount),
                 "requested": str(money.amount)}
            )

        if from_account.daily_limit is not None:
            day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            self._check_limit(from_account, from_account.daily_limit, day_start, money, "daily")
        if from_account.monthly_limit is not None:
            month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            self._check_limit(from_account, from_account.monthly_limit, month_start, money, "monthly")

    def _check_limit(self, account: Account, limit: Money, since: datetime,
                     money: Money, label: str) -> None:
        criteria = TransactionFilter(status=TransactionStatus.COMPLETED, start=since)
        spent = Money.zero(account.currency)
        for transaction in self.log.list_for_account(account.id, criteria):
            if transaction.from_account_id == account.id:
                spent = spent + transaction.amount

        if spent + money > limit:
            raise LimitExceededError(
                f"{label.capitalize()} limit of {limit.to_string()} exceeded for account {account.id}",
                {"account_id": account.id, "limit": str(limit.amount),
                 "used": str(spent.amount), "requested": str(money.amount), "period": label}
            )

    def _apply(self, transaction: Transaction, from_account: Optional[Account],
               to_account: Optional[Account]) -> None:
        """Debit, credit and append the completed row as one storage transaction"""
        try:
            with self.storage.atomic():
                if from_account is not None:
                    self.accounts.adjust_balance(
                        from_account.id, -transaction.amount,
                        expected_prior_balance=from_account.balance
                    )
                if to_account is not None:
                    self.accounts.adjust_balance(
                        to_account.id, transaction.amount,
                        expected_prior_balance=to_account.balance
                    )
                transaction.status = TransactionStatus.COMPLETED
                self.log.append(transaction)
        except DuplicateRecordError:
            # Raised by the in-memory backend when its commit finds the id already published
            transaction.status = TransactionStatus.PENDING
            raise DuplicateTransactionIdError(transaction.transaction_id)
        except Exception:
            transaction.status = TransactionStatus.PENDING
            raise

    def _record_failure(self, transaction: Transaction, error: LedgerError) -> None:
        """Append a failed row for a business rejection; balances are untouched"""
        transaction.status = TransactionStatus.FAILED
        transaction.failure_reason = error.message
        try:
            self.log.append(transaction)
        except LedgerError as e:
            self.logger.error(f"Could not record failed transaction {transaction.transaction_id}: {e}")
            return

        log_action(
            self.logger, "warning", f"Transaction failed: {error.code}",
            user_id=transaction.owner_id, action="transaction.fail",
            resource=f"transaction:{transaction.transaction_id}",
            transaction_id=transaction.transaction_id,
            account_id=transaction.from_account_id or transaction.to_account_id,
            amount=transaction.amount, extra={"reason": error.message}
        )
        self._publish_event(DomainEvent.TRANSACTION_FAILED, transaction)

    def _replay(self, transaction_id: str, transaction_type: TransactionType,
                from_account_id: Optional[str], to_account_id: Optional[str],
                value: Decimal) -> Optional[Transaction]:
        """Return the original row for a resubmitted idempotency key, None if the key is new"""
        existing = self.log.find(transaction_id)
        if existing is None:
            return None

        if not existing.is_completed:
            raise DuplicateTransactionIdError(transaction_id, existing.status.value)

        # A resubmission is held to the same amount rules as a fresh request
        self._check_precision(value, existing.currency)
        same_request = (
            existing.transaction_type == transaction_type
            and existing.from_account_id == from_account_id
            and existing.to_account_id == to_account_id
            and existing.amount.amount == value
        )
        if not same_request:
            raise DuplicateTransactionIdError(transaction_id, existing.status.value)

        self.logger.info(f"Idempotent replay of transaction {transaction_id}")
        return existing
