"""
Transaction Log Module

Append-only record of every attempted deposit, withdrawal and transfer. Rows
are written once, in their final `completed` or `failed` state, and never
edited; corrections are new reversing transactions. The external
`transaction_id` is the storage key, so the log itself rejects a duplicate id.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import secrets

from .currency import Money, Currency
from .errors import DuplicateRecordError, DuplicateTransactionIdError, TransactionNotFoundError
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"      # Internal transfers are stored as one transfer_out row
    REFUND = "refund"
    INTEREST = "interest"
    CARD_PAYMENT = "card_payment"
    FEE = "fee"
    PAYMENT = "payment"
    REVERSAL = "reversal"              # Debit that undoes a deposit


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "pending"        # In-flight only, never persisted
    COMPLETED = "completed"
    FAILED = "failed"


# The one and only credit-like set. Everything else is debit-like.
CREDIT_TYPES = frozenset({
    TransactionType.DEPOSIT,
    TransactionType.REFUND,
    TransactionType.TRANSFER_IN,
    TransactionType.INTEREST,
})


def is_credit(transaction_type: TransactionType) -> bool:
    """True for credit-like transaction types"""
    return transaction_type in CREDIT_TYPES


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    """TXN + UTC timestamp to the microsecond + 8 random hex characters"""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"TXN{now.strftime('%Y%m%d%H%M%S%f')}{secrets.token_hex(4).upper()}"


@dataclass
class Transaction(StorageRecord):
    """
    One ledger row. A row with both account ids set is an internal transfer:
    one debit of `from_account_id` and one credit of `to_account_id`.
    """
    transaction_id: str
    transaction_type: TransactionType
    amount: Money
    currency: Currency
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    category: Optional[str] = None
    description: str = ""
    owner_id: Optional[str] = None
    failure_reason: Optional[str] = None
    reverses: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.from_account_id and not self.to_account_id:
            raise ValueError("Transaction must have at least one account (from_account_id or to_account_id)")

        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

        if self.amount.currency != self.currency:
            raise ValueError("Transaction amount currency must match transaction currency")

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransactionStatus.FAILED

    @property
    def is_transfer(self) -> bool:
        """Both sides are ledger accounts"""
        return bool(self.from_account_id and self.to_account_id)

    def touches(self, account_id: str) -> bool:
        return account_id in (self.from_account_id, self.to_account_id)

    def effective_type(self, account_id: Optional[str] = None) -> TransactionType:
        """The type as seen from one account: the receiving side of a transfer is transfer_in"""
        if self.is_transfer and account_id is not None and account_id == self.to_account_id:
            return TransactionType.TRANSFER_IN
        return self.transaction_type

    def signed_amount(self, account_id: str) -> Money:
        """Balance effect on the given account (zero if the row does not touch it)"""
        if not self.touches(account_id):
            return Money.zero(self.currency)
        if is_credit(self.effective_type(account_id)):
            return self.amount
        return -self.amount


@dataclass
class TransactionFilter:
    """Criteria for listing transactions; `start` is inclusive, `end` exclusive"""
    status: Optional[TransactionStatus] = None
    transaction_type: Optional[TransactionType] = None
    category: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    def matches(self, transaction: Transaction, account_id: Optional[str] = None) -> bool:
        if self.status and transaction.status != self.status:
            return False
        if self.transaction_type and transaction.effective_type(account_id) != self.transaction_type:
            return False
        if self.category and (transaction.category or "").lower() != self.category.lower():
            return False
        if self.start and transaction.created_at < self.start:
            return False
        if self.end and transaction.created_at >= self.end:
            return False
        if self.min_amount is not None and transaction.amount.amount < self.min_amount:
            return False
        if self.max_amount is not None and transaction.amount.amount > self.max_amount:
            return False
        return True


class TransactionLog:
    """Append-only transaction storage keyed by transaction_id"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.logger = get_logger("retail_ledger.transactions")

    def append(self, transaction: Transaction) -> Transaction:
        """
        Append a finished row

        Raises:
            ValueError: The row is still pending
            DuplicateTransactionIdError: The transaction_id is already in the log
        """
        if transaction.status == TransactionStatus.PENDING:
            raise ValueError("Only completed or failed transactions are appended to the log")

        try:
            self.storage.insert(self.table_name, transaction.transaction_id,
                                self._transaction_to_dict(transaction))
        except DuplicateRecordError:
            existing = self.find(transaction.transaction_id)
            self.logger.warning(f"Rejected duplicate transaction id {transaction.transaction_id}")
            raise DuplicateTransactionIdError(
                transaction.transaction_id, existing.status.value if existing else None
            )
        return transaction

    def find(self, transaction_id: str) -> Optional[Transaction]:
        """Transaction by external id, or None"""
        data = self.storage.load(self.table_name, transaction_id) if transaction_id else None
        if data:
            return self._transaction_from_dict(data)
        return None

    def get(self, transaction_id: str) -> Transaction:
        """Transaction by external id or raise TransactionNotFoundError"""
        transaction = self.find(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    def find_reversal(self, transaction_id: str) -> Optional[Transaction]:
        """The completed row that reverses the given transaction, if any"""
        for data in self.storage.find(self.table_name, {"reverses": transaction_id}):
            transaction = self._transaction_from_dict(data)
            if transaction.is_completed:
                return transaction
        return None

    def all(self) -> List[Transaction]:
        """Every row, oldest first"""
        transactions = [self._transaction_from_dict(data) for data in self.storage.load_all(self.table_name)]
        transactions.sort(key=lambda t: (t.created_at, t.transaction_id))
        return transactions

    def query(
        self,
        account_ids: Optional[Iterable[str]] = None,
        txn_filter: Optional[TransactionFilter] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True
    ) -> List[Transaction]:
        """
        Rows touching any of the accounts (all rows if account_ids is None)

        Type filters compare the effective type from the perspective of the
        single account when exactly one account is given.
        """
        wanted = set(account_ids) if account_ids is not None else None
        perspective = next(iter(wanted)) if wanted and len(wanted) == 1 else None

        results = []
        for transaction in self.all():
            if wanted is not None and not (
                transaction.from_account_id in wanted or transaction.to_account_id in wanted
            ):
                continue
            if txn_filter and not txn_filter.matches(transaction, perspective):
                continue
            results.append(transaction)

        if newest_first:
            results.reverse()
        if offset:
            results = results[offset:]
        if limit is not None:
            results = results[:limit]
        return results

    def list_for_account(self, account_id: str, txn_filter: Optional[TransactionFilter] = None,
                         limit: Optional[int] = None, offset: int = 0) -> List[Transaction]:
        """Rows touching one account, newest first"""
        return self.query([account_id], txn_filter, limit, offset)

    def list_for_accounts(self, account_ids: Iterable[str], txn_filter: Optional[TransactionFilter] = None,
                          limit: Optional[int] = None, offset: int = 0) -> List[Transaction]:
        """Rows touching any of the accounts (e.g. all of one owner's accounts), newest first"""
        return self.query(list(account_ids), txn_filter, limit, offset)

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['currency'] = transaction.currency.code
        result['amount'] = str(transaction.amount.amount)
        result['status'] = transaction.status.value
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            currency=currency,
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            status=TransactionStatus(data['status']),
            category=data.get('category'),
            description=data.get('description', ''),
            owner_id=data.get('owner_id'),
            failure_reason=data.get('failure_reason'),
            reverses=data.get('reverses'),
            metadata=data.get('metadata', {})
        )
