"""
Ledger Error Taxonomy

Every failure the ledger surfaces to its callers is a LedgerError subclass.
Each class says whether a caller may retry the whole operation and which HTTP
status the API adapter maps it to.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    retryable: bool = False
    http_status: int = 400
    code: str = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and logs"""
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(LedgerError, ValueError):
    """Bad input: non-positive amount, same-account transfer, missing field"""
    http_status = 400
    code = "validation_error"


class NotFoundError(LedgerError):
    """Unknown account or transaction"""
    http_status = 404
    code = "not_found"


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"

    def __init__(self, account_ref: str):
        super().__init__(f"Account {account_ref} not found", {"account": account_ref})


class TransactionNotFoundError(NotFoundError):
    code = "transaction_not_found"

    def __init__(self, transaction_ref: str):
        super().__init__(
            f"Transaction {transaction_ref} not found", {"transaction": transaction_ref}
        )


class AccountClosedError(LedgerError):
    """The account is closed and rejects all transactions"""
    http_status = 422
    code = "account_closed"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} is closed", {"account_id": account_id})


class InsufficientFundsError(LedgerError):
    """A debit would take the balance below zero"""
    http_status = 422
    code = "insufficient_funds"


class LimitExceededError(LedgerError):
    """A debit would exceed the account's daily or monthly limit"""
    http_status = 422
    code = "limit_exceeded"


class ConcurrentModificationError(LedgerError):
    """Optimistic lock failure; nothing was applied"""
    retryable = True
    http_status = 409
    code = "concurrent_modification"


class LedgerTimeoutError(LedgerError):
    """Could not enter the critical section in time; nothing was applied"""
    retryable = True
    http_status = 503
    code = "timeout"


class DuplicateTransactionIdError(LedgerError):
    """A transaction id was already used in the log"""
    http_status = 409
    code = "duplicate_transaction_id"

    def __init__(self, transaction_id: str, status: Optional[str] = None):
        message = f"Transaction id {transaction_id} already exists"
        if status:
            message = f"{message} with status {status}"
        super().__init__(message, {"transaction_id": transaction_id, "status": status})


class LookupFailedError(LedgerError):
    """A read-side lookup failed (distinct from finding nothing)"""
    retryable = True
    http_status = 503
    code = "lookup_failed"


class DuplicateOwnerError(LedgerError):
    """An owner with this id is already registered"""
    http_status = 409
    code = "duplicate_owner"

    def __init__(self, owner_id: str):
        super().__init__(f"Owner {owner_id} is already registered", {"owner_id": owner_id})


class AccountNumberUnavailableError(LedgerError):
    """No unused account number could be drawn; nothing was created"""
    retryable = True
    http_status = 503
    code = "account_number_unavailable"


class DuplicateRecordError(Exception):
    """Storage-level primary key collision on insert"""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Record {record_id} already exists in {table}")
        self.table = table
        self.record_id = record_id


def is_retryable(error: BaseException) -> bool:
    """True when the whole operation may be retried from validation"""
    return isinstance(error, LedgerError) and error.retryable
