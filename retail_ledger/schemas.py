"""
Pydantic schemas for API requests, and serializers for responses
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from .accounts import Account
from .recipients import mask_account_number
from .transactions import Transaction


# Owner schemas
class RegisterOwnerRequest(BaseModel):
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None


# Account schemas
class CreateAccountRequest(BaseModel):
    account_type: str = Field(..., description="savings, current or investment")
    name: str
    initial_balance: str = Field("0", description="Decimal amount as string")
    currency: Optional[str] = None
    interest_rate: Optional[str] = None
    daily_limit: Optional[str] = None
    monthly_limit: Optional[str] = None


class RenameAccountRequest(BaseModel):
    name: str


# Transaction schemas
class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    category: Optional[str] = "transfer"
    description: Optional[str] = "Fund transfer"
    transaction_id: Optional[str] = Field(None, description="Idempotency key")


class DepositRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    category: Optional[str] = None
    description: Optional[str] = "Deposit"
    transaction_type: str = "deposit"
    transaction_id: Optional[str] = Field(None, description="Idempotency key")


class WithdrawRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    category: Optional[str] = None
    description: Optional[str] = "Withdrawal"
    transaction_type: str = "withdrawal"
    transaction_id: Optional[str] = Field(None, description="Idempotency key")


class ReverseRequest(BaseModel):
    reason: str


def account_to_response(account: Account, mask_number: bool = False) -> Dict[str, Any]:
    return {
        "id": account.id,
        "owner_id": account.owner_id,
        "number": mask_account_number(account.number) if mask_number else account.number,
        "account_type": account.account_type.value,
        "name": account.name,
        "balance": str(account.balance.amount),
        "currency": account.currency.code,
        "status": account.status.value,
        "interest_rate": str(account.interest_rate) if account.interest_rate is not None else None,
        "daily_limit": str(account.daily_limit.amount) if account.daily_limit else None,
        "monthly_limit": str(account.monthly_limit.amount) if account.monthly_limit else None,
        "created_at": account.created_at.isoformat(),
        "closed_at": account.closed_at.isoformat() if account.closed_at else None,
    }


def transaction_to_response(transaction: Transaction, account_id: Optional[str] = None) -> Dict[str, Any]:
    """Serialize a row; with account_id, `transaction_type` is the type as seen by that account"""
    return {
        "id": transaction.id,
        "transaction_id": transaction.transaction_id,
        "transaction_type": transaction.effective_type(account_id).value,
        "amount": str(transaction.amount.amount),
        "currency": transaction.currency.code,
        "from_account_id": transaction.from_account_id,
        "to_account_id": transaction.to_account_id,
        "status": transaction.status.value,
        "category": transaction.category,
        "description": transaction.description,
        "failure_reason": transaction.failure_reason,
        "reverses": transaction.reverses,
        "created_at": transaction.created_at.isoformat(),
    }
