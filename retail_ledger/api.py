"""
FastAPI REST API Module

Thin HTTP adapter over the Ledger facade. The caller's owner id arrives in
the `X-User-Id` header, set by the upstream authentication gateway; the
ledger trusts it. Ledger errors are mapped to status codes by their
`http_status`.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Type

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .accounts import AccountStatus, AccountType
from .config import get_config
from .currency import Currency, to_decimal
from .errors import LedgerError, ValidationError
from .ledger import Ledger
from .logging_config import get_logger, setup_logging
from .schemas import (
    CreateAccountRequest,
    DepositRequest,
    RegisterOwnerRequest,
    RenameAccountRequest,
    ReverseRequest,
    TransferRequest,
    WithdrawRequest,
    account_to_response,
    transaction_to_response,
)
from .transactions import TransactionFilter, TransactionStatus, TransactionType


logger = get_logger("retail_ledger.api")
router = APIRouter()


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Owner id injected by the authentication gateway"""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


def _parse_enum(enum_cls: Type[Enum], value: Optional[str], field_name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}")


def _parse_decimal(value: Optional[str], field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return to_decimal(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}")


def _parse_currency(code: Optional[str]) -> Optional[Currency]:
    if not code:
        return None
    try:
        return Currency.from_code(code)
    except ValueError as e:
        raise ValidationError(str(e))


# Owners

@router.post("/owners", status_code=status.HTTP_201_CREATED, tags=["Owners"])
def register_owner(
    request: RegisterOwnerRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Register the calling owner's profile (name and phone used for recipient lookup)"""
    customer = ledger.register_owner(request.full_name, request.phone, request.email, owner_id=owner_id)
    return {"id": customer.id, "full_name": customer.full_name, "phone": customer.phone, "email": customer.email}


# Accounts

@router.post("/accounts", status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def create_account(
    request: CreateAccountRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Open a new account for the caller"""
    options = {}
    if request.interest_rate is not None:
        options["interest_rate"] = _parse_decimal(request.interest_rate, "interest_rate")
    if request.daily_limit is not None:
        options["daily_limit"] = request.daily_limit
    if request.monthly_limit is not None:
        options["monthly_limit"] = request.monthly_limit

    account = ledger.create_account(
        owner_id,
        _parse_enum(AccountType, request.account_type, "account_type"),
        request.name,
        request.initial_balance,
        currency=_parse_currency(request.currency),
        **options
    )
    return account_to_response(account)


@router.get("/accounts", tags=["Accounts"])
def list_accounts(
    status_filter: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """List the caller's accounts"""
    accounts = ledger.list_accounts(owner_id, _parse_enum(AccountStatus, status_filter, "status"))
    return {"accounts": [account_to_response(account) for account in accounts]}


@router.get("/accounts/{account_id}", tags=["Accounts"])
def get_account(
    account_id: str,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return account_to_response(ledger.get_account(account_id, owner_id))


@router.patch("/accounts/{account_id}", tags=["Accounts"])
def rename_account(
    account_id: str,
    request: RenameAccountRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return account_to_response(ledger.rename_account(account_id, request.name, owner_id))


@router.post("/accounts/{account_id}/close", tags=["Accounts"])
def close_account(
    account_id: str,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Close an account; its balance must be zero"""
    return account_to_response(ledger.close_account(account_id, owner_id))


@router.get("/accounts/{account_id}/transactions", tags=["Accounts"])
def get_account_transactions(
    account_id: str,
    status_filter: Optional[str] = None,
    transaction_type: Optional[str] = None,
    category: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    min_amount: Optional[str] = None,
    max_amount: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Transaction history of one account, newest first"""
    criteria = _transaction_filter(status_filter, transaction_type, category, start, end, min_amount, max_amount)
    transactions = ledger.list_transactions(
        account_id=account_id, owner_id=owner_id, txn_filter=criteria, limit=limit, offset=offset
    )
    return {"transactions": [transaction_to_response(txn, account_id) for txn in transactions]}


# Transactions

@router.post("/transactions/transfer", status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def transfer(
    request: TransferRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Transfer between two accounts; the source must belong to the caller"""
    transaction = ledger.transfer(
        request.from_account_id, request.to_account_id, request.amount,
        category=request.category, description=request.description,
        transaction_id=request.transaction_id, owner_id=owner_id
    )
    return transaction_to_response(transaction, request.from_account_id)


@router.post("/transactions/deposit", status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def deposit(
    request: DepositRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    transaction = ledger.deposit(
        request.account_id, request.amount,
        category=request.category, description=request.description,
        transaction_id=request.transaction_id, owner_id=owner_id,
        transaction_type=_parse_enum(TransactionType, request.transaction_type, "transaction_type")
    )
    return transaction_to_response(transaction, request.account_id)


@router.post("/transactions/withdraw", status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def withdraw(
    request: WithdrawRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    transaction = ledger.withdraw(
        request.account_id, request.amount,
        category=request.category, description=request.description,
        transaction_id=request.transaction_id, owner_id=owner_id,
        transaction_type=_parse_enum(TransactionType, request.transaction_type, "transaction_type")
    )
    return transaction_to_response(transaction, request.account_id)


@router.post("/transactions/{transaction_id}/reverse", status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def reverse_transaction(
    transaction_id: str,
    request: ReverseRequest,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return transaction_to_response(ledger.reverse(transaction_id, request.reason, owner_id))


@router.get("/transactions", tags=["Transactions"])
def list_transactions(
    status_filter: Optional[str] = None,
    transaction_type: Optional[str] = None,
    category: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    min_amount: Optional[str] = None,
    max_amount: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Transactions across all of the caller's accounts, newest first"""
    criteria = _transaction_filter(status_filter, transaction_type, category, start, end, min_amount, max_amount)
    transactions = ledger.list_transactions(owner_id=owner_id, txn_filter=criteria, limit=limit, offset=offset)
    return {"transactions": [transaction_to_response(txn) for txn in transactions]}


@router.get("/transactions/{transaction_id}", tags=["Transactions"])
def get_transaction(
    transaction_id: str,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return transaction_to_response(ledger.get_transaction(transaction_id, owner_id))


# Analytics

@router.get("/analytics/accounts/{account_id}/monthly-delta", tags=["Analytics"])
def monthly_delta(
    account_id: str,
    as_of: Optional[datetime] = None,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return ledger.monthly_delta(account_id, as_of, owner_id=owner_id).to_dict()


@router.get("/analytics/categories", tags=["Analytics"])
def category_breakdown(
    period: str = "month",
    currency: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    buckets = ledger.category_breakdown(owner_id, period, currency=_parse_currency(currency))
    return {"categories": [bucket.to_dict() for bucket in buckets]}


@router.get("/analytics/summary", tags=["Analytics"])
def period_summary(
    period: str = "month",
    currency: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return ledger.period_summary(owner_id, period, currency=_parse_currency(currency)).to_dict()


@router.get("/analytics/spending", tags=["Analytics"])
def spending_trend(
    period: str = "month",
    currency: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    points = ledger.spending_trend(owner_id, period, currency=_parse_currency(currency))
    return {"data": [point.to_dict() for point in points]}


# Recipients and notifications

@router.get("/recipients", tags=["Recipients"])
def find_recipient(
    phone: Optional[str] = None,
    account_number: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    """Active accounts matching a phone or account number; numbers are masked"""
    accounts = ledger.find_recipient(phone=phone, account_number=account_number, exclude_owner_id=owner_id)
    return {"recipients": [ledger.recipients.describe(account) for account in accounts]}


@router.get("/notifications", tags=["Notifications"])
def list_notifications(
    owner_id: str = Depends(get_owner_id),
    ledger: Ledger = Depends(get_ledger)
):
    return {"notifications": ledger.list_notifications(owner_id)}


def _transaction_filter(status_value, type_value, category, start, end,
                        min_amount, max_amount) -> TransactionFilter:
    return TransactionFilter(
        status=_parse_enum(TransactionStatus, status_value, "status"),
        transaction_type=_parse_enum(TransactionType, type_value, "transaction_type"),
        category=category,
        start=start,
        end=end,
        min_amount=_parse_decimal(min_amount, "min_amount"),
        max_amount=_parse_decimal(max_amount, "max_amount")
    )


async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.http_status >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(ledger: Optional[Ledger] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Retail Ledger API",
        description="Account balances and the transactions that move money between them",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger = ledger or Ledger.from_config()
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "retail_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
