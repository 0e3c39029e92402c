"""
Recipient Resolver Module

Read-only lookup of counterparty accounts for peer-to-peer transfers. Returns
full account data; masking the number is the presentation layer's job, with
`mask_account_number` as the helper.
"""

from typing import Dict, List, Optional

from .accounts import Account, AccountStore
from .customers import CustomerDirectory, normalize_phone
from .errors import LedgerError, LookupFailedError, ValidationError
from .logging_config import get_logger


def mask_account_number(number: str, visible: int = 4) -> str:
    """Mask all but the last `visible` digits: 1234567890 -> ******7890"""
    if not number:
        return ""
    if len(number) <= visible:
        return number
    return "*" * (len(number) - visible) + number[-visible:]


class RecipientResolver:
    """Finds active accounts by owner phone number or by account number"""

    def __init__(self, accounts: AccountStore, customers: CustomerDirectory):
        self.accounts = accounts
        self.customers = customers
        self.logger = get_logger("retail_ledger.recipients")

    def find_by_phone(self, phone: str, exclude_owner_id: Optional[str] = None) -> List[Account]:
        """
        Active accounts of the owner(s) registered under a phone number

        Returns an empty list when nothing matches.

        Raises:
            ValidationError: Empty phone number
            LookupFailedError: The directory or account store could not be read
        """
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValidationError("Phone number is required")

        try:
            owner_ids = [customer.id for customer in self.customers.find_by_phone(normalized)]
            accounts = self.accounts.find_active_by_owners(owner_ids)
        except LedgerError:
            raise
        except Exception as e:
            self.logger.error(f"Recipient lookup by phone failed: {e}")
            raise LookupFailedError(f"Recipient lookup failed: {e}") from e

        return [account for account in accounts if account.owner_id != exclude_owner_id]

    def find_by_account_number(self, number: str, exclude_owner_id: Optional[str] = None) -> List[Account]:
        """
        The active account with this number, as a zero- or one-element list

        Raises:
            ValidationError: Empty account number
            LookupFailedError: The account store could not be read
        """
        cleaned = (number or "").replace(" ", "").replace("-", "")
        if not cleaned:
            raise ValidationError("Account number is required")

        try:
            account = self.accounts.find_active_by_number(cleaned)
        except LedgerError:
            raise
        except Exception as e:
            self.logger.error(f"Recipient lookup by account number failed: {e}")
            raise LookupFailedError(f"Recipient lookup failed: {e}") from e

        if account is None or account.owner_id == exclude_owner_id:
            return []
        return [account]

    def find(self, phone: Optional[str] = None, account_number: Optional[str] = None,
             exclude_owner_id: Optional[str] = None) -> List[Account]:
        """Look up by phone or by account number (exactly one must be given)"""
        if bool(phone) == bool(account_number):
            raise ValidationError("Provide either phone or account_number")
        if phone:
            return self.find_by_phone(phone, exclude_owner_id)
        return self.find_by_account_number(account_number, exclude_owner_id)

    def describe(self, account: Account) -> Dict:
        """Presentation view of a recipient with the account number masked"""
        owner = self.customers.get_customer(account.owner_id)
        return {
            "account_id": account.id,
            "account_number": mask_account_number(account.number),
            "account_name": account.name,
            "account_type": account.account_type.value,
            "currency": account.currency.code,
            "owner_name": owner.full_name if owner else None,
        }
