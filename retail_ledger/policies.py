"""
Account Opening Policies

Rules that decide whether an owner may open a new account: the minimum opening
balance per account type and whether an owner may hold more than one active
account of the same type. Product tiers vary these by passing a different
policy to `AccountStore.create_account`.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .accounts import Account, AccountStatus, AccountType
from .currency import Money, to_decimal
from .errors import ValidationError


# Product catalogue minimums for the standard retail tier
STANDARD_TIER_MINIMUMS = {
    AccountType.SAVINGS: Decimal("100.00"),
    AccountType.CURRENT: Decimal("500.00"),
    AccountType.INVESTMENT: Decimal("5000.00"),
}


class AccountOpeningPolicy:
    """Minimum balances per type plus the one-active-account-per-type rule"""

    name = "custom"

    def __init__(self, minimums: Optional[Dict[AccountType, Decimal]] = None,
                 one_active_per_type: bool = True):
        self.minimums = dict(minimums or {})
        self.one_active_per_type = one_active_per_type

    def minimum_for(self, account_type: AccountType) -> Decimal:
        return self.minimums.get(account_type, Decimal("0"))

    def validate(self, account_type: AccountType, opening_balance: Money,
                 existing_accounts: Iterable[Account]) -> List[str]:
        """Return the list of rule violations (empty when the account may be opened)"""
        errors = []

        if opening_balance.is_negative():
            errors.append("Initial balance cannot be negative")

        minimum = self.minimum_for(account_type)
        if opening_balance.amount < minimum:
            errors.append(
                f"Initial balance {opening_balance.to_string()} is below the "
                f"{account_type.value} minimum of {Money(minimum, opening_balance.currency).to_string()}"
            )

        if self.one_active_per_type:
            for account in existing_accounts:
                if account.account_type == account_type and account.status == AccountStatus.ACTIVE:
                    errors.append(f"Owner already has an active {account_type.value} account")
                    break

        return errors

    def check(self, account_type: AccountType, opening_balance: Money,
              existing_accounts: Iterable[Account]) -> None:
        """Raise ValidationError if any rule is violated"""
        errors = self.validate(account_type, opening_balance, existing_accounts)
        if errors:
            raise ValidationError("; ".join(errors), {"policy": self.name, "violations": errors})


class DefaultOpeningPolicy(AccountOpeningPolicy):
    """Minimums from configuration, one active account per type"""

    name = "default"

    @classmethod
    def from_config(cls, config) -> 'DefaultOpeningPolicy':
        minimums = {
            AccountType(type_value): to_decimal(amount)
            for type_value, amount in config.opening_minimums().items()
        }
        return cls(minimums, one_active_per_type=config.one_active_account_per_type)


class StandardTierPolicy(AccountOpeningPolicy):
    """Catalogue minimums (savings 100, current 500, investment 5000)"""

    name = "standard"

    def __init__(self):
        super().__init__(STANDARD_TIER_MINIMUMS, one_active_per_type=True)


class PremiumOpeningPolicy(AccountOpeningPolicy):
    """Premium owners may hold several active accounts of the same type"""

    name = "premium"

    def __init__(self, minimums: Optional[Dict[AccountType, Decimal]] = None):
        super().__init__(minimums, one_active_per_type=False)
