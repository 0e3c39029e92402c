"""
Test suite for the transfer processor

CRITICAL: Validates that money is never created or destroyed, balances never
go negative, every transaction is all-or-nothing and idempotency keys are
honoured, including under concurrent load.
"""

import pytest
import random
import threading
from decimal import Decimal
from unittest.mock import Mock, patch

from retail_ledger.accounts import AccountType
from retail_ledger.currency import Money, Currency
from retail_ledger.errors import (
    AccountClosedError,
    AccountNotFoundError,
    DuplicateTransactionIdError,
    InsufficientFundsError,
    LedgerError,
    LimitExceededError,
    TransactionNotFoundError,
    ValidationError,
)
from retail_ledger.events import DomainEvent
from retail_ledger.transactions import TransactionFilter, TransactionStatus, TransactionType
from retail_ledger.policies import PremiumOpeningPolicy


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def balance_of(ledger, account_id) -> Money:
    return ledger.get_account(account_id).balance


class TestTransferScenarios:
    """End-to-end money movement scenarios"""

    def test_transfer_then_insufficient_funds(self, ledger):
        savings = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "500")
        current = ledger.create_account("alice", AccountType.CURRENT, "Current", "0")

        transaction = ledger.transfer(savings.id, current.id, "200")

        assert balance_of(ledger, savings.id) == usd("300.00")
        assert balance_of(ledger, current.id) == usd("200.00")
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.amount == usd("200.00")
        completed = ledger.list_transactions(
            account_id=savings.id, txn_filter=TransactionFilter(status=TransactionStatus.COMPLETED)
        )
        assert [txn.transaction_id for txn in completed] == [transaction.transaction_id]

        with pytest.raises(InsufficientFundsError):
            ledger.transfer(current.id, savings.id, "1000")

        assert balance_of(ledger, savings.id) == usd("300.00")
        assert balance_of(ledger, current.id) == usd("200.00")

    def test_close_account_scenario(self, ledger):
        savings = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "500")
        current = ledger.create_account("alice", AccountType.CURRENT, "Current", "100")

        with pytest.raises(ValidationError):
            ledger.close_account(current.id)

        ledger.transfer(current.id, savings.id, "100")
        closed = ledger.close_account(current.id)
        assert not closed.is_active

        with pytest.raises(AccountClosedError):
            ledger.transfer(savings.id, current.id, "50")
        assert balance_of(ledger, savings.id) == usd("600.00")

    def test_transfer_row_is_seen_from_both_sides(self, ledger):
        alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

        transaction = ledger.transfer(alice.id, bob.id, "30", category="Rent", description="June rent")

        assert transaction.transaction_type == TransactionType.TRANSFER_OUT
        assert transaction.from_account_id == alice.id
        assert transaction.to_account_id == bob.id
        assert transaction.category == "Rent"
        assert transaction.owner_id == "alice"
        incoming = ledger.list_transactions(
            account_id=bob.id, txn_filter=TransactionFilter(transaction_type=TransactionType.TRANSFER_IN)
        )
        assert [txn.transaction_id for txn in incoming] == [transaction.transaction_id]

    def test_transfer_defaults(self, ledger):
        alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

        transaction = ledger.transfer(alice.id, bob.id, "1")

        assert transaction.category == "transfer"
        assert transaction.description == "Fund transfer"
        assert transaction.transaction_id.startswith("TXN")


class TestTransferValidation:

    @pytest.fixture(autouse=True)
    def accounts(self, ledger):
        self.ledger = ledger
        self.alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        self.bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

    @pytest.mark.parametrize("amount", ["0", "-5", "0.001", "0.005", "abc", 1.5, None, "1e3", "1,5", "12abc"])
    def test_rejects_bad_amounts(self, amount):
        with pytest.raises(ValidationError):
            self.ledger.transfer(self.alice.id, self.bob.id, amount)
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")

    def test_sub_cent_amounts_are_not_rounded(self):
        with pytest.raises(ValidationError, match="decimal places"):
            self.ledger.deposit(self.bob.id, "0.005")
        with pytest.raises(ValidationError, match="decimal places"):
            self.ledger.create_account("carol", AccountType.SAVINGS, "Savings", "10.001")

        assert balance_of(self.ledger, self.bob.id) == usd("0.00")
        assert self.ledger.transactions.count() == 0

    def test_whole_yen_only(self):
        yen = self.ledger.create_account("carol", AccountType.SAVINGS, "Savings", "0", currency=Currency.JPY)

        with pytest.raises(ValidationError):
            self.ledger.deposit(yen.id, "10.5")
        self.ledger.deposit(yen.id, "1,500")

        assert balance_of(self.ledger, yen.id) == Money(Decimal("1500"), Currency.JPY)

    def test_rejects_same_account(self):
        with pytest.raises(ValidationError, match="same account"):
            self.ledger.transfer(self.alice.id, self.alice.id, "10")

    def test_rejects_unknown_account(self):
        with pytest.raises(AccountNotFoundError):
            self.ledger.transfer(self.alice.id, "missing", "10")
        with pytest.raises(AccountNotFoundError):
            self.ledger.deposit("missing", "10")

    def test_rejects_foreign_source_account(self):
        with pytest.raises(ValidationError, match="Invalid source account"):
            self.ledger.transfer(self.alice.id, self.bob.id, "10", owner_id="bob")

    def test_rejects_currency_mismatch(self):
        euros = self.ledger.create_account("carol", AccountType.SAVINGS, "Euro", "100", currency=Currency.EUR)

        with pytest.raises(ValidationError, match="different currencies"):
            self.ledger.transfer(euros.id, self.bob.id, "10")
        with pytest.raises(ValidationError, match="does not match"):
            self.ledger.deposit(self.bob.id, Money(Decimal("10"), Currency.EUR))

    def test_rejects_wrong_single_sided_types(self):
        with pytest.raises(ValidationError, match="not a credit"):
            self.ledger.deposit(self.bob.id, "10", transaction_type=TransactionType.FEE)
        with pytest.raises(ValidationError, match="not a debit"):
            self.ledger.withdraw(self.alice.id, "10", transaction_type=TransactionType.INTEREST)

    def test_insufficient_funds_records_failed_row(self):
        with pytest.raises(InsufficientFundsError):
            self.ledger.withdraw(self.alice.id, "100.01", transaction_id="WD-1")

        failed = self.ledger.get_transaction("WD-1")
        assert failed.status == TransactionStatus.FAILED
        assert "Insufficient" in failed.failure_reason
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")

    def test_closed_destination_records_failed_row(self):
        self.ledger.close_account(self.bob.id)

        with pytest.raises(AccountClosedError):
            self.ledger.transfer(self.alice.id, self.bob.id, "10", transaction_id="TR-closed")

        assert self.ledger.get_transaction("TR-closed").is_failed
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")


class TestSingleSidedTransactions:

    def test_deposit_and_withdraw(self, ledger):
        account = ledger.create_account("alice", AccountType.CURRENT, "Current", "0")

        ledger.deposit(account.id, "250.00", category="salary")
        ledger.withdraw(account.id, "20.00", category="groceries",
                        transaction_type=TransactionType.CARD_PAYMENT)
        ledger.deposit(account.id, "1.25", transaction_type=TransactionType.INTEREST)

        assert balance_of(ledger, account.id) == usd("231.25")
        types = [txn.transaction_type for txn in ledger.list_transactions(account_id=account.id)]
        assert types == [TransactionType.INTEREST, TransactionType.CARD_PAYMENT, TransactionType.DEPOSIT]
        assert ledger.verify_balance(account.id)

    def test_daily_limit(self, ledger):
        account = ledger.create_account("alice", AccountType.CURRENT, "Current", "1000", daily_limit="100")

        ledger.withdraw(account.id, "60")
        with pytest.raises(LimitExceededError) as exc_info:
            ledger.withdraw(account.id, "50")

        assert exc_info.value.details["period"] == "daily"
        assert balance_of(ledger, account.id) == usd("940.00")
        ledger.withdraw(account.id, "40")

    def test_monthly_limit_counts_transfers(self, ledger):
        account = ledger.create_account("alice", AccountType.CURRENT, "Current", "1000", monthly_limit="300")
        other = ledger.create_account("bob", AccountType.CURRENT, "Current", "0")

        ledger.transfer(account.id, other.id, "250")
        with pytest.raises(LimitExceededError):
            ledger.withdraw(account.id, "60")


class TestIdempotency:

    @pytest.fixture(autouse=True)
    def accounts(self, ledger):
        self.ledger = ledger
        self.alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        self.bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

    def test_replay_returns_original(self):
        first = self.ledger.transfer(self.alice.id, self.bob.id, "10", transaction_id="KEY-1")
        second = self.ledger.transfer(self.alice.id, self.bob.id, "10", transaction_id="KEY-1")

        assert second.id == first.id
        assert balance_of(self.ledger, self.alice.id) == usd("90.00")
        assert balance_of(self.ledger, self.bob.id) == usd("10.00")
        assert self.ledger.transactions.count() == 1

    def test_key_reused_for_different_request(self):
        self.ledger.transfer(self.alice.id, self.bob.id, "10", transaction_id="KEY-1")

        with pytest.raises(DuplicateTransactionIdError):
            self.ledger.transfer(self.alice.id, self.bob.id, "11", transaction_id="KEY-1")
        with pytest.raises(DuplicateTransactionIdError):
            self.ledger.deposit(self.bob.id, "10", transaction_id="KEY-1")

    def test_failed_key_is_burned(self):
        with pytest.raises(InsufficientFundsError):
            self.ledger.transfer(self.alice.id, self.bob.id, "500", transaction_id="KEY-2")

        with pytest.raises(DuplicateTransactionIdError) as exc_info:
            self.ledger.transfer(self.alice.id, self.bob.id, "500", transaction_id="KEY-2")
        assert exc_info.value.details["status"] == "failed"

    def test_replay_compares_normalized_amount(self):
        first = self.ledger.deposit(self.bob.id, "10.00", transaction_id="KEY-4")

        assert self.ledger.deposit(self.bob.id, "10", transaction_id="KEY-4").id == first.id
        with pytest.raises(ValidationError, match="decimal places"):
            self.ledger.deposit(self.bob.id, "10.005", transaction_id="KEY-4")
        assert balance_of(self.ledger, self.bob.id) == usd("10.00")

    def test_lock_registry_does_not_grow(self):
        before = self.ledger.locks.active_count()
        for i in range(200):
            self.ledger.deposit(self.bob.id, "1", transaction_id=f"DEP-{i}")
        self.ledger.reverse("DEP-0", "Posted twice")

        assert self.ledger.locks.active_count() == before == 0

    def test_concurrent_replays_apply_once(self):
        results = []
        errors = []

        def submit():
            try:
                results.append(self.ledger.transfer(self.alice.id, self.bob.id, "10", transaction_id="KEY-3"))
            except LedgerError as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert len({txn.id for txn in results}) == 1
        assert balance_of(self.ledger, self.alice.id) == usd("90.00")


class TestAtomicity:
    """A failure part-way through leaves no trace"""

    def test_log_failure_rolls_back_both_balances(self, ledger):
        alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

        with patch.object(ledger.transactions, "append", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                ledger.transfer(alice.id, bob.id, "40", transaction_id="ATOM-1")

        assert balance_of(ledger, alice.id) == usd("100.00")
        assert balance_of(ledger, bob.id) == usd("0.00")
        assert ledger.transactions.find("ATOM-1") is None

    def test_credit_failure_rolls_back_debit(self, ledger):
        alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")
        real_adjust = ledger.accounts.adjust_balance
        calls = []

        def crash_on_credit(account_id, delta, expected_prior_balance=None):
            calls.append(account_id)
            if account_id == bob.id:
                raise RuntimeError("connection lost")
            return real_adjust(account_id, delta, expected_prior_balance)

        with patch.object(ledger.accounts, "adjust_balance", side_effect=crash_on_credit):
            with pytest.raises(RuntimeError):
                ledger.transfer(alice.id, bob.id, "40")

        assert calls == [alice.id, bob.id]
        assert balance_of(ledger, alice.id) == usd("100.00")
        assert ledger.transactions.count() == 0

    def test_works_on_sqlite(self, ledger_config):
        from retail_ledger.ledger import Ledger
        from retail_ledger.storage import SQLiteStorage

        sqlite_ledger = Ledger(storage=SQLiteStorage(":memory:"), config=ledger_config, enable_notifications=False)
        alice = sqlite_ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        bob = sqlite_ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

        with patch.object(sqlite_ledger.transactions, "append", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                sqlite_ledger.transfer(alice.id, bob.id, "40")
        sqlite_ledger.transfer(alice.id, bob.id, "25")

        assert balance_of(sqlite_ledger, alice.id) == usd("75.00")
        assert balance_of(sqlite_ledger, bob.id) == usd("25.00")
        assert sqlite_ledger.verify_balance(alice.id)
        sqlite_ledger.close()


class TestReversal:

    @pytest.fixture(autouse=True)
    def accounts(self, ledger):
        self.ledger = ledger
        self.alice = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        self.bob = ledger.create_account("bob", AccountType.SAVINGS, "Savings", "0")

    def test_reverse_deposit(self):
        deposit = self.ledger.deposit(self.alice.id, "50", category="salary")

        reversal = self.ledger.reverse(deposit.transaction_id, "Posted twice", owner_id="alice")

        assert reversal.transaction_type == TransactionType.REVERSAL
        assert reversal.reverses == deposit.transaction_id
        assert reversal.from_account_id == self.alice.id
        assert reversal.metadata["requested_by"] == "alice"
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")
        assert self.ledger.get_transaction(deposit.transaction_id).is_completed

    def test_reverse_withdrawal_is_refund(self):
        withdrawal = self.ledger.withdraw(self.alice.id, "30", transaction_type=TransactionType.FEE)

        refund = self.ledger.reverse(withdrawal.transaction_id, "Fee waived")

        assert refund.transaction_type == TransactionType.REFUND
        assert refund.to_account_id == self.alice.id
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")

    def test_reverse_transfer(self):
        transfer = self.ledger.transfer(self.alice.id, self.bob.id, "40")

        reversal = self.ledger.reverse(transfer.transaction_id, "Wrong recipient")

        assert reversal.from_account_id == self.bob.id
        assert reversal.to_account_id == self.alice.id
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")
        assert balance_of(self.ledger, self.bob.id) == usd("0.00")

    def test_reverse_transfer_requires_recipient(self):
        transfer = self.ledger.transfer(self.alice.id, self.bob.id, "40", owner_id="alice")

        with pytest.raises(TransactionNotFoundError):
            self.ledger.reverse(transfer.transaction_id, "Not mine", owner_id="mallory")
        with pytest.raises(ValidationError, match="affected account"):
            self.ledger.reverse(transfer.transaction_id, "Sent by mistake", owner_id="alice")
        assert balance_of(self.ledger, self.bob.id) == usd("40.00")

        reversal = self.ledger.reverse(transfer.transaction_id, "Not for me", owner_id="bob")
        assert reversal.from_account_id == self.bob.id
        assert balance_of(self.ledger, self.alice.id) == usd("100.00")

    def test_refund_requires_debited_owner(self):
        withdrawal = self.ledger.withdraw(self.alice.id, "30", transaction_type=TransactionType.FEE)

        with pytest.raises(TransactionNotFoundError):
            self.ledger.reverse(withdrawal.transaction_id, "Fee waived", owner_id="bob")
        refund = self.ledger.reverse(withdrawal.transaction_id, "Fee waived", owner_id="alice")

        assert refund.to_account_id == self.alice.id

    def test_get_transaction_scoped_to_owner(self):
        transfer = self.ledger.transfer(self.alice.id, self.bob.id, "40")

        assert self.ledger.get_transaction(transfer.transaction_id, owner_id="alice").id == transfer.id
        assert self.ledger.get_transaction(transfer.transaction_id, owner_id="bob").id == transfer.id
        with pytest.raises(TransactionNotFoundError):
            self.ledger.get_transaction(transfer.transaction_id, owner_id="mallory")

    def test_reverse_only_once(self):
        deposit = self.ledger.deposit(self.alice.id, "50")
        reversal = self.ledger.reverse(deposit.transaction_id, "Duplicate")

        with pytest.raises(ValidationError, match="already been reversed"):
            self.ledger.reverse(deposit.transaction_id, "Again")
        with pytest.raises(ValidationError, match="itself a reversal"):
            self.ledger.reverse(reversal.transaction_id, "Undo the undo")

    def test_reverse_refusals(self):
        with pytest.raises(InsufficientFundsError):
            self.ledger.withdraw(self.alice.id, "1000", transaction_id="FAILED-1")

        with pytest.raises(ValidationError, match="Only completed"):
            self.ledger.reverse("FAILED-1", "Nothing to undo")
        with pytest.raises(ValidationError, match="reason"):
            self.ledger.reverse("FAILED-1", " ")
        with pytest.raises(TransactionNotFoundError):
            self.ledger.reverse("UNKNOWN", "Missing")

    def test_reverse_needs_funds(self):
        transfer = self.ledger.transfer(self.alice.id, self.bob.id, "40")
        self.ledger.withdraw(self.bob.id, "40")

        with pytest.raises(InsufficientFundsError):
            self.ledger.reverse(transfer.transaction_id, "Too late")


class TestEventsPublished:

    def test_completed_failed_and_reversed(self, ledger):
        handler = Mock()
        for event_type in (DomainEvent.TRANSACTION_COMPLETED, DomainEvent.TRANSACTION_FAILED,
                           DomainEvent.TRANSACTION_REVERSED):
            ledger.events.subscribe(event_type, handler)
        account = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "10")

        deposit = ledger.deposit(account.id, "5")
        with pytest.raises(InsufficientFundsError):
            ledger.withdraw(account.id, "100")
        ledger.reverse(deposit.transaction_id, "Test")

        published = [call.args[0].event_type for call in handler.call_args_list]
        assert published == [
            DomainEvent.TRANSACTION_COMPLETED,
            DomainEvent.TRANSACTION_FAILED,
            DomainEvent.TRANSACTION_COMPLETED,
            DomainEvent.TRANSACTION_REVERSED,
        ]
        assert handler.call_args_list[0].args[0].data["amount"] == "5.00"

    def test_failing_subscriber_does_not_undo_transfer(self, ledger):
        ledger.events.subscribe(DomainEvent.TRANSACTION_COMPLETED, Mock(side_effect=RuntimeError("boom")))
        account = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "10")

        ledger.deposit(account.id, "5")

        assert balance_of(ledger, account.id) == usd("15.00")


class TestConcurrency:
    """Concurrent transfers never overdraw and never lose money"""

    def test_concurrent_withdrawals_never_overdraw(self, ledger):
        account = ledger.create_account("alice", AccountType.CURRENT, "Current", "1000")
        successes = []
        rejections = []

        def withdraw():
            try:
                successes.append(ledger.withdraw(account.id, "150"))
            except InsufficientFundsError as e:
                rejections.append(e)

        threads = [threading.Thread(target=withdraw) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(successes) == 6  # floor(1000 / 150)
        assert len(rejections) == 14
        assert balance_of(ledger, account.id) == usd("100.00")

    def test_opposing_transfers_conserve_money(self, ledger):
        premium = PremiumOpeningPolicy()
        accounts = [
            ledger.create_account("alice", AccountType.SAVINGS, f"Pot {i}", "500", policy=premium)
            for i in range(4)
        ]
        total_before = sum((account.balance for account in accounts), usd("0"))

        def worker(seed):
            rng = random.Random(seed)
            for _ in range(50):
                source, destination = rng.sample(accounts, 2)
                try:
                    ledger.transfer(source.id, destination.id, str(rng.randint(1, 200)))
                except InsufficientFundsError:
                    pass

        threads = [threading.Thread(target=worker, args=(seed,)) for seed in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        balances = [balance_of(ledger, account.id) for account in accounts]
        assert sum(balances, usd("0")) == total_before
        assert all(not balance.is_negative() for balance in balances)
        assert all(ledger.verify_balance(account.id) for account in accounts)


class TestConservation:

    def test_random_operation_sequence(self, ledger):
        rng = random.Random(42)
        premium = PremiumOpeningPolicy()
        accounts = [ledger.create_account("alice", AccountType.CURRENT, f"A{i}", "100", policy=premium)
                    for i in range(3)]
        external = usd("0")

        for _ in range(200):
            amount = str(rng.randint(1, 80))
            operation = rng.choice(["transfer", "deposit", "withdraw"])
            try:
                if operation == "transfer":
                    source, destination = rng.sample(accounts, 2)
                    ledger.transfer(source.id, destination.id, amount)
                elif operation == "deposit":
                    ledger.deposit(rng.choice(accounts).id, amount)
                    external = external + usd(amount)
                else:
                    ledger.withdraw(rng.choice(accounts).id, amount)
                    external = external - usd(amount)
            except InsufficientFundsError:
                pass

        total = sum((balance_of(ledger, account.id) for account in accounts), usd("0"))
        assert total == usd("300") + external
        for account in accounts:
            assert not balance_of(ledger, account.id).is_negative()
            assert ledger.verify_balance(account.id)
