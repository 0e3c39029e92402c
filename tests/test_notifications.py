"""
Tests for transaction notifications

Tests message construction for each transaction shape, delivery through
channel providers on the background executor, and provider failure isolation.
"""

import pytest
import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import requests

from retail_ledger.accounts import AccountType
from retail_ledger.errors import InsufficientFundsError
from retail_ledger.ledger import Ledger
from retail_ledger.notifications import (
    ChannelProvider,
    InAppChannelProvider,
    LogChannelProvider,
    Notification,
    TransactionNotifier,
    WebhookChannelProvider,
)
from retail_ledger.storage import InMemoryStorage
from retail_ledger.transactions import TransactionType


class MockChannelProvider(ChannelProvider):
    """Mock channel provider for testing"""

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent_notifications = []

    async def send(self, notification: Notification) -> bool:
        self.sent_notifications.append(notification)
        return self.should_succeed


class RaisingChannelProvider(ChannelProvider):

    async def send(self, notification: Notification) -> bool:
        raise RuntimeError("provider crashed")


def make_notification(**kwargs):
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    params = dict(id="n1", created_at=now, updated_at=now, recipient_id="alice",
                  title="Money Received", message="You received USD 10.00")
    params.update(kwargs)
    return Notification(**params)


@pytest.fixture
def provider():
    return MockChannelProvider()


@pytest.fixture
def notifying_ledger(ledger_config, provider):
    system = Ledger(storage=InMemoryStorage(), config=ledger_config, notification_providers=[provider])
    system.register_owner("Alice Smith", owner_id="alice")
    system.register_owner("Bob Jones", owner_id="bob")
    yield system
    system.close()


class TestTransactionNotifier:

    def test_transfer_notifies_sender_and_receiver(self, notifying_ledger, provider):
        alice = notifying_ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")
        bob = notifying_ledger.create_account("bob", AccountType.CURRENT, "Everyday", "0")

        transaction = notifying_ledger.transfer(alice.id, bob.id, "25")
        notifying_ledger.notifier.shutdown(wait=True)

        by_recipient = {n.recipient_id: n for n in provider.sent_notifications}
        assert set(by_recipient) == {"alice", "bob"}
        assert by_recipient["alice"].title == "Money Sent Successfully"
        assert "USD" in by_recipient["alice"].message and "25.00" in by_recipient["alice"].message
        assert by_recipient["bob"].title == "Money Received"
        assert "Alice Smith" in by_recipient["bob"].message
        assert "Everyday" in by_recipient["bob"].message
        assert by_recipient["bob"].data["transactionType"] == TransactionType.TRANSFER_IN.value
        assert by_recipient["bob"].data["transactionId"] == transaction.transaction_id

    def test_single_sided_messages(self, notifying_ledger, provider):
        account = notifying_ledger.create_account("alice", AccountType.SAVINGS, "Savings", "100")

        notifying_ledger.deposit(account.id, "10", transaction_type=TransactionType.INTEREST)
        notifying_ledger.withdraw(account.id, "5")
        notifying_ledger.notifier.shutdown(wait=True)

        titles = sorted(n.title for n in provider.sent_notifications)
        assert titles == ["Money Debited", "Money Received"]

    def test_failed_transactions_are_not_notified(self, notifying_ledger, provider):
        account = notifying_ledger.create_account("alice", AccountType.SAVINGS, "Savings", "1")

        with pytest.raises(InsufficientFundsError):
            notifying_ledger.withdraw(account.id, "5")
        notifying_ledger.notifier.shutdown(wait=True)

        assert provider.sent_notifications == []

    def test_delivery_counts_and_isolates_failures(self, ledger):
        working = MockChannelProvider()
        notifier = TransactionNotifier(
            ledger.accounts, ledger.customers,
            [RaisingChannelProvider(), MockChannelProvider(should_succeed=False), working]
        )

        delivered = notifier._deliver([make_notification(), make_notification(id="n2")])
        notifier.shutdown()

        assert delivered == 2
        assert len(working.sent_notifications) == 2

    def test_handle_event_returns_future(self, ledger):
        working = MockChannelProvider()
        notifier = TransactionNotifier(ledger.accounts, ledger.customers, [working])
        notifier.attach(ledger.events)
        account = ledger.create_account("alice", AccountType.SAVINGS, "Savings", "0")

        deposit = ledger.deposit(account.id, "10")
        notifier.shutdown(wait=True)

        assert [n.data["transactionId"] for n in working.sent_notifications] == [deposit.transaction_id]

    def test_unknown_account_is_skipped(self, ledger):
        notifier = TransactionNotifier(ledger.accounts, ledger.customers, [MockChannelProvider()])
        event = MagicMock()
        event.entity_id = "TXN1"
        event.data = {"transaction_type": "deposit", "amount": "1.00", "currency": "USD",
                      "from_account_id": None, "to_account_id": "missing"}

        assert notifier.build_notifications(event) == []
        assert notifier.handle_event(event) is None
        notifier.shutdown()


class TestChannelProviders:

    def test_log_channel(self):
        logger = MagicMock()
        assert asyncio.run(LogChannelProvider(logger).send(make_notification())) is True
        logger.info.assert_called_once()

    def test_in_app_channel_stores_notifications(self):
        storage = InMemoryStorage()
        channel = InAppChannelProvider(storage)

        asyncio.run(channel.send(make_notification(id="n1", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))))
        asyncio.run(channel.send(make_notification(id="n2", created_at=datetime(2024, 6, 2, tzinfo=timezone.utc))))
        asyncio.run(channel.send(make_notification(id="n3", recipient_id="bob")))

        stored = channel.list_for_recipient("alice")
        assert [n["id"] for n in stored] == ["n2", "n1"]
        assert stored[0]["status"] == "sent"

    def test_webhook_posts_payload(self):
        provider = WebhookChannelProvider("https://notify.example.com/hook", timeout=1.5)

        with patch("retail_ledger.notifications.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=202)
            assert asyncio.run(provider.send(make_notification())) is True

        args, kwargs = mock_post.call_args
        assert args[0] == "https://notify.example.com/hook"
        assert kwargs["json"]["recipient_id"] == "alice"
        assert kwargs["json"]["title"] == "Money Received"
        assert kwargs["timeout"] == 1.5

    def test_webhook_failure_statuses(self):
        provider = WebhookChannelProvider("https://notify.example.com/hook")

        with patch("retail_ledger.notifications.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=500)
            assert asyncio.run(provider.send(make_notification())) is False

            mock_post.side_effect = requests.ConnectionError("unreachable")
            assert asyncio.run(provider.send(make_notification())) is False

    def test_ledger_default_providers(self, ledger_config):
        config = ledger_config.model_copy(update={"notification_webhook_url": "https://notify.example.com"})
        system = Ledger(storage=InMemoryStorage(), config=config)

        kinds = [type(p) for p in system.notifier.providers]
        system.close()

        assert kinds == [LogChannelProvider, InAppChannelProvider, WebhookChannelProvider]
