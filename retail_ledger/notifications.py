"""
Transaction Notification Module

Turns `transaction.completed` events into sender/receiver notifications and
hands them to channel providers on a background executor. Delivery is
fire-and-forget: a slow or failing channel never blocks or undoes the money
movement that triggered it.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
import asyncio
import uuid

import requests

from .accounts import Account, AccountStore
from .customers import CustomerDirectory
from .errors import NotFoundError
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord
from .transactions import TransactionType, is_credit


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class Notification(StorageRecord):
    """One message for one owner"""
    recipient_id: str
    title: str
    message: str
    notification_type: str = "transaction"
    status: NotificationStatus = NotificationStatus.PENDING
    data: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the ledger log"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("retail_ledger.notifications")

    async def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"Notification to {notification.recipient_id}: {notification.title} | {notification.message[:100]}"
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """Stores notifications so the owner can read them in the app"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "notifications"

    async def send(self, notification: Notification) -> bool:
        record = notification.to_dict()
        record['status'] = NotificationStatus.SENT.value
        self.storage.save(self.table_name, notification.id, record)
        return True

    def list_for_recipient(self, recipient_id: str) -> List[Dict[str, Any]]:
        """Stored notifications of one owner, newest first"""
        records = self.storage.find(self.table_name, {"recipient_id": recipient_id})
        return sorted(records, key=lambda record: record['created_at'], reverse=True)


class WebhookChannelProvider(ChannelProvider):
    """POSTs notifications to an external notification service"""

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url
        self.timeout = timeout
        self.logger = get_logger("retail_ledger.notifications")

    async def send(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type,
            "recipient_id": notification.recipient_id,
            "title": notification.title,
            "message": notification.message,
            "timestamp": notification.created_at.isoformat(),
            "data": notification.data
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            self.logger.warning(f"Webhook send to {self.url} failed: {e}")
            return False
        return 200 <= response.status_code < 300


class TransactionNotifier:
    """
    Subscribes to completed transactions and notifies both parties.

    Message construction runs on the publishing thread (it only reads);
    delivery runs on a small thread pool.
    """

    def __init__(
        self,
        accounts: AccountStore,
        customers: CustomerDirectory,
        providers: List[ChannelProvider],
        max_workers: int = 2
    ):
        self.accounts = accounts
        self.customers = customers
        self.providers = list(providers)
        self.logger = get_logger("retail_ledger.notifications")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger-notify")

    def attach(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(DomainEvent.TRANSACTION_COMPLETED, self.handle_event)

    def handle_event(self, event: EventPayload) -> Optional[Future]:
        """Queue delivery of the notifications for one completed transaction"""
        notifications = self.build_notifications(event)
        if not notifications:
            return None
        return self._executor.submit(self._deliver, notifications)

    def build_notifications(self, event: EventPayload) -> List[Notification]:
        data = event.data
        transaction_id = event.entity_id
        transaction_type = TransactionType(data["transaction_type"])
        amount = f"{data['amount']} {data['currency']}"

        sender = self._account(data.get("from_account_id"))
        receiver = self._account(data.get("to_account_id"))
        details = {
            "transactionId": transaction_id,
            "amount": data["amount"],
            "currency": data["currency"],
            "transactionType": transaction_type.value,
        }

        notifications = []
        if sender is not None and receiver is not None:
            sender_name = self._owner_name(sender.owner_id) or "a user"
            notifications.append(self._notification(
                sender.owner_id, "Money Sent Successfully",
                f"You sent {amount} to {receiver.name}. Transaction ID: {transaction_id}",
                dict(details, receiverAccountName=receiver.name), "transfer"
            ))
            notifications.append(self._notification(
                receiver.owner_id, "Money Received",
                f"You received {amount} from {sender_name} to your {receiver.name} account. "
                f"Transaction ID: {transaction_id}",
                dict(details, senderName=sender_name, transactionType=TransactionType.TRANSFER_IN.value),
                "transfer"
            ))
        elif receiver is not None and is_credit(transaction_type):
            notifications.append(self._notification(
                receiver.owner_id, "Money Received",
                f"{amount} was credited to your {receiver.name} account. Transaction ID: {transaction_id}",
                details
            ))
        elif sender is not None:
            notifications.append(self._notification(
                sender.owner_id, "Money Debited",
                f"{amount} was debited from your {sender.name} account. Transaction ID: {transaction_id}",
                details
            ))
        return notifications

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _deliver(self, notifications: List[Notification]) -> int:
        """Send through every provider; returns the number of successful sends"""
        delivered = 0
        for notification in notifications:
            for provider in self.providers:
                try:
                    ok = asyncio.run(provider.send(notification))
                except Exception as e:
                    self.logger.error(f"{type(provider).__name__} raised while sending {notification.id}: {e}")
                    ok = False
                if ok:
                    delivered += 1
                else:
                    self.logger.warning(f"{type(provider).__name__} did not deliver notification {notification.id}")
        return delivered

    def _account(self, account_id: Optional[str]) -> Optional[Account]:
        if not account_id:
            return None
        try:
            return self.accounts.get(account_id)
        except NotFoundError:
            self.logger.warning(f"Notification skipped for unknown account {account_id}")
            return None

    def _owner_name(self, owner_id: str) -> Optional[str]:
        customer = self.customers.get_customer(owner_id)
        return customer.full_name if customer else None

    @staticmethod
    def _notification(recipient_id: str, title: str, message: str, data: Dict[str, Any],
                      notification_type: str = "transaction") -> Notification:
        now = datetime.now(timezone.utc)
        return Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            recipient_id=recipient_id,
            title=title,
            message=message,
            notification_type=notification_type,
            data=data
        )
