"""
Customer Directory Module

Minimal owner directory: who an owner id belongs to and how to reach them.
Identity itself is established upstream by the authentication service; the
ledger only needs names for notifications and phone numbers for recipient
lookup.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid
import re

from .errors import DuplicateOwnerError, DuplicateRecordError, ValidationError
from .storage import StorageInterface, StorageRecord


def normalize_phone(phone: str) -> str:
    """Strip spaces, dashes, dots and parentheses; keep a leading +"""
    if phone is None:
        return ""
    return re.sub(r'[\s\-().]', '', phone.strip())


@dataclass
class Customer(StorageRecord):
    """Account owner as known to the ledger"""
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self):
        if not self.full_name or not self.full_name.strip():
            raise ValidationError("Customer full_name is required")
        if self.phone:
            self.phone = normalize_phone(self.phone)
        if self.email and not re.match(r'^[^@\s]+@[^@\s]+\.[^@\s]+$', self.email):
            raise ValidationError(f"Invalid email address: {self.email}")


class CustomerDirectory:
    """Stores owner profiles and answers phone lookups"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.customers_table = "customers"

    def create_customer(
        self,
        full_name: str,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> Customer:
        """
        Register an owner

        Args:
            full_name: Display name
            phone: Phone number (normalized before storage)
            email: Contact email
            customer_id: Owner id issued by the auth service (generated if omitted)

        Returns:
            Created Customer

        Raises:
            DuplicateOwnerError: customer_id is already registered
            ValidationError: Bad name or email, or the phone number is taken
        """
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=customer_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            full_name=full_name,
            phone=phone,
            email=email
        )

        if customer.phone and self.find_by_phone(customer.phone):
            raise ValidationError(f"Phone number {customer.phone} is already registered")

        try:
            self.storage.insert(self.customers_table, customer.id, customer.to_dict())
        except DuplicateRecordError:
            raise DuplicateOwnerError(customer.id)
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Get customer by ID"""
        data = self.storage.load(self.customers_table, customer_id)
        if data:
            return self._customer_from_dict(data)
        return None

    def find_by_phone(self, phone: str) -> List[Customer]:
        """Customers registered under the (normalized) phone number"""
        normalized = normalize_phone(phone)
        if not normalized:
            return []
        records = self.storage.find(self.customers_table, {"phone": normalized})
        return [self._customer_from_dict(data) for data in records]

    def _customer_from_dict(self, data: Dict) -> Customer:
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            full_name=data['full_name'],
            phone=data.get('phone'),
            email=data.get('email')
        )
