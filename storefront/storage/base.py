"""
Order store interface.

Every adapter must make ``upsert_payment_and_order`` all-or-nothing and must
raise ``StorageConflictError`` when the uniqueness guard trips (payment already
captured, or order already paid), and ``StorageUnavailableError`` on transient
backend failures.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from storefront.schemas.orders import (
    Order,
    OrderDraft,
    PaymentRecord,
    PaymentRecordStatus,
    RefundEntry,
    ReviewFlag,
    StatusUpdate,
)


class IOrderStore(ABC):
    """Persistence for drafts, payment records, orders and review flags."""

    # ----- drafts -----

    @abstractmethod
    async def save_draft(self, draft: OrderDraft) -> OrderDraft:
        pass

    @abstractmethod
    async def find_draft(self, draft_id: str) -> Optional[OrderDraft]:
        pass

    @abstractmethod
    async def find_draft_by_gateway_order(self, gateway_order_id: str) -> Optional[OrderDraft]:
        pass

    @abstractmethod
    async def delete_expired_drafts(self, now: datetime) -> int:
        """Remove drafts that already became an Order, or that expired.

        An expired draft is kept while a ``verified`` payment still references
        its gateway order; the sweep needs it to finish that payment.
        """
        pass

    @abstractmethod
    async def list_unreconciled_drafts(self, created_before: datetime, limit: int) -> List[OrderDraft]:
        """Drafts with a gateway order but no Order, oldest first."""
        pass

    # ----- payments -----

    @abstractmethod
    async def find_payment_by_gateway_id(self, gateway_payment_id: str) -> Optional[PaymentRecord]:
        pass

    @abstractmethod
    async def save_payment(self, record: PaymentRecord) -> PaymentRecord:
        """Insert or update a non-captured record. Never overwrites a captured one."""
        pass

    @abstractmethod
    async def insert_payment_if_absent(self, record: PaymentRecord) -> Optional[PaymentRecord]:
        """Insert the record only when none exists for its payment id.

        Returns the stored record, or None when one was already there.
        """
        pass

    @abstractmethod
    async def list_payments(self, status: PaymentRecordStatus, limit: int = 100) -> List[PaymentRecord]:
        pass

    # ----- orders -----

    @abstractmethod
    async def upsert_payment_and_order(self, payment: PaymentRecord, order: Order) -> Order:
        """Atomically mark the payment captured and the order paid.

        ``order`` is the confirmed Order to create when none exists for its
        gateway order. An existing pending order is confirmed in place.
        """
        pass

    @abstractmethod
    async def find_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_order_by_gateway_order(self, gateway_order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def update_order_status(self, order_id: str, update: StatusUpdate) -> Optional[Order]:
        """Apply a fulfilment change under the order's row lock. None when unknown."""
        pass

    @abstractmethod
    async def apply_refund(self, gateway_payment_id: str, refund: RefundEntry) -> Optional[Order]:
        """Record a refund against the order paid by this payment.

        Returns None when no order was paid by the payment.
        """
        pass

    # ----- review -----

    @abstractmethod
    async def flag_for_review(self, flag: ReviewFlag) -> ReviewFlag:
        pass

    @abstractmethod
    async def list_review_flags(self, limit: int = 100) -> List[ReviewFlag]:
        pass

    async def close(self) -> None:
        return None
