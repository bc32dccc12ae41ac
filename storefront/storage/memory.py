"""
In-memory order store.

A single asyncio.Lock plays the role of the database transaction, so the
uniqueness guards behave like the PostgreSQL adapter's. Models are deep-copied
on the way in and out; callers never share state with the store.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from storefront.logger import get_logger
from storefront.pipeline.errors import StorageConflictError
from storefront.schemas.orders import (
    Order,
    OrderDraft,
    PaymentRecord,
    PaymentRecordStatus,
    PaymentStatus,
    RefundEntry,
    ReviewFlag,
    StatusUpdate,
    utcnow,
)
from storefront.storage.base import IOrderStore

logger = get_logger("order_store", backend="memory")


def _confirm_description(order: Order) -> str:
    return order.timeline[-1].description if order.timeline else "Payment captured"


class InMemoryOrderStore(IOrderStore):
    """Process-local store for tests and single-process development."""

    def __init__(self):
        self._drafts: Dict[str, OrderDraft] = {}
        self._payments: Dict[str, PaymentRecord] = {}
        self._orders: Dict[str, Order] = {}
        self._orders_by_gateway_order: Dict[str, str] = {}
        self._review_flags: List[ReviewFlag] = []
        self._lock = asyncio.Lock()

    # ----- drafts -----

    async def save_draft(self, draft: OrderDraft) -> OrderDraft:
        async with self._lock:
            self._drafts[draft.draft_id] = draft.model_copy(deep=True)
            return draft

    async def find_draft(self, draft_id: str) -> Optional[OrderDraft]:
        draft = self._drafts.get(draft_id)
        return draft.model_copy(deep=True) if draft else None

    async def find_draft_by_gateway_order(self, gateway_order_id: str) -> Optional[OrderDraft]:
        for draft in self._drafts.values():
            if draft.gateway_order_id == gateway_order_id:
                return draft.model_copy(deep=True)
        return None

    async def delete_expired_drafts(self, now: datetime) -> int:
        async with self._lock:
            promoted = {o.draft_id for o in self._orders.values()}
            awaiting = {
                r.gateway_order_id
                for r in self._payments.values()
                if r.status == PaymentRecordStatus.VERIFIED
            }
            stale = [
                draft_id
                for draft_id, draft in self._drafts.items()
                if draft_id in promoted
                or (draft.is_expired(now) and draft.gateway_order_id not in awaiting)
            ]
            for draft_id in stale:
                del self._drafts[draft_id]
            return len(stale)

    async def list_unreconciled_drafts(self, created_before: datetime, limit: int) -> List[OrderDraft]:
        drafts = [
            d for d in self._drafts.values()
            if d.gateway_order_id
            and d.created_at <= created_before
            and d.gateway_order_id not in self._orders_by_gateway_order
        ]
        drafts.sort(key=lambda d: d.created_at)
        return [d.model_copy(deep=True) for d in drafts[:limit]]

    # ----- payments -----

    async def find_payment_by_gateway_id(self, gateway_payment_id: str) -> Optional[PaymentRecord]:
        record = self._payments.get(gateway_payment_id)
        return record.model_copy(deep=True) if record else None

    async def save_payment(self, record: PaymentRecord) -> PaymentRecord:
        async with self._lock:
            existing = self._payments.get(record.gateway_payment_id)
            if existing is not None and existing.is_settled:
                raise StorageConflictError(
                    "Payment already captured",
                    gateway_payment_id=record.gateway_payment_id,
                )
            if existing is not None:
                record = record.model_copy(update={"created_at": existing.created_at})
            stored = record.model_copy(update={"updated_at": utcnow()})
            self._payments[record.gateway_payment_id] = stored
            return stored.model_copy(deep=True)

    async def insert_payment_if_absent(self, record: PaymentRecord) -> Optional[PaymentRecord]:
        async with self._lock:
            if record.gateway_payment_id in self._payments:
                return None
            stored = record.model_copy(update={"updated_at": utcnow()})
            self._payments[record.gateway_payment_id] = stored
            return stored.model_copy(deep=True)

    async def list_payments(self, status: PaymentRecordStatus, limit: int = 100) -> List[PaymentRecord]:
        records = sorted(
            (r for r in self._payments.values() if r.status == status),
            key=lambda r: r.updated_at,
        )
        return [r.model_copy(deep=True) for r in records[:limit]]

    # ----- orders -----

    async def upsert_payment_and_order(self, payment: PaymentRecord, order: Order) -> Order:
        async with self._lock:
            existing_payment = self._payments.get(payment.gateway_payment_id)
            if existing_payment is not None and existing_payment.is_settled:
                raise StorageConflictError(
                    "Payment already captured",
                    gateway_payment_id=payment.gateway_payment_id,
                )

            existing_order_id = self._orders_by_gateway_order.get(order.gateway_order_id)
            if existing_order_id is not None:
                current = self._orders[existing_order_id]
                if current.payment_status != PaymentStatus.PENDING:
                    raise StorageConflictError(
                        "Order already settled",
                        order_id=current.order_id,
                        gateway_payment_id=current.gateway_payment_id,
                    )
                final = current.confirm_payment(payment, _confirm_description(order))
            else:
                if order.order_id in self._orders:
                    raise StorageConflictError("Order id already taken", order_id=order.order_id)
                final = order

            captured = payment.model_copy(update={
                "status": PaymentRecordStatus.CAPTURED,
                "created_at": existing_payment.created_at if existing_payment else payment.created_at,
                "updated_at": utcnow(),
            })

            # Both writes happen only after every guard has passed.
            self._payments[captured.gateway_payment_id] = captured
            self._orders[final.order_id] = final.model_copy(deep=True)
            self._orders_by_gateway_order[final.gateway_order_id] = final.order_id
            logger.debug("order_upserted", order_id=final.order_id, gateway_payment_id=captured.gateway_payment_id)
            return final.model_copy(deep=True)

    async def find_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def find_order_by_gateway_order(self, gateway_order_id: str) -> Optional[Order]:
        order_id = self._orders_by_gateway_order.get(gateway_order_id)
        return await self.find_order(order_id) if order_id else None

    async def update_order_status(self, order_id: str, update: StatusUpdate) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            updated = order.transition_status(update)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def apply_refund(self, gateway_payment_id: str, refund: RefundEntry) -> Optional[Order]:
        async with self._lock:
            order = next(
                (o for o in self._orders.values() if o.gateway_payment_id == gateway_payment_id),
                None,
            )
            if order is None:
                return None
            updated = order.record_refund(refund)
            self._orders[updated.order_id] = updated

            record = self._payments.get(gateway_payment_id)
            if record is not None and record.status == PaymentRecordStatus.CAPTURED:
                self._payments[gateway_payment_id] = record.model_copy(update={
                    "status": PaymentRecordStatus.REFUNDED,
                    "updated_at": utcnow(),
                })
            return updated.model_copy(deep=True)

    # ----- review -----

    async def flag_for_review(self, flag: ReviewFlag) -> ReviewFlag:
        async with self._lock:
            self._review_flags.append(flag)
            logger.warning(
                "payment_flagged_for_review",
                reason=flag.reason,
                gateway_payment_id=flag.gateway_payment_id,
                gateway_order_id=flag.gateway_order_id,
            )
            return flag

    async def list_review_flags(self, limit: int = 100) -> List[ReviewFlag]:
        return list(self._review_flags[-limit:])
