"""
PostgreSQL order store.

Orders and drafts are stored as JSONB payloads beside the indexed columns the
guards need. The captured-payment guard is the conditional upsert

    INSERT ... ON CONFLICT (gateway_payment_id) DO UPDATE ...
    WHERE payment_records.status NOT IN ('captured', 'refunded')
    RETURNING gateway_payment_id

which returns no row when another transaction already captured the payment.

pip install asyncpg
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import asyncpg

from storefront.database import Database
from storefront.logger import get_logger
from storefront.pipeline.errors import (
    StorageConflictError,
    StorageUnavailableError,
)
from storefront.schemas.orders import (
    Order,
    OrderDraft,
    PaymentRecord,
    PaymentRecordStatus,
    PaymentStatus,
    RefundEntry,
    ReviewFlag,
    StatusUpdate,
)
from storefront.storage.base import IOrderStore

logger = get_logger("order_store", backend="postgres")

TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
)

PAYMENT_COLUMNS = (
    "gateway_payment_id, gateway_order_id, signature, status, amount_minor_units, "
    "currency, method, reason, captured_at, created_at, updated_at"
)


@asynccontextmanager
async def _translate_errors(operation: str):
    """Map driver errors onto the store's error contract."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise StorageConflictError(str(e), operation=operation) from e
    except TRANSIENT_ERRORS as e:
        logger.warning("store_unavailable", operation=operation, error=str(e))
        raise StorageUnavailableError(str(e), operation=operation) from e


def _payment_from_row(row) -> PaymentRecord:
    return PaymentRecord(**dict(row))


def _payment_args(record: PaymentRecord):
    return (
        record.gateway_payment_id,
        record.gateway_order_id,
        record.signature,
        record.status.value,
        record.amount_minor_units,
        record.currency,
        record.method,
        record.reason,
        record.captured_at,
        record.created_at,
    )


class PostgresOrderStore(IOrderStore):
    """IOrderStore on top of the shared asyncpg pool."""

    def __init__(self, database=Database):
        self.db = database

    # ----- drafts -----

    async def save_draft(self, draft: OrderDraft) -> OrderDraft:
        async with _translate_errors("save_draft"):
            await self.db.execute(
                """
                INSERT INTO order_drafts (draft_id, gateway_order_id, payload, created_at, expires_at)
                VALUES ($1, $2, $3::jsonb, $4, $5)
                ON CONFLICT (draft_id) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    expires_at = EXCLUDED.expires_at
                """,
                draft.draft_id,
                draft.gateway_order_id,
                draft.model_dump_json(),
                draft.created_at,
                draft.expires_at,
            )
        return draft

    async def find_draft(self, draft_id: str) -> Optional[OrderDraft]:
        async with _translate_errors("find_draft"):
            row = await self.db.fetch_one(
                "SELECT payload FROM order_drafts WHERE draft_id = $1", draft_id
            )
        return OrderDraft.model_validate_json(row["payload"]) if row else None

    async def find_draft_by_gateway_order(self, gateway_order_id: str) -> Optional[OrderDraft]:
        async with _translate_errors("find_draft_by_gateway_order"):
            row = await self.db.fetch_one(
                "SELECT payload FROM order_drafts WHERE gateway_order_id = $1", gateway_order_id
            )
        return OrderDraft.model_validate_json(row["payload"]) if row else None

    async def delete_expired_drafts(self, now: datetime) -> int:
        async with _translate_errors("delete_expired_drafts"):
            status = await self.db.execute(
                """
                DELETE FROM order_drafts d
                WHERE EXISTS (SELECT 1 FROM orders o WHERE o.draft_id = d.draft_id)
                   OR (
                       d.expires_at <= $1
                       AND NOT EXISTS (
                           SELECT 1 FROM payment_records p
                           WHERE p.gateway_order_id = d.gateway_order_id
                             AND p.status = 'verified'
                       )
                   )
                """,
                now,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])

    async def list_unreconciled_drafts(self, created_before: datetime, limit: int) -> List[OrderDraft]:
        async with _translate_errors("list_unreconciled_drafts"):
            rows = await self.db.fetch_all(
                """
                SELECT d.payload FROM order_drafts d
                WHERE d.gateway_order_id IS NOT NULL
                  AND d.created_at <= $1
                  AND NOT EXISTS (
                      SELECT 1 FROM orders o WHERE o.gateway_order_id = d.gateway_order_id
                  )
                ORDER BY d.created_at
                LIMIT $2
                """,
                created_before,
                limit,
            )
        return [OrderDraft.model_validate_json(row["payload"]) for row in rows]

    # ----- payments -----

    async def find_payment_by_gateway_id(self, gateway_payment_id: str) -> Optional[PaymentRecord]:
        async with _translate_errors("find_payment"):
            row = await self.db.fetch_one(
                f"SELECT {PAYMENT_COLUMNS} FROM payment_records WHERE gateway_payment_id = $1",
                gateway_payment_id,
            )
        return _payment_from_row(row) if row else None

    async def save_payment(self, record: PaymentRecord) -> PaymentRecord:
        async with _translate_errors("save_payment"):
            row = await self.db.fetch_one(
                f"""
                INSERT INTO payment_records ({PAYMENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW())
                ON CONFLICT (gateway_payment_id) DO UPDATE SET
                    signature = EXCLUDED.signature,
                    status = EXCLUDED.status,
                    amount_minor_units = EXCLUDED.amount_minor_units,
                    currency = EXCLUDED.currency,
                    method = EXCLUDED.method,
                    reason = EXCLUDED.reason,
                    updated_at = NOW()
                WHERE payment_records.status NOT IN ('captured', 'refunded')
                RETURNING {PAYMENT_COLUMNS}
                """,
                *_payment_args(record),
            )
        if row is None:
            raise StorageConflictError(
                "Payment already captured", gateway_payment_id=record.gateway_payment_id
            )
        return _payment_from_row(row)

    async def insert_payment_if_absent(self, record: PaymentRecord) -> Optional[PaymentRecord]:
        async with _translate_errors("insert_payment_if_absent"):
            row = await self.db.fetch_one(
                f"""
                INSERT INTO payment_records ({PAYMENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW())
                ON CONFLICT (gateway_payment_id) DO NOTHING
                RETURNING {PAYMENT_COLUMNS}
                """,
                *_payment_args(record),
            )
        return _payment_from_row(row) if row else None

    async def list_payments(self, status: PaymentRecordStatus, limit: int = 100) -> List[PaymentRecord]:
        async with _translate_errors("list_payments"):
            rows = await self.db.fetch_all(
                f"""
                SELECT {PAYMENT_COLUMNS} FROM payment_records
                WHERE status = $1 ORDER BY updated_at LIMIT $2
                """,
                status.value,
                limit,
            )
        return [_payment_from_row(row) for row in rows]

    # ----- orders -----

    async def upsert_payment_and_order(self, payment: PaymentRecord, order: Order) -> Order:
        async with _translate_errors("upsert_payment_and_order"):
            async with self.db.transaction() as conn:
                captured = await conn.fetchrow(
                    f"""
                    INSERT INTO payment_records ({PAYMENT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, NOW())
                    ON CONFLICT (gateway_payment_id) DO UPDATE SET
                        signature = EXCLUDED.signature,
                        status = EXCLUDED.status,
                        amount_minor_units = EXCLUDED.amount_minor_units,
                        currency = EXCLUDED.currency,
                        method = EXCLUDED.method,
                        reason = NULL,
                        captured_at = EXCLUDED.captured_at,
                        updated_at = NOW()
                    WHERE payment_records.status NOT IN ('captured', 'refunded')
                    RETURNING gateway_payment_id
                    """,
                    *_payment_args(payment.model_copy(update={"status": PaymentRecordStatus.CAPTURED})),
                )
                if captured is None:
                    raise StorageConflictError(
                        "Payment already captured", gateway_payment_id=payment.gateway_payment_id
                    )

                row = await conn.fetchrow(
                    "SELECT payload FROM orders WHERE gateway_order_id = $1 FOR UPDATE",
                    order.gateway_order_id,
                )
                if row is not None:
                    current = Order.model_validate_json(row["payload"])
                    if current.payment_status != PaymentStatus.PENDING:
                        raise StorageConflictError(
                            "Order already settled",
                            order_id=current.order_id,
                            gateway_payment_id=current.gateway_payment_id,
                        )
                    description = order.timeline[-1].description if order.timeline else "Payment captured"
                    final = current.confirm_payment(payment, description)
                    await self._update_order(conn, final)
                else:
                    final = order
                    inserted = await conn.fetchrow(
                        """
                        INSERT INTO orders (
                            order_id, gateway_order_id, gateway_payment_id, draft_id, status,
                            payment_status, grand_total, currency, payload, created_at,
                            updated_at, paid_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12)
                        ON CONFLICT DO NOTHING
                        RETURNING order_id
                        """,
                        final.order_id,
                        final.gateway_order_id,
                        final.gateway_payment_id,
                        final.draft_id,
                        final.status.value,
                        final.payment_status.value,
                        final.financials.grand_total,
                        final.currency,
                        final.model_dump_json(),
                        final.created_at,
                        final.updated_at,
                        final.paid_at,
                    )
                    if inserted is None:
                        raise StorageConflictError("Order already exists", order_id=final.order_id)

        logger.debug("order_upserted", order_id=final.order_id, gateway_payment_id=payment.gateway_payment_id)
        return final

    @staticmethod
    async def _update_order(conn, order: Order) -> None:
        await conn.execute(
            """
            UPDATE orders SET
                gateway_payment_id = $2,
                status = $3,
                payment_status = $4,
                payload = $5::jsonb,
                updated_at = $6,
                paid_at = $7
            WHERE order_id = $1
            """,
            order.order_id,
            order.gateway_payment_id,
            order.status.value,
            order.payment_status.value,
            order.model_dump_json(),
            order.updated_at,
            order.paid_at,
        )

    async def find_order(self, order_id: str) -> Optional[Order]:
        async with _translate_errors("find_order"):
            row = await self.db.fetch_one("SELECT payload FROM orders WHERE order_id = $1", order_id)
        return Order.model_validate_json(row["payload"]) if row else None

    async def find_order_by_gateway_order(self, gateway_order_id: str) -> Optional[Order]:
        async with _translate_errors("find_order_by_gateway_order"):
            row = await self.db.fetch_one(
                "SELECT payload FROM orders WHERE gateway_order_id = $1", gateway_order_id
            )
        return Order.model_validate_json(row["payload"]) if row else None

    async def update_order_status(self, order_id: str, update: StatusUpdate) -> Optional[Order]:
        async with _translate_errors("update_order_status"):
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(
                    "SELECT payload FROM orders WHERE order_id = $1 FOR UPDATE", order_id
                )
                if row is None:
                    return None
                updated = Order.model_validate_json(row["payload"]).transition_status(update)
                await self._update_order(conn, updated)
                return updated

    async def apply_refund(self, gateway_payment_id: str, refund: RefundEntry) -> Optional[Order]:
        async with _translate_errors("apply_refund"):
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(
                    "SELECT payload FROM orders WHERE gateway_payment_id = $1 FOR UPDATE",
                    gateway_payment_id,
                )
                if row is None:
                    return None
                current = Order.model_validate_json(row["payload"])
                updated = current.record_refund(refund)
                if updated is current:
                    return current
                await self._update_order(conn, updated)
                await conn.execute(
                    """
                    UPDATE payment_records SET status = 'refunded', updated_at = NOW()
                    WHERE gateway_payment_id = $1 AND status = 'captured'
                    """,
                    gateway_payment_id,
                )
                return updated

    # ----- review -----

    async def flag_for_review(self, flag: ReviewFlag) -> ReviewFlag:
        async with _translate_errors("flag_for_review"):
            await self.db.execute(
                """
                INSERT INTO review_flags (flag_id, gateway_payment_id, gateway_order_id, reason, details, created_at)
                VALUES ($1::uuid, $2, $3, $4, $5::jsonb, $6)
                """,
                flag.flag_id,
                flag.gateway_payment_id,
                flag.gateway_order_id,
                flag.reason,
                json.dumps(flag.details, default=str),
                flag.created_at,
            )
        logger.warning(
            "payment_flagged_for_review",
            reason=flag.reason,
            gateway_payment_id=flag.gateway_payment_id,
            gateway_order_id=flag.gateway_order_id,
        )
        return flag

    async def list_review_flags(self, limit: int = 100) -> List[ReviewFlag]:
        async with _translate_errors("list_review_flags"):
            rows = await self.db.fetch_all(
                """
                SELECT flag_id::text AS flag_id, gateway_payment_id, gateway_order_id,
                       reason, details, created_at
                FROM review_flags ORDER BY created_at DESC LIMIT $1
                """,
                limit,
            )
        return [
            ReviewFlag(
                flag_id=row["flag_id"],
                gateway_payment_id=row["gateway_payment_id"],
                gateway_order_id=row["gateway_order_id"],
                reason=row["reason"],
                details=json.loads(row["details"]) if isinstance(row["details"], str) else row["details"],
                created_at=row["created_at"],
            )
            for row in reversed(rows)
        ]

    async def close(self) -> None:
        await self.db.close()
