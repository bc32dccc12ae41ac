"""Tests for the order store guards."""

import asyncio
from datetime import timedelta

import pytest

from storefront.pipeline.errors import (
    InvalidTransitionError,
    StorageConflictError,
    StorageUnavailableError,
)
from storefront.schemas.orders import (
    Order,
    OrderStatus,
    PaymentRecord,
    PaymentRecordStatus,
    PaymentStatus,
    RefundEntry,
    ReviewFlag,
    StatusUpdate,
    utcnow,
)
from storefront.storage.postgres import _translate_errors


def record(payment_id="pay_0001", status=PaymentRecordStatus.CAPTURED, order_id="order_0001"):
    return PaymentRecord(
        gateway_payment_id=payment_id,
        gateway_order_id=order_id,
        status=status,
        amount_minor_units=4253,
        method="upi",
    )


def paid_order(draft, payment):
    return Order.from_draft(draft, payment.gateway_order_id).confirm_payment(payment, "captured")


class TestDrafts:

    def test_save_and_find(self, store, draft):
        async def scenario():
            await store.save_draft(draft)
            return (
                await store.find_draft(draft.draft_id),
                await store.find_draft_by_gateway_order("order_0001"),
                await store.find_draft("DRF-missing"),
            )

        by_id, by_gateway, missing = asyncio.run(scenario())
        assert by_id == draft
        assert by_gateway.draft_id == draft.draft_id
        assert missing is None

    def test_returned_drafts_are_copies(self, store, draft):
        async def scenario():
            await store.save_draft(draft)
            found = await store.find_draft(draft.draft_id)
            found.gateway_order_id = "order_tampered"
            return await store.find_draft(draft.draft_id)

        assert asyncio.run(scenario()).gateway_order_id == "order_0001"

    def test_delete_expired_and_promoted(self, store, make_draft, low_tier_items):
        fresh = make_draft(low_tier_items, gateway_order_id="order_fresh")
        expired = make_draft(low_tier_items, gateway_order_id="order_old").model_copy(
            update={"expires_at": utcnow() - timedelta(minutes=1)}
        )
        promoted = make_draft(low_tier_items, gateway_order_id="order_paid")
        payment = record(order_id="order_paid")

        async def scenario():
            for d in (fresh, expired, promoted):
                await store.save_draft(d)
            await store.upsert_payment_and_order(payment, paid_order(promoted, payment))
            deleted = await store.delete_expired_drafts(utcnow())
            remaining = [await store.find_draft(d.draft_id) for d in (fresh, expired, promoted)]
            return deleted, remaining

        deleted, remaining = asyncio.run(scenario())
        assert deleted == 2
        assert remaining[0] is not None
        assert remaining[1] is None and remaining[2] is None

    def test_expired_draft_kept_for_verified_payment(self, store, make_draft, low_tier_items):
        waiting = make_draft(low_tier_items, gateway_order_id="order_waiting").model_copy(
            update={"expires_at": utcnow() - timedelta(minutes=1)}
        )

        async def scenario():
            await store.save_draft(waiting)
            await store.save_payment(record("pay_1", PaymentRecordStatus.VERIFIED, order_id="order_waiting"))
            kept = await store.delete_expired_drafts(utcnow() + timedelta(hours=1))
            await store.save_payment(record("pay_1", PaymentRecordStatus.FAILED, order_id="order_waiting"))
            reaped = await store.delete_expired_drafts(utcnow() + timedelta(hours=1))
            return kept, reaped

        assert asyncio.run(scenario()) == (0, 1)

    def test_list_unreconciled_drafts(self, store, make_draft, low_tier_items):
        old = make_draft(low_tier_items, gateway_order_id="order_a").model_copy(
            update={"created_at": utcnow() - timedelta(minutes=10)}
        )
        recent = make_draft(low_tier_items, gateway_order_id="order_b")
        no_gateway = make_draft(low_tier_items, gateway_order_id=None).model_copy(
            update={"created_at": utcnow() - timedelta(minutes=10)}
        )

        async def scenario():
            for d in (old, recent, no_gateway):
                await store.save_draft(d)
            return await store.list_unreconciled_drafts(utcnow() - timedelta(minutes=5), limit=10)

        assert [d.draft_id for d in asyncio.run(scenario())] == [old.draft_id]


class TestPayments:

    def test_save_payment_keeps_created_at(self, store):
        async def scenario():
            first = await store.save_payment(record(status=PaymentRecordStatus.VERIFIED))
            second = await store.save_payment(record(status=PaymentRecordStatus.FAILED))
            return first, second

        first, second = asyncio.run(scenario())
        assert second.created_at == first.created_at
        assert second.status == PaymentRecordStatus.FAILED

    def test_captured_record_is_never_overwritten(self, store, draft):
        payment = record()

        async def scenario():
            await store.upsert_payment_and_order(payment, paid_order(draft, payment))
            with pytest.raises(StorageConflictError):
                await store.save_payment(record(status=PaymentRecordStatus.FAILED))
            return await store.find_payment_by_gateway_id("pay_0001")

        assert asyncio.run(scenario()).status == PaymentRecordStatus.CAPTURED

    def test_insert_if_absent_never_overwrites(self, store):
        async def scenario():
            first = await store.insert_payment_if_absent(record(status=PaymentRecordStatus.VERIFIED))
            second = await store.insert_payment_if_absent(record(status=PaymentRecordStatus.FAILED))
            return first, second, await store.find_payment_by_gateway_id("pay_0001")

        first, second, stored = asyncio.run(scenario())
        assert first.status == PaymentRecordStatus.VERIFIED
        assert second is None
        assert stored.status == PaymentRecordStatus.VERIFIED

    def test_list_payments_by_status(self, store):
        async def scenario():
            await store.save_payment(record("pay_1", PaymentRecordStatus.VERIFIED))
            await store.save_payment(record("pay_2", PaymentRecordStatus.FAILED))
            await store.save_payment(record("pay_3", PaymentRecordStatus.VERIFIED))
            return await store.list_payments(PaymentRecordStatus.VERIFIED)

        assert [r.gateway_payment_id for r in asyncio.run(scenario())] == ["pay_1", "pay_3"]


class TestAtomicUpsert:

    def test_second_capture_of_same_payment_conflicts(self, store, draft):
        payment = record()

        async def scenario():
            await store.upsert_payment_and_order(payment, paid_order(draft, payment))
            with pytest.raises(StorageConflictError):
                await store.upsert_payment_and_order(payment, paid_order(draft, payment))

        asyncio.run(scenario())

    def test_paid_order_rejects_another_payment(self, store, draft):
        first, second = record("pay_1"), record("pay_2")

        async def scenario():
            await store.upsert_payment_and_order(first, paid_order(draft, first))
            with pytest.raises(StorageConflictError):
                await store.upsert_payment_and_order(second, paid_order(draft, second))
            return await store.find_payment_by_gateway_id("pay_2"), await store.find_order_by_gateway_order("order_0001")

        missing, order = asyncio.run(scenario())
        assert missing is None
        assert order.gateway_payment_id == "pay_1"

    def test_upsert_marks_record_captured(self, store, draft):
        verified = record(status=PaymentRecordStatus.VERIFIED)

        async def scenario():
            await store.save_payment(verified)
            captured = record()
            await store.upsert_payment_and_order(captured, paid_order(draft, captured))
            return await store.find_payment_by_gateway_id("pay_0001")

        assert asyncio.run(scenario()).is_captured


class TestRefunds:

    def test_apply_refund_is_idempotent(self, store, draft):
        payment = record()
        refund = RefundEntry(refund_id="rfnd_1", amount=1000)

        async def scenario():
            await store.upsert_payment_and_order(payment, paid_order(draft, payment))
            await store.apply_refund("pay_0001", refund)
            order = await store.apply_refund("pay_0001", refund)
            return order, await store.find_payment_by_gateway_id("pay_0001")

        order, stored = asyncio.run(scenario())
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.refunded_amount == 1000
        assert stored.status == PaymentRecordStatus.REFUNDED
        assert stored.is_settled

    def test_refund_for_unknown_payment(self, store):
        assert asyncio.run(store.apply_refund("pay_x", RefundEntry(refund_id="r", amount=1))) is None


class TestOrderStatus:

    def test_status_update_is_persisted(self, store, draft):
        payment = record()

        async def scenario():
            order = await store.upsert_payment_and_order(payment, paid_order(draft, payment))
            await store.update_order_status(
                order.order_id, StatusUpdate(status=OrderStatus.SHIPPED, tracking_number="AWB123")
            )
            return await store.find_order(order.order_id)

        stored = asyncio.run(scenario())
        assert stored.status == OrderStatus.SHIPPED
        assert stored.fulfilment.tracking_number == "AWB123"
        assert stored.fulfilment.shipped_at is not None

    def test_rejected_transition_leaves_order_unchanged(self, store, draft):
        payment = record()

        async def scenario():
            order = await store.upsert_payment_and_order(payment, paid_order(draft, payment))
            with pytest.raises(InvalidTransitionError):
                await store.update_order_status(order.order_id, StatusUpdate(status=OrderStatus.DELIVERED))
            return await store.find_order(order.order_id)

        assert asyncio.run(scenario()).status == OrderStatus.CONFIRMED

    def test_unknown_order(self, store):
        update = StatusUpdate(status=OrderStatus.CANCELLED)
        assert asyncio.run(store.update_order_status("ORD-000000000000", update)) is None


class TestReviewFlags:

    def test_flags_are_listed(self, store):
        flag = ReviewFlag(gateway_payment_id="pay_1", gateway_order_id="order_1", reason="AMOUNT_MISMATCH")

        async def scenario():
            await store.flag_for_review(flag)
            return await store.list_review_flags()

        assert [f.flag_id for f in asyncio.run(scenario())] == [flag.flag_id]


class TestPostgresErrorTranslation:

    def test_transient_driver_error_is_unavailable(self):
        async def scenario():
            async with _translate_errors("save_payment"):
                raise ConnectionRefusedError("connection refused")

        with pytest.raises(StorageUnavailableError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.details == {"operation": "save_payment"}

    def test_other_errors_pass_through(self):
        async def scenario():
            async with _translate_errors("find_order"):
                raise KeyError("payload")

        with pytest.raises(KeyError):
            asyncio.run(scenario())
