"""Unit tests for the versioned stores and the optimistic write loop."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.errors import CoreError, ErrorKind
from src.models import CouponDisclosure, CouponState, Currency, PaymentIntent, PaymentStatus
from src.optimistic import backoff_delay, optimistic_update

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_intent(intent_id: str = "pi-test", expires_in: timedelta = timedelta(minutes=30)) -> PaymentIntent:
    return PaymentIntent(
        id=intent_id,
        fiat_amount=Decimal("29.99"),
        currency=Currency.MATIC,
        token_amount=Decimal("42.842857142857142857"),
        destination_address="0x1111111111111111111111111111111111111111",
        required_confirmations=6,
        status=PaymentStatus.AWAITING_TX,
        created_at=NOW,
        expires_at=NOW + expires_in,
        metadata={"mintNFT": "true", "tier": "LUXURY"},
    )


@pytest.mark.unit
class TestVersionedStore:
    """Test conditional writes and due-record queries."""

    async def test_insert_and_get_round_trip(self, test_db):
        intent = make_intent()
        assert await test_db.intents.insert(intent) is True

        stored = await test_db.intents.get("pi-test")
        assert stored is not None
        assert stored.version == 1
        assert stored.token_amount == Decimal("42.842857142857142857")
        assert stored.metadata == {"mintNFT": "true", "tier": "LUXURY"}
        assert stored.expires_at == intent.expires_at

    async def test_duplicate_insert_rejected(self, test_db):
        assert await test_db.intents.insert(make_intent()) is True
        assert await test_db.intents.insert(make_intent()) is False

    async def test_get_missing_returns_none(self, test_db):
        assert await test_db.intents.get("pi-missing") is None

    async def test_put_if_version_increments(self, test_db):
        await test_db.intents.insert(make_intent())
        intent = await test_db.intents.get("pi-test")

        intent.confirmations = 2
        assert await test_db.intents.put_if_version(intent, 1) is True
        assert intent.version == 2

        stored = await test_db.intents.get("pi-test")
        assert stored.version == 2
        assert stored.confirmations == 2

    async def test_stale_version_loses(self, test_db):
        await test_db.intents.insert(make_intent())
        first = await test_db.intents.get("pi-test")
        second = await test_db.intents.get("pi-test")

        first.confirmations = 1
        assert await test_db.intents.put_if_version(first, first.version) is True

        second.confirmations = 5
        assert await test_db.intents.put_if_version(second, second.version) is False
        assert second.version == 1

        stored = await test_db.intents.get("pi-test")
        assert stored.confirmations == 1
        assert stored.version == 2

    async def test_list_due_skips_terminal_and_future(self, test_db):
        await test_db.intents.insert(make_intent("pi-overdue", expires_in=timedelta(minutes=-1)))
        await test_db.intents.insert(make_intent("pi-future", expires_in=timedelta(minutes=10)))

        verified = make_intent("pi-verified", expires_in=timedelta(minutes=-5))
        verified.status = PaymentStatus.VERIFIED
        await test_db.intents.insert(verified)

        due = await test_db.intents.list_due(NOW)
        assert [i.id for i in due] == ["pi-overdue"]

    async def test_list_by_status(self, test_db):
        await test_db.intents.insert(make_intent("pi-a"))
        failed = make_intent("pi-b")
        failed.status = PaymentStatus.FAILED
        await test_db.intents.insert(failed)

        assert [i.id for i in await test_db.intents.list_by_status(PaymentStatus.FAILED)] == ["pi-b"]

    async def test_coupon_plaintext_not_in_repr(self, test_db):
        coupon = CouponDisclosure(
            id="cd-1",
            receipt_id="receipt-1",
            holder_address="0xAbC0000000000000000000000000000000000001",
            capsule="cap",
            ciphertext="ct",
            policy_id="policy-1",
            valid_from=NOW,
            valid_until=NOW + timedelta(days=1),
            state=CouponState.REVEALED,
            revealed_plaintext="SECRET-CODE",
        )
        await test_db.coupons.insert(coupon)
        stored = await test_db.coupons.get("cd-1")

        assert stored.revealed_plaintext == "SECRET-CODE"
        assert "SECRET-CODE" not in repr(stored)
        assert "revealed_plaintext" not in stored.public_view()

    async def test_receipt_holder_lookup(self, test_db):
        coupon = CouponDisclosure(
            id="cd-1",
            receipt_id="receipt-1",
            holder_address="0xAbC0000000000000000000000000000000000001",
            capsule="cap",
            ciphertext="ct",
            policy_id="policy-1",
            valid_from=NOW,
            valid_until=NOW + timedelta(days=1),
        )
        await test_db.coupons.insert(coupon)

        assert await test_db.coupons.receipt_holder("receipt-1") == coupon.holder_address
        assert await test_db.coupons.receipt_holder("receipt-2") is None


@pytest.mark.unit
class TestOptimisticUpdate:
    """Test the bounded read-transform-write loop."""

    async def test_applies_transition(self, test_db):
        await test_db.intents.insert(make_intent())

        def bump(intent):
            intent.confirmations += 1
            return intent

        updated = await optimistic_update(test_db.intents, "pi-test", bump)
        assert updated.confirmations == 1
        assert updated.version == 2

    async def test_noop_transition_does_not_write(self, test_db):
        await test_db.intents.insert(make_intent())

        result = await optimistic_update(test_db.intents, "pi-test", lambda intent: None)
        assert result.version == 1
        assert (await test_db.intents.get("pi-test")).version == 1

    async def test_missing_record_is_not_found(self, test_db):
        with pytest.raises(CoreError) as exc_info:
            await optimistic_update(test_db.intents, "pi-missing", lambda intent: intent)
        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    async def test_retries_after_lost_race(self, test_db):
        await test_db.intents.insert(make_intent())
        calls = []

        def racing(intent):
            calls.append(intent.version)
            return intent

        original_put = test_db.intents.put_if_version
        interfered = False

        async def put_with_interference(record, expected_version):
            nonlocal interfered
            if not interfered:
                interfered = True
                rival = await test_db.intents.get(record.id)
                rival.confirmations = 3
                await original_put(rival, rival.version)
            return await original_put(record, expected_version)

        test_db.intents.put_if_version = put_with_interference
        updated = await optimistic_update(test_db.intents, "pi-test", racing, base_delay=0)

        assert calls == [1, 2]
        assert updated.version == 3
        assert updated.confirmations == 3

    async def test_contention_after_exhausting_attempts(self, test_db):
        await test_db.intents.insert(make_intent())

        async def always_lose(record, expected_version):
            return False

        test_db.intents.put_if_version = always_lose
        with pytest.raises(CoreError) as exc_info:
            await optimistic_update(
                test_db.intents, "pi-test", lambda intent: intent, attempts=3, base_delay=0
            )
        assert exc_info.value.kind is ErrorKind.CONTENTION
        assert exc_info.value.details == {"attempts": 3}

    async def test_transition_errors_propagate(self, test_db):
        await test_db.intents.insert(make_intent())

        def reject(intent):
            raise CoreError(ErrorKind.INVALID_STATE, "nope")

        with pytest.raises(CoreError) as exc_info:
            await optimistic_update(test_db.intents, "pi-test", reject)
        assert exc_info.value.kind is ErrorKind.INVALID_STATE

    def test_backoff_grows_exponentially(self):
        assert backoff_delay(0, 0.1, jitter=0) == pytest.approx(0.1)
        assert backoff_delay(2, 0.1, jitter=0) == pytest.approx(0.4)
        assert 0.075 <= backoff_delay(0, 0.1) <= 0.125
