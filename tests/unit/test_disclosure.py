"""Unit tests for coupon reveal and claim."""

import asyncio
from datetime import timedelta

import pytest

from src.config import Config
from src.disclosure.authorization import SignatureAuthorizationVerifier
from src.disclosure.engine import DisclosureEngine
from src.errors import CoreError, ErrorKind
from src.models import CouponState, HolderProof


@pytest.fixture
async def coupon(engine, clock, holder_address):
    return await engine.create_coupon(
        "receipt-1",
        "LUXURY-25-OFF",
        valid_from=clock() - timedelta(hours=1),
        valid_until=clock() + timedelta(days=7),
        holder_address=holder_address,
        coupon_id="cd-test",
    )


@pytest.mark.unit
class TestCreateCoupon:
    async def test_created_locked_without_plaintext(self, coupon, engine):
        stored = await engine.get_coupon(coupon.id)
        assert stored.state is CouponState.LOCKED
        assert stored.revealed_plaintext is None
        assert stored.ciphertext != "LUXURY-25-OFF"
        assert stored.policy_id.startswith("policy-")

    async def test_empty_window_rejected(self, engine, clock, holder_address):
        with pytest.raises(CoreError) as exc_info:
            await engine.create_coupon("receipt-1", "CODE", clock(), clock(), holder_address)
        assert exc_info.value.kind is ErrorKind.INVALID_INPUT

    async def test_duplicate_id_conflicts(self, coupon, engine, clock, holder_address):
        with pytest.raises(CoreError) as exc_info:
            await engine.create_coupon(
                "receipt-1", "OTHER", clock(), clock() + timedelta(days=1), holder_address, coupon_id=coupon.id
            )
        assert exc_info.value.kind is ErrorKind.CONFLICT

    async def test_holder_address_required(self, engine, clock):
        with pytest.raises(CoreError) as exc_info:
            await engine.create_coupon("receipt-1", "CODE", clock(), clock() + timedelta(days=1), "")
        assert exc_info.value.kind is ErrorKind.INVALID_INPUT

    async def test_receipt_keeps_one_holder(self, coupon, engine, clock, other_proof):
        with pytest.raises(CoreError) as exc_info:
            await engine.create_coupon(
                "receipt-1", "SECOND", clock(), clock() + timedelta(days=1), other_proof.holder
            )
        assert exc_info.value.kind is ErrorKind.CONFLICT
        assert exc_info.value.details == {"holder_address": coupon.holder_address}

    async def test_configured_write_attempts_are_used(self, coupon, test_db, threshold, clock, tmp_path, holder_proof):
        cfg = Config(
            database_path=str(tmp_path / "x.db"),
            optimistic_write_attempts=1,
            optimistic_backoff_seconds=0,
        )
        engine = DisclosureEngine(test_db.coupons, threshold, SignatureAuthorizationVerifier(), cfg, clock=clock)
        writes = []

        async def always_lose(record, expected_version):
            writes.append(expected_version)
            return False

        test_db.coupons.put_if_version = always_lose
        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.CONTENTION
        assert len(writes) == 1

    async def test_missing_coupon_not_found(self, engine, holder_proof):
        with pytest.raises(CoreError) as exc_info:
            await engine.reveal("cd-missing", holder_proof)
        assert exc_info.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.unit
class TestReveal:
    """Test repeatable, cached disclosure."""

    async def test_reveal_three_times_decrypts_once(self, coupon, engine, threshold, holder_proof):
        codes = [await engine.reveal(coupon.id, holder_proof) for _ in range(3)]

        assert codes == ["LUXURY-25-OFF"] * 3
        assert threshold.decrypt_calls == 1
        assert (await engine.get_coupon(coupon.id)).state is CouponState.REVEALED

    async def test_concurrent_reveals_decrypt_once(self, coupon, engine, threshold, holder_proof):
        codes = await asyncio.gather(*(engine.reveal(coupon.id, holder_proof) for _ in range(4)))

        assert set(codes) == {"LUXURY-25-OFF"}
        assert threshold.decrypt_calls == 1
        assert (await engine.get_coupon(coupon.id)).state is CouponState.REVEALED

    async def test_expired_window_rejected_even_if_never_revealed(
        self, engine, clock, holder_proof, threshold, holder_address
    ):
        coupon = await engine.create_coupon(
            "receipt-1",
            "SUMMER",
            valid_from=clock() - timedelta(days=1),
            valid_until=clock() - timedelta(seconds=1),
            holder_address=holder_address,
        )

        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.EXPIRED
        assert threshold.decrypt_calls == 0
        assert (await engine.get_coupon(coupon.id)).state is CouponState.LOCKED

    async def test_cached_code_not_served_after_window(self, coupon, engine, clock, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        clock.advance(days=8)

        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.EXPIRED

    async def test_not_yet_valid(self, engine, clock, holder_proof, holder_address):
        coupon = await engine.create_coupon(
            "receipt-1",
            "EARLY",
            valid_from=clock() + timedelta(hours=1),
            valid_until=clock() + timedelta(days=1),
            holder_address=holder_address,
        )

        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.INVALID_STATE

    async def test_policy_enforces_window_when_local_check_is_skewed(self, coupon, engine, threshold, clock, holder_proof):
        # The threshold network's clock is past the window while the engine's is not
        threshold.clock = lambda: clock() + timedelta(days=30)

        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.EXPIRED
        assert (await engine.get_coupon(coupon.id)).state is CouponState.LOCKED

    async def test_quorum_loss_is_retryable(self, coupon, engine, threshold, holder_proof):
        threshold.set_quorum_available(False)
        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.DISCLOSURE_UNAVAILABLE
        assert (await engine.get_coupon(coupon.id)).state is CouponState.LOCKED

        threshold.set_quorum_available(True)
        assert await engine.reveal(coupon.id, holder_proof) == "LUXURY-25-OFF"
        assert threshold.decrypt_calls == 2

    async def test_missing_proof_unauthorized(self, coupon, engine):
        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, None)
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED

    async def test_proof_for_other_receipt_unauthorized(self, coupon, engine, sign_proof, threshold):
        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, sign_proof("receipt-2"))
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert threshold.decrypt_calls == 0

    async def test_forged_holder_unauthorized(self, coupon, engine, holder_proof, other_proof):
        forged = HolderProof(holder=other_proof.holder, signature=holder_proof.signature)

        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, forged)
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED

    async def test_stranger_with_valid_signature_unauthorized(
        self, coupon, engine, threshold, holder_proof, other_proof
    ):
        # other_proof is a correct signature over this receipt, from a different wallet
        for operation in (engine.reveal, engine.claim):
            with pytest.raises(CoreError) as exc_info:
                await operation(coupon.id, other_proof)
            assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert threshold.decrypt_calls == 0

        await engine.reveal(coupon.id, holder_proof)
        with pytest.raises(CoreError) as exc_info:
            await engine.claim(coupon.id, other_proof)
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert (await engine.get_coupon(coupon.id)).state is CouponState.REVEALED


@pytest.mark.unit
class TestClaim:
    """Test at-most-once redemption."""

    async def test_claim_requires_reveal(self, coupon, engine, holder_proof):
        with pytest.raises(CoreError) as exc_info:
            await engine.claim(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.INVALID_STATE

    async def test_claim_records_holder(self, coupon, engine, clock, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        claimed = await engine.claim(coupon.id, holder_proof)

        assert claimed.state is CouponState.CLAIMED
        assert claimed.claimed_by == holder_proof.holder
        assert claimed.claimed_at == clock()

    async def test_second_claim_already_claimed(self, coupon, engine, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        await engine.claim(coupon.id, holder_proof)

        with pytest.raises(CoreError) as exc_info:
            await engine.claim(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.ALREADY_CLAIMED

    async def test_concurrent_claims_exactly_one_wins(self, coupon, engine, holder_proof):
        await engine.reveal(coupon.id, holder_proof)

        results = await asyncio.gather(
            engine.claim(coupon.id, holder_proof),
            engine.claim(coupon.id, holder_proof),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, CoreError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].kind is ErrorKind.ALREADY_CLAIMED

        stored = await engine.get_coupon(coupon.id)
        assert stored.state is CouponState.CLAIMED
        assert stored.claimed_by == winners[0].claimed_by

    async def test_claimed_coupon_cannot_be_revealed(self, coupon, engine, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        await engine.claim(coupon.id, holder_proof)

        with pytest.raises(CoreError) as exc_info:
            await engine.reveal(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.INVALID_STATE

    async def test_claim_after_window_expired(self, coupon, engine, clock, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        clock.advance(days=8)

        with pytest.raises(CoreError) as exc_info:
            await engine.claim(coupon.id, holder_proof)
        assert exc_info.value.kind is ErrorKind.EXPIRED
        assert (await engine.get_coupon(coupon.id)).state is CouponState.REVEALED


@pytest.mark.unit
class TestCouponExpiry:
    async def test_expire_clears_cached_code(self, coupon, engine, clock, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        clock.advance(days=8)

        expired = await engine.expire(coupon.id)
        assert expired.state is CouponState.EXPIRED
        assert expired.revealed_plaintext is None

    async def test_claimed_coupon_never_expires(self, coupon, engine, clock, holder_proof):
        await engine.reveal(coupon.id, holder_proof)
        await engine.claim(coupon.id, holder_proof)
        clock.advance(days=30)

        assert (await engine.expire(coupon.id)).state is CouponState.CLAIMED

    async def test_expire_inside_window_is_noop(self, coupon, engine):
        result = await engine.expire(coupon.id)
        assert result.state is CouponState.LOCKED
        assert result.version == coupon.version
