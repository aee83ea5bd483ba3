"""Time-boxed coupon disclosure.

A coupon code is threshold-encrypted under a policy bound to its validity
window. Holders may reveal it as often as they like inside the window;
redeeming it is a separate, at-most-once claim:

    Locked -> Revealed -> Claimed
    Locked | Revealed -> Expired   (ExpirySweeper only)
"""

import asyncio
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from src.config import Config, config
from src.database import DisclosureStore
from src.disclosure.authorization import AuthorizationVerifier
from src.disclosure.threshold import ThresholdDisclosureClient
from src.errors import CoreError, ErrorKind
from src.logging_utils import get_logger
from src.models import CouponDisclosure, CouponState, HolderProof, ensure_utc, utcnow
from src.optimistic import optimistic_update

logger = get_logger(__name__)

T = TypeVar("T")

# Collaborator errors surfaced under the engine's own kinds
THRESHOLD_ERROR_KINDS = {
    ErrorKind.QUORUM_UNAVAILABLE: ErrorKind.DISCLOSURE_UNAVAILABLE,
    ErrorKind.POLICY_EXPIRED: ErrorKind.EXPIRED,
}


class DisclosureEngine:
    """Owns coupon creation, reveal and claim."""

    def __init__(
        self,
        store: DisclosureStore,
        threshold_client: ThresholdDisclosureClient,
        authorizer: AuthorizationVerifier,
        cfg: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.threshold_client = threshold_client
        self.authorizer = authorizer
        self.config = cfg or config
        self.clock = clock
        self._reveal_locks: dict[str, asyncio.Lock] = {}

    async def close(self) -> None:
        await self.threshold_client.close()

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.external_call_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(f"{what} timed out after {self.config.external_call_timeout_seconds}s")
            raise CoreError(ErrorKind.UNAVAILABLE, f"{what} timed out") from e
        except CoreError as e:
            mapped = THRESHOLD_ERROR_KINDS.get(e.kind)
            if mapped is None:
                raise
            raise CoreError(mapped, e.message, e.details) from e

    async def _update(self, coupon_id: str, transition) -> CouponDisclosure:
        return await optimistic_update(
            self.store,
            coupon_id,
            transition,
            attempts=self.config.optimistic_write_attempts,
            base_delay=self.config.optimistic_backoff_seconds,
        )

    async def _authorize(self, coupon: CouponDisclosure, proof: Optional[HolderProof]) -> None:
        if proof is None:
            raise CoreError(ErrorKind.UNAUTHORIZED, "A holder proof is required")
        if not await self.authorizer.check(proof, coupon.receipt_id):
            logger.info(f"Coupon {coupon.id}: holder proof rejected for receipt {coupon.receipt_id}")
            raise CoreError(ErrorKind.UNAUTHORIZED, "Holder proof rejected")

    # Creation and queries

    async def create_coupon(
        self,
        receipt_id: str,
        code: str,
        valid_from: datetime,
        valid_until: datetime,
        holder_address: str,
        coupon_id: Optional[str] = None,
    ) -> CouponDisclosure:
        """Encrypt a coupon code and store it as Locked.

        Args:
            receipt_id: Receipt the coupon belongs to.
            code: Plaintext coupon code.
            valid_from: Start of the disclosure window.
            valid_until: End of the disclosure window.
            holder_address: Address of the receipt holder. Only proofs signed
                by this address can reveal or claim the coupon.
            coupon_id: Optional caller-chosen ID.

        Returns:
            The stored coupon (without plaintext).

        Raises:
            CoreError: INVALID_INPUT for an empty window or missing holder,
                CONFLICT if the ID is taken or the receipt already has a
                different holder, UNAVAILABLE if the threshold network is
                unreachable.
        """
        valid_from, valid_until = ensure_utc(valid_from), ensure_utc(valid_until)
        if not code:
            raise CoreError(ErrorKind.INVALID_INPUT, "Coupon code must not be empty")
        if not holder_address:
            raise CoreError(ErrorKind.INVALID_INPUT, "holder_address is required")
        if valid_until <= valid_from:
            raise CoreError(ErrorKind.INVALID_INPUT, "valid_until must be after valid_from")

        coupon_id = coupon_id or f"cd-{uuid.uuid4().hex[:16]}"
        if await self.store.get(coupon_id) is not None:
            raise CoreError(ErrorKind.CONFLICT, f"Coupon {coupon_id} already exists")

        # One holder per receipt
        current_holder = await self.store.receipt_holder(receipt_id)
        if current_holder and current_holder.lower() != holder_address.lower():
            raise CoreError(
                ErrorKind.CONFLICT,
                f"Receipt {receipt_id} is held by a different address",
                {"holder_address": current_holder},
            )

        payload = await self._call(
            self.threshold_client.encrypt(code, valid_from, valid_until), "Threshold encrypt"
        )
        now = self.clock()
        coupon = CouponDisclosure(
            id=coupon_id,
            receipt_id=receipt_id,
            holder_address=holder_address,
            capsule=payload.capsule,
            ciphertext=payload.ciphertext,
            policy_id=payload.policy_id,
            valid_from=valid_from,
            valid_until=valid_until,
            created_at=now,
            updated_at=now,
        )
        if not await self.store.insert(coupon):
            raise CoreError(ErrorKind.CONFLICT, f"Coupon {coupon_id} already exists")

        logger.info(
            f"Created coupon {coupon_id} for receipt {receipt_id} "
            f"(policy {payload.policy_id}, window {valid_from.isoformat()} - {valid_until.isoformat()})"
        )
        return coupon

    async def get_coupon(self, coupon_id: str) -> CouponDisclosure:
        coupon = await self.store.get(coupon_id)
        if coupon is None:
            raise CoreError(ErrorKind.NOT_FOUND, f"Coupon {coupon_id} not found")
        return coupon

    # Reveal

    def _check_revealable(self, coupon: CouponDisclosure, now: datetime) -> None:
        if coupon.state is CouponState.EXPIRED or now > coupon.valid_until:
            raise CoreError(ErrorKind.EXPIRED, f"Coupon {coupon.id} disclosure window has closed")
        if coupon.state is CouponState.CLAIMED:
            raise CoreError(ErrorKind.INVALID_STATE, f"Coupon {coupon.id} has already been claimed")
        if now < coupon.valid_from:
            raise CoreError(
                ErrorKind.INVALID_STATE,
                f"Coupon {coupon.id} is not disclosable before {coupon.valid_from.isoformat()}",
            )

    async def reveal(self, coupon_id: str, holder_proof: Optional[HolderProof]) -> str:
        """Return the coupon code, decrypting it on first use.

        Repeated calls inside the window return the cached code without
        contacting the threshold network again.

        Args:
            coupon_id: Coupon identifier.
            holder_proof: Proof that the caller holds the owning receipt.

        Returns:
            The plaintext coupon code.

        Raises:
            CoreError: NOT_FOUND, UNAUTHORIZED, EXPIRED, INVALID_STATE,
                DISCLOSURE_UNAVAILABLE, UNAVAILABLE or CONTENTION.
        """
        coupon = await self.get_coupon(coupon_id)
        await self._authorize(coupon, holder_proof)
        self._check_revealable(coupon, self.clock())

        if coupon.state is CouponState.REVEALED and coupon.revealed_plaintext is not None:
            logger.debug(f"Coupon {coupon_id}: serving cached disclosure")
            return coupon.revealed_plaintext

        # Concurrent first reveals in this process share one decrypt. Separate
        # processes can still each decrypt once; the conditional write keeps
        # the stored result single.
        lock = self._reveal_locks.setdefault(coupon_id, asyncio.Lock())
        try:
            async with lock:
                coupon = await self.get_coupon(coupon_id)
                self._check_revealable(coupon, self.clock())
                if coupon.state is CouponState.REVEALED and coupon.revealed_plaintext is not None:
                    return coupon.revealed_plaintext

                plaintext = await self._call(
                    self.threshold_client.decrypt(coupon.capsule, coupon.ciphertext, coupon.policy_id),
                    "Threshold decrypt",
                )
                now = self.clock()

                def transition(current: CouponDisclosure) -> Optional[CouponDisclosure]:
                    if current.state is CouponState.REVEALED and current.revealed_plaintext is not None:
                        return None
                    self._check_revealable(current, now)
                    current.state = CouponState.REVEALED
                    current.revealed_plaintext = plaintext
                    return current

                updated = await self._update(coupon_id, transition)
        finally:
            if self._reveal_locks.get(coupon_id) is lock and not lock.locked():
                del self._reveal_locks[coupon_id]

        if updated.version != coupon.version:
            logger.info(f"Coupon {coupon_id}: {coupon.state.value} -> revealed (v{updated.version})")
        return updated.revealed_plaintext

    # Claim

    async def claim(self, coupon_id: str, holder_proof: Optional[HolderProof]) -> CouponDisclosure:
        """Redeem a revealed coupon. Succeeds at most once per coupon.

        Raises:
            CoreError: NOT_FOUND, UNAUTHORIZED, INVALID_STATE (not revealed),
                ALREADY_CLAIMED, EXPIRED or CONTENTION.
        """
        coupon = await self.get_coupon(coupon_id)
        await self._authorize(coupon, holder_proof)
        now = self.clock()

        def transition(current: CouponDisclosure) -> CouponDisclosure:
            if current.state is CouponState.CLAIMED:
                raise CoreError(
                    ErrorKind.ALREADY_CLAIMED,
                    f"Coupon {current.id} has already been claimed",
                    {"claimed_at": current.claimed_at.isoformat() if current.claimed_at else None},
                )
            if current.state is CouponState.EXPIRED or now > current.valid_until:
                raise CoreError(ErrorKind.EXPIRED, f"Coupon {current.id} disclosure window has closed")
            if current.state is not CouponState.REVEALED:
                raise CoreError(ErrorKind.INVALID_STATE, f"Coupon {current.id} must be revealed before it is claimed")
            current.state = CouponState.CLAIMED
            current.claimed_by = holder_proof.holder
            current.claimed_at = now
            return current

        claimed = await self._update(coupon_id, transition)
        logger.info(f"Coupon {coupon_id}: revealed -> claimed by {claimed.claimed_by} (v{claimed.version})")
        return claimed

    # Time-based transition

    async def expire(self, coupon_id: str, now: Optional[datetime] = None) -> CouponDisclosure:
        """Move an overdue Locked or Revealed coupon to Expired (sweeper only)."""
        now = now or self.clock()

        def transition(current: CouponDisclosure) -> Optional[CouponDisclosure]:
            if current.state.is_terminal or now <= current.valid_until:
                return None
            current.state = CouponState.EXPIRED
            current.revealed_plaintext = None
            return current

        before = await self.get_coupon(coupon_id)
        coupon = await self._update(coupon_id, transition)
        if coupon.state is CouponState.EXPIRED and before.state is not CouponState.EXPIRED:
            logger.info(f"Coupon {coupon_id}: {before.state.value} -> expired (v{coupon.version})")
        return coupon
