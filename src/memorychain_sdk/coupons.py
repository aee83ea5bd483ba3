"""Coupon functionality for Memorychain SDK."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from src.disclosure.authorization import challenge_message
from src.models import HolderProof

if TYPE_CHECKING:
    from .client import MemorychainClient


def sign_holder_proof(private_key: str, receipt_id: str) -> HolderProof:
    """Build a holder proof for ``receipt_id`` with a local key.

    Args:
        private_key: Hex private key of the receipt holder.
        receipt_id: Receipt the coupon belongs to.
    """
    account = Account.from_key(private_key)
    signed = account.sign_message(encode_defunct(text=challenge_message(receipt_id)))
    return HolderProof(holder=account.address, signature="0x" + signed.signature.hex().removeprefix("0x"))


class CouponsClient:
    """Handles coupon disclosure interactions with Memorychain."""

    def __init__(self, client: "MemorychainClient"):
        self.client = client

    async def create(
        self,
        receipt_id: str,
        code: str,
        valid_from: datetime,
        valid_until: datetime,
        holder_address: str,
        coupon_id: Optional[str] = None,
    ) -> dict:
        """Attach a time-boxed coupon to a receipt.

        Only proofs signed by ``holder_address`` can reveal or claim it.

        Returns:
            The public view of the stored coupon.
        """
        body = {
            "receipt_id": receipt_id,
            "code": code,
            "valid_from": valid_from.isoformat(),
            "valid_until": valid_until.isoformat(),
            "holder_address": holder_address,
        }
        if coupon_id:
            body["coupon_id"] = coupon_id
        return await self.client._request("POST", "/coupons", json=body)

    async def get(self, coupon_id: str) -> dict:
        return await self.client._request("GET", f"/coupons/{coupon_id}")

    async def reveal(self, coupon_id: str, proof: HolderProof) -> str:
        """Return the coupon code. Safe to call repeatedly inside the window."""
        data = await self.client._request(
            "POST",
            f"/coupons/{coupon_id}/reveal",
            json={"holder_proof": proof.model_dump()},
        )
        return data["code"]

    async def claim(self, coupon_id: str, proof: HolderProof) -> dict:
        """Redeem a revealed coupon. Fails with already_claimed on repeat."""
        return await self.client._request(
            "POST",
            f"/coupons/{coupon_id}/claim",
            json={"holder_proof": proof.model_dump()},
        )
