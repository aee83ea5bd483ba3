"""Holder authorization for coupon reveal and claim."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from src.logging_utils import get_logger
from src.models import HolderProof

logger = get_logger(__name__)

OwnerLookup = Callable[[str], Awaitable[Optional[str]]]


def challenge_message(subject_id: str) -> str:
    """Text a holder signs to prove control over ``subject_id``."""
    return f"memorychain:{subject_id}"


class AuthorizationVerifier(ABC):
    """Decides whether a holder proof grants access to a subject (receipt)."""

    @abstractmethod
    async def check(self, proof: HolderProof, subject_id: str) -> bool:
        """Return True when ``proof`` authorizes access to ``subject_id``."""


class SignatureAuthorizationVerifier(AuthorizationVerifier):
    """Accepts EIP-191 signatures over the subject challenge.

    When an owner lookup is configured the recovered signer must also be the
    subject's current owner (e.g. the receipt NFT holder).
    """

    def __init__(self, owner_lookup: Optional[OwnerLookup] = None):
        self.owner_lookup = owner_lookup

    async def check(self, proof: HolderProof, subject_id: str) -> bool:
        message = encode_defunct(text=challenge_message(subject_id))
        try:
            signer = Account.recover_message(message, signature=proof.signature)
        except Exception as e:
            # eth_account raises several unrelated types for malformed signatures
            logger.info(f"Rejected malformed holder signature for {subject_id}: {e}")
            return False

        if signer.lower() != proof.holder.lower():
            logger.info(f"Holder proof for {subject_id} was signed by a different address")
            return False

        if self.owner_lookup is not None:
            owner = await self.owner_lookup(subject_id)
            if not owner or owner.lower() != signer.lower():
                logger.info(f"Signer is not the current owner of {subject_id}")
                return False
        return True
