"""Payment functionality for Memorychain SDK."""

import asyncio
import logging
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Optional

from src.models import Currency, PaymentIntent, PaymentStatusResponse

if TYPE_CHECKING:
    from .client import MemorychainClient

logger = logging.getLogger(__name__)


class PaymentsClient:
    """Handles payment intent interactions with Memorychain."""

    def __init__(self, client: "MemorychainClient"):
        self.client = client

    async def create_intent(
        self,
        fiat_amount: Decimal,
        currency: Currency = Currency.MATIC,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Create a payment intent.

        Args:
            fiat_amount: Price in USD.
            currency: Settlement currency.
            metadata: Opaque passthrough values.
            idempotency_key: Optional key making retries safe.

        Returns:
            The created (or replayed) intent.
        """
        body = {
            "fiat_amount": str(fiat_amount),
            "currency": Currency(currency).value,
            "metadata": metadata or {},
        }
        if idempotency_key:
            body["idempotency_key"] = idempotency_key
        data = await self.client._request("POST", "/payments", json=body)
        return PaymentIntent.model_validate(data)

    async def get_intent(self, payment_id: str) -> PaymentIntent:
        data = await self.client._request("GET", f"/payments/{payment_id}")
        return PaymentIntent.model_validate(data)

    async def get_status(self, payment_id: str) -> PaymentStatusResponse:
        data = await self.client._request("GET", f"/payments/{payment_id}/status")
        return PaymentStatusResponse.model_validate(data)

    async def verify(self, payment_id: str, tx_hash: str) -> PaymentIntent:
        """Submit a transaction hash for the intent."""
        data = await self.client._request(
            "POST", f"/payments/{payment_id}/verify", json={"tx_hash": tx_hash}
        )
        return PaymentIntent.model_validate(data)

    async def wait_for_settlement(
        self,
        payment_id: str,
        tx_hash: Optional[str] = None,
        interval: float = 5.0,
        timeout: float = 600.0,
    ) -> PaymentIntent:
        """Poll until the intent reaches a terminal status.

        When ``tx_hash`` is given each poll re-submits it, which refreshes the
        confirmation count server-side.

        Args:
            payment_id: Intent to watch.
            tx_hash: Transaction to (re)submit on every poll.
            interval: Seconds between polls.
            timeout: Give up after this many seconds.

        Returns:
            The terminal intent.

        Raises:
            TimeoutError: If the intent is still pending after ``timeout``.
        """
        deadline = time.monotonic() + timeout
        while True:
            if tx_hash:
                intent = await self.verify(payment_id, tx_hash)
            else:
                intent = await self.get_intent(payment_id)

            if intent.is_terminal:
                logger.info(f"Payment {payment_id} settled as {intent.status.value}")
                return intent

            if time.monotonic() + interval > deadline:
                raise TimeoutError(f"Payment {payment_id} still {intent.status.value} after {timeout}s")

            logger.debug(
                f"Payment {payment_id} {intent.status.value} "
                f"({intent.confirmations}/{intent.required_confirmations}), polling again in {interval}s"
            )
            await asyncio.sleep(interval)
