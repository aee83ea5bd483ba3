"""Payment intent lifecycle.

Converts a fiat price into a tracked crypto payment and reconciles it
against the chain:

    Created -> AwaitingTx -> Confirming -> Verified
                                  |-> Failed   (reorg confirmed on recheck)
    any non-terminal -> Expired                (ExpirySweeper only)

Every mutation is a single conditional write (see src.optimistic). Network
calls happen before the write and never change state on failure, so any
call can be retried safely.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Mapping, Optional, TypeVar

from src.config import Config, config
from src.database import PaymentIntentStore
from src.errors import CoreError, ErrorKind
from src.logging_utils import get_logger
from src.models import (
    MAX_FIAT_AMOUNT,
    Currency,
    PaymentIntent,
    PaymentStatus,
    PaymentStatusResponse,
    TransactionInfo,
    utcnow,
)
from src.optimistic import optimistic_update
from src.payments.chains import ChainClient
from src.payments.currencies import CurrencyPolicy, get_policy, is_enabled, required_confirmations
from src.payments.rates import RateOracle

logger = get_logger(__name__)

T = TypeVar("T")

CLIENT_STATUS = {
    PaymentStatus.VERIFIED: "completed",
    PaymentStatus.EXPIRED: "expired",
    PaymentStatus.FAILED: "failed",
}


@dataclass(frozen=True)
class ChainObservation:
    """What the chain reported for the bound transaction during one Verify call."""

    tx_hash: str
    confirmations: int
    observed_at: datetime
    # None when the transaction was not re-fetched during this call
    tx_present: Optional[bool] = None


class PaymentVerifier:
    """Owns payment intent creation and on-chain verification."""

    def __init__(
        self,
        store: PaymentIntentStore,
        chain_clients: Mapping[Currency, ChainClient],
        rate_oracle: RateOracle,
        cfg: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the verifier.

        Args:
            store: Versioned intent store.
            chain_clients: One ChainClient per supported currency.
            rate_oracle: Fiat to token conversion.
            cfg: Policy configuration. Defaults to the global config.
            clock: Source of "now"; injectable for tests.
        """
        self.store = store
        self.chain_clients = dict(chain_clients)
        self.rate_oracle = rate_oracle
        self.config = cfg or config
        self.clock = clock

    async def close(self) -> None:
        for client in self.chain_clients.values():
            await client.close()

    async def _call(self, awaitable: Awaitable[T], what: str) -> T:
        """Await an external call with the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.external_call_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(f"{what} timed out after {self.config.external_call_timeout_seconds}s")
            raise CoreError(ErrorKind.UNAVAILABLE, f"{what} timed out") from e

    async def _update(self, payment_id: str, transition) -> PaymentIntent:
        return await optimistic_update(
            self.store,
            payment_id,
            transition,
            attempts=self.config.optimistic_write_attempts,
            base_delay=self.config.optimistic_backoff_seconds,
        )

    def _client_for(self, currency: Currency) -> ChainClient:
        client = self.chain_clients.get(Currency(currency))
        if client is None:
            raise CoreError(ErrorKind.INVALID_INPUT, f"No chain client configured for {currency}")
        return client

    # Creation

    async def create_intent(
        self,
        fiat_amount: Decimal,
        currency: Currency,
        metadata: Optional[Mapping[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntent:
        """Create (or replay) a payment intent.

        Args:
            fiat_amount: Price in USD.
            currency: Settlement currency.
            metadata: Opaque passthrough values.
            idempotency_key: Caller-chosen intent ID. Repeating a request with
                the same key and parameters returns the original intent.

        Returns:
            The intent in AwaitingTx.

        Raises:
            CoreError: INVALID_INPUT, CONFLICT, RATE_UNAVAILABLE or UNAVAILABLE.
        """
        try:
            currency = Currency(currency)
            fiat_amount = Decimal(fiat_amount)
        except (ValueError, InvalidOperation) as e:
            raise CoreError(ErrorKind.INVALID_INPUT, f"Invalid payment parameters: {e}") from e

        if not fiat_amount.is_finite() or fiat_amount <= 0:
            raise CoreError(ErrorKind.INVALID_INPUT, "fiat_amount must be positive")
        if fiat_amount > MAX_FIAT_AMOUNT:
            raise CoreError(
                ErrorKind.INVALID_INPUT,
                f"fiat_amount exceeds the maximum of {MAX_FIAT_AMOUNT}",
                {"max_fiat_amount": str(MAX_FIAT_AMOUNT)},
            )
        if not is_enabled(currency, self.config) or currency not in self.chain_clients:
            raise CoreError(ErrorKind.INVALID_INPUT, f"Currency {currency.value} is not enabled")

        metadata = {str(k): str(v) for k, v in (metadata or {}).items()}

        if idempotency_key:
            existing = await self.store.get(idempotency_key)
            if existing is not None:
                return await self._replay(existing, fiat_amount, currency, metadata)

        policy = get_policy(currency)
        token_amount = await self._call(
            self.rate_oracle.convert(fiat_amount, currency), "Rate oracle"
        )
        try:
            token_amount = policy.quantize(token_amount)
        except InvalidOperation as e:
            raise CoreError(ErrorKind.INVALID_INPUT, f"Cannot price {fiat_amount} USD in {currency.value}") from e

        now = self.clock()
        intent = PaymentIntent(
            id=idempotency_key or f"pi-{uuid.uuid4().hex[:16]}",
            fiat_amount=fiat_amount,
            currency=currency,
            token_amount=token_amount,
            destination_address=self.config.receiving_address(currency.value),
            required_confirmations=required_confirmations(currency, self.config),
            status=PaymentStatus.CREATED,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=self.config.payment_window_minutes),
            metadata=metadata,
        )

        if not await self.store.insert(intent):
            # Lost a race with an identical idempotency key
            existing = await self.store.get(intent.id)
            return await self._replay(existing, fiat_amount, currency, metadata)

        logger.info(
            f"Created intent {intent.id}: ${fiat_amount} -> {token_amount} {currency.value} "
            f"to {intent.destination_address}, expires {intent.expires_at.isoformat()}"
        )
        return await self._await_transaction(intent.id)

    async def _replay(
        self,
        existing: PaymentIntent,
        fiat_amount: Decimal,
        currency: Currency,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        if (
            existing.fiat_amount != fiat_amount
            or existing.currency != currency
            or existing.metadata != metadata
        ):
            raise CoreError(
                ErrorKind.CONFLICT,
                f"Idempotency key {existing.id} was used with different parameters",
            )
        logger.info(f"Replaying intent {existing.id} for repeated idempotency key")
        if existing.status is PaymentStatus.CREATED:
            return await self._await_transaction(existing.id)
        return existing

    async def _await_transaction(self, payment_id: str) -> PaymentIntent:
        def transition(intent: PaymentIntent) -> Optional[PaymentIntent]:
            if intent.status is not PaymentStatus.CREATED:
                return None
            intent.status = PaymentStatus.AWAITING_TX
            return intent

        intent = await self._update(payment_id, transition)
        logger.info(f"Intent {payment_id}: created -> {intent.status.value} (v{intent.version})")
        return intent

    # Queries

    async def get_intent(self, payment_id: str) -> PaymentIntent:
        intent = await self.store.get(payment_id)
        if intent is None:
            raise CoreError(ErrorKind.NOT_FOUND, f"Payment intent {payment_id} not found")
        return intent

    async def get_payment_status(self, payment_id: str) -> PaymentStatusResponse:
        """Summarize an intent for polling clients."""
        intent = await self.get_intent(payment_id)
        return PaymentStatusResponse(
            payment_id=intent.id,
            status=CLIENT_STATUS.get(intent.status, "pending"),
            intent_status=intent.status,
            tx_hash=intent.tx_hash,
            confirmations=intent.confirmations,
            required_confirmations=intent.required_confirmations,
        )

    async def get_transaction_details(self, currency: Currency, tx_hash: str) -> TransactionInfo:
        """Look up a transaction on the network backing ``currency``."""
        currency = Currency(currency)
        tx_hash = self._normalize_tx_hash(get_policy(currency), tx_hash)
        client = self._client_for(currency)
        return await self._call(client.get_transaction(tx_hash), f"{currency.value} chain lookup")

    # Verification

    @staticmethod
    def _normalize_tx_hash(policy: CurrencyPolicy, tx_hash: str) -> str:
        tx_hash = (tx_hash or "").strip()
        if not policy.valid_tx_hash(tx_hash):
            raise CoreError(
                ErrorKind.INVALID_INPUT,
                f"Malformed {policy.code.value} transaction hash",
                {"tx_hash": tx_hash},
            )
        return tx_hash.lower()

    def _check_payment(self, intent: PaymentIntent, tx: TransactionInfo, policy: CurrencyPolicy) -> None:
        if not tx.exists:
            raise CoreError(
                ErrorKind.INVALID_TRANSACTION,
                f"Transaction {tx.tx_hash} not found on {policy.network}",
            )

        paid = tx.amount_paid_to(intent.destination_address)
        if paid == 0:
            raise CoreError(
                ErrorKind.INVALID_TRANSACTION,
                "Transaction does not pay the intent's destination address",
                {"expected_to": intent.destination_address, "actual_to": tx.to},
            )
        if not policy.amount_matches(intent.token_amount, paid):
            raise CoreError(
                ErrorKind.INVALID_TRANSACTION,
                "Transaction amount is outside the accepted tolerance",
                {"expected": str(intent.token_amount), "actual": str(paid)},
            )

    async def verify(self, payment_id: str, tx_hash: str) -> PaymentIntent:
        """Bind a transaction to an intent and refresh its confirmations.

        Args:
            payment_id: Intent identifier.
            tx_hash: Transaction submitted by the payer.

        Returns:
            The intent after this observation. Terminal intents are returned
            unchanged.

        Raises:
            CoreError: NOT_FOUND, INVALID_INPUT, CONFLICT, INVALID_TRANSACTION,
                EXPIRED, UNAVAILABLE or CONTENTION.
        """
        intent = await self.get_intent(payment_id)
        policy = get_policy(intent.currency)
        tx_hash = self._normalize_tx_hash(policy, tx_hash)

        if intent.tx_hash and intent.tx_hash != tx_hash:
            raise CoreError(
                ErrorKind.CONFLICT,
                f"Intent {payment_id} is already bound to another transaction",
                {"bound_tx_hash": intent.tx_hash},
            )
        if intent.is_terminal:
            return intent
        if self.clock() > intent.expires_at:
            raise CoreError(ErrorKind.EXPIRED, f"Payment window for {payment_id} has closed")

        observation = await self._observe(intent, tx_hash, policy)
        updated = await self._update(payment_id, lambda current: self._advance(current, observation))

        if updated.status is not intent.status:
            logger.info(
                f"Intent {payment_id}: {intent.status.value} -> {updated.status.value} "
                f"({updated.confirmations}/{updated.required_confirmations} confirmations, v{updated.version})"
            )
        elif updated.version != intent.version:
            logger.debug(
                f"Intent {payment_id}: {updated.confirmations}/{updated.required_confirmations} "
                f"confirmations (v{updated.version})"
            )
        return updated

    async def _observe(self, intent: PaymentIntent, tx_hash: str, policy: CurrencyPolicy) -> ChainObservation:
        client = self._client_for(intent.currency)
        network = f"{intent.currency.value} chain"

        if intent.tx_hash is None:
            tx = await self._call(client.get_transaction(tx_hash), f"{network} lookup")
            self._check_payment(intent, tx, policy)
            confirmations = 0
            if not tx.pending:
                confirmations = await self._call(client.get_confirmations(tx_hash), f"{network} confirmations")
            return ChainObservation(tx_hash, confirmations, self.clock(), tx_present=True)

        confirmations = await self._call(client.get_confirmations(tx_hash), f"{network} confirmations")
        tx_present = None
        if intent.peak_confirmations - confirmations > self.config.reorg_depth:
            tx = await self._call(client.get_transaction(tx_hash), f"{network} lookup")
            tx_present = tx.exists and tx.amount_paid_to(intent.destination_address) > 0
        return ChainObservation(tx_hash, confirmations, self.clock(), tx_present=tx_present)

    def _advance(self, intent: PaymentIntent, obs: ChainObservation) -> Optional[PaymentIntent]:
        """Pure state transition for one chain observation."""
        if intent.tx_hash and intent.tx_hash != obs.tx_hash:
            raise CoreError(
                ErrorKind.CONFLICT,
                f"Intent {intent.id} is already bound to another transaction",
                {"bound_tx_hash": intent.tx_hash},
            )
        if intent.is_terminal:
            return None
        if obs.observed_at > intent.expires_at:
            raise CoreError(ErrorKind.EXPIRED, f"Payment window for {intent.id} has closed")

        if intent.status in (PaymentStatus.CREATED, PaymentStatus.AWAITING_TX):
            intent.tx_hash = obs.tx_hash
            intent.status = PaymentStatus.CONFIRMING
            intent.confirmations = obs.confirmations
            intent.peak_confirmations = obs.confirmations
            intent.reorg_suspected = False
            if obs.confirmations >= intent.required_confirmations:
                intent.status = PaymentStatus.VERIFIED
            return intent

        before = (intent.confirmations, intent.peak_confirmations, intent.reorg_suspected)
        intent.confirmations = obs.confirmations

        if obs.confirmations >= intent.required_confirmations:
            intent.status = PaymentStatus.VERIFIED
            intent.peak_confirmations = max(intent.peak_confirmations, obs.confirmations)
            intent.reorg_suspected = False
            return intent

        if intent.peak_confirmations - obs.confirmations > self.config.reorg_depth:
            if not intent.reorg_suspected or obs.tx_present is None:
                logger.warning(
                    f"Intent {intent.id}: confirmations fell from {intent.peak_confirmations} "
                    f"to {obs.confirmations}; rechecking on next verify"
                )
                intent.reorg_suspected = True
            elif obs.tx_present:
                logger.warning(f"Intent {intent.id}: transaction survived reorg, re-queued for confirmation")
                intent.peak_confirmations = obs.confirmations
                intent.reorg_suspected = False
            else:
                logger.error(f"Intent {intent.id}: transaction {obs.tx_hash} dropped by reorg")
                intent.status = PaymentStatus.FAILED
                intent.failure_reason = "transaction removed by chain reorganization"
            return intent

        intent.reorg_suspected = False
        intent.peak_confirmations = max(intent.peak_confirmations, obs.confirmations)
        if (intent.confirmations, intent.peak_confirmations, intent.reorg_suspected) == before:
            return None
        return intent

    # Time-based transition

    async def expire(self, payment_id: str, now: Optional[datetime] = None) -> PaymentIntent:
        """Move an overdue, non-terminal intent to Expired (sweeper only)."""
        now = now or self.clock()

        def transition(intent: PaymentIntent) -> Optional[PaymentIntent]:
            if intent.is_terminal or now <= intent.expires_at:
                return None
            intent.status = PaymentStatus.EXPIRED
            intent.failure_reason = "payment window elapsed"
            return intent

        before = await self.get_intent(payment_id)
        intent = await self._update(payment_id, transition)
        if intent.status is PaymentStatus.EXPIRED and before.status is not PaymentStatus.EXPIRED:
            logger.info(
                f"Intent {payment_id}: {before.status.value} -> expired "
                f"({intent.confirmations}/{intent.required_confirmations} confirmations, v{intent.version})"
            )
        return intent
