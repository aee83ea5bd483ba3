"""Background expiry of payment intents and coupon disclosures.

The sweeper is the only component that applies time-based transitions. It
writes through the same optimistic path as foreground calls, so a sweep that
races a Verify/Reveal/Claim either wins or re-reads and finds the record
already terminal.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from src.config import config
from src.disclosure.engine import DisclosureEngine
from src.errors import CoreError
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import CouponState, PaymentStatus, utcnow
from src.payments.verifier import PaymentVerifier

logger = get_logger(__name__)


@dataclass
class SweepResult:
    """Counts from one sweep pass."""

    intents_expired: int = 0
    coupons_expired: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.intents_expired + self.coupons_expired


class ExpirySweeper:
    """Periodically expires overdue intents and coupons."""

    def __init__(
        self,
        verifier: PaymentVerifier,
        engine: DisclosureEngine,
        interval: Optional[float] = None,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the sweeper.

        Args:
            verifier: Owner of the payment intent store.
            engine: Owner of the coupon store.
            interval: Seconds between passes. Defaults to config.sweep_interval_seconds.
            batch_size: Maximum records per store per pass.
            clock: Source of "now"; injectable for tests.
        """
        self.verifier = verifier
        self.engine = engine
        self.interval = interval if interval is not None else config.sweep_interval_seconds
        self.batch_size = batch_size
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> SweepResult:
        """Expire every overdue record once.

        Failures on individual records are logged and counted; the record is
        picked up again on the next pass.
        """
        result = SweepResult()
        now = self.clock()

        with CorrelationIdContext(prefix="sweep"):
            for intent in await self.verifier.store.list_due(now, self.batch_size):
                try:
                    expired = await self.verifier.expire(intent.id, now)
                except CoreError as e:
                    logger.warning(f"Could not expire intent {intent.id}: {e}")
                    result.errors += 1
                    continue
                if expired.status is PaymentStatus.EXPIRED:
                    result.intents_expired += 1

            for coupon in await self.engine.store.list_due(now, self.batch_size):
                try:
                    expired = await self.engine.expire(coupon.id, now)
                except CoreError as e:
                    logger.warning(f"Could not expire coupon {coupon.id}: {e}")
                    result.errors += 1
                    continue
                if expired.state is CouponState.EXPIRED:
                    result.coupons_expired += 1

            if result.total or result.errors:
                logger.info(
                    f"Sweep expired {result.intents_expired} intents and "
                    f"{result.coupons_expired} coupons ({result.errors} errors)"
                )
        return result

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Started expiry sweeper (every {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped expiry sweeper")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                # Store errors must not kill the loop; the next pass retries
                logger.error(f"Error in sweep loop: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
