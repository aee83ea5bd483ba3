"""Fiat to token conversion.

Rate sourcing is pluggable; the bundled oracle reads fixed USD prices from
configuration, which is enough for development and for deployments that
push prices through the environment.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from src.config import Config, config
from src.errors import CoreError, ErrorKind
from src.logging_utils import get_logger
from src.models import Currency

logger = get_logger(__name__)


class RateOracle(ABC):
    """Converts a fiat (USD) amount into a token amount."""

    @abstractmethod
    async def convert(self, fiat_amount: Decimal, currency: Currency) -> Decimal:
        """Return the token amount worth ``fiat_amount``.

        Raises:
            CoreError: RATE_UNAVAILABLE when no usable price is known.
        """


class StaticRateOracle(RateOracle):
    """Rate oracle backed by a fixed USD price per token."""

    def __init__(self, usd_prices: Mapping[Currency, Decimal]):
        self._prices = {Currency(code): Decimal(price) for code, price in usd_prices.items()}

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None) -> "StaticRateOracle":
        cfg = cfg or config
        return cls({currency: cfg.rate_usd(currency.value) for currency in Currency})

    def set_price(self, currency: Currency, usd_price: Decimal) -> None:
        self._prices[Currency(currency)] = Decimal(usd_price)

    async def convert(self, fiat_amount: Decimal, currency: Currency) -> Decimal:
        price = self._prices.get(Currency(currency))
        if price is None or price <= 0:
            logger.warning(f"No usable USD price for {currency}")
            raise CoreError(ErrorKind.RATE_UNAVAILABLE, f"No rate available for {currency}")
        try:
            return Decimal(fiat_amount) / price
        except InvalidOperation as e:
            raise CoreError(ErrorKind.RATE_UNAVAILABLE, f"Rate conversion failed: {e}") from e
