"""Per-currency settlement policy.

The table below is the single place where a currency's network, precision,
confirmation depth, amount tolerance and transaction-hash format are defined.
Adding a currency is a table entry plus a ChainClient for its network.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Optional

from src.config import Config, config
from src.models import Currency, CurrencyInfo

EVM_TX_HASH = re.compile(r"^0x[0-9a-fA-F]{64}$")
BTC_TX_HASH = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class CurrencyPolicy:
    code: Currency
    name: str
    network: str
    decimals: int
    required_confirmations: int
    tolerance: Decimal
    tx_hash_pattern: re.Pattern
    token_contract: bool = False

    def quantize(self, amount: Decimal) -> Decimal:
        """Round a token amount to the currency's precision.

        The context precision grows with the amount so large values keep every
        decimal place instead of raising InvalidOperation.
        """
        with localcontext() as ctx:
            ctx.prec = max(ctx.prec, amount.adjusted() + self.decimals + 2)
            return amount.quantize(Decimal(1).scaleb(-self.decimals), rounding=ROUND_HALF_UP)

    def valid_tx_hash(self, tx_hash: str) -> bool:
        return bool(self.tx_hash_pattern.match(tx_hash or ""))

    def amount_matches(self, expected: Decimal, actual: Decimal) -> bool:
        """True when ``actual`` is within the volatility tolerance of ``expected``."""
        if expected <= 0:
            return False
        return abs(actual - expected) <= expected * self.tolerance


POLICIES: dict[Currency, CurrencyPolicy] = {
    Currency.MATIC: CurrencyPolicy(
        code=Currency.MATIC,
        name="Polygon MATIC",
        network="polygon",
        decimals=18,
        required_confirmations=6,
        tolerance=Decimal("0.01"),
        tx_hash_pattern=EVM_TX_HASH,
    ),
    Currency.ETH: CurrencyPolicy(
        code=Currency.ETH,
        name="Ethereum",
        network="ethereum",
        decimals=18,
        required_confirmations=12,
        tolerance=Decimal("0.01"),
        tx_hash_pattern=EVM_TX_HASH,
    ),
    Currency.BTC: CurrencyPolicy(
        code=Currency.BTC,
        name="Bitcoin",
        network="bitcoin",
        decimals=8,
        required_confirmations=3,
        tolerance=Decimal("0.01"),
        tx_hash_pattern=BTC_TX_HASH,
    ),
    Currency.USDC: CurrencyPolicy(
        code=Currency.USDC,
        name="USD Coin (Polygon)",
        network="polygon",
        decimals=6,
        required_confirmations=6,
        tolerance=Decimal("0.001"),
        tx_hash_pattern=EVM_TX_HASH,
        token_contract=True,
    ),
}


def get_policy(currency: Currency) -> CurrencyPolicy:
    return POLICIES[Currency(currency)]


def required_confirmations(currency: Currency, cfg: Optional[Config] = None) -> int:
    """Confirmation depth for ``currency``, honoring configured overrides."""
    cfg = cfg or config
    override = cfg.confirmation_override(Currency(currency).value)
    return override if override > 0 else get_policy(currency).required_confirmations


def is_enabled(currency: Currency, cfg: Optional[Config] = None) -> bool:
    cfg = cfg or config
    return Currency(currency).value in cfg.enabled_currencies


def list_currencies(cfg: Optional[Config] = None) -> list[CurrencyInfo]:
    """Describe every known currency and whether it is accepted."""
    cfg = cfg or config
    return [
        CurrencyInfo(
            code=policy.code,
            name=policy.name,
            network=policy.network,
            enabled=is_enabled(policy.code, cfg),
        )
        for policy in POLICIES.values()
    ]
