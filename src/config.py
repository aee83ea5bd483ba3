"""Centralized configuration management for the Memorychain settlement core.

Loads all configuration from environment variables with sensible defaults.
"""

from decimal import Decimal
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the settlement service."""

    # Service
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=4030)

    # Database
    database_path: str = Field(default="./memorychain.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Payment policy
    enabled_currencies: list[str] = Field(
        default=["MATIC", "ETH", "BTC", "USDC"],
        description="Currencies accepted by CreateIntent",
    )
    payment_window_minutes: int = Field(default=30, description="Intent lifetime")
    reorg_depth: int = Field(
        default=2,
        description="Confirmation drop below the observed peak that counts as a reorg",
    )

    # Receiving addresses
    matic_receiving_address: str = Field(default="", description="Polygon receiving address")
    eth_receiving_address: str = Field(default="", description="Ethereum receiving address")
    btc_receiving_address: str = Field(default="", description="Bitcoin receiving address")
    usdc_receiving_address: str = Field(default="", description="USDC (Polygon) receiving address")

    # Confirmation overrides (0 means use the currency default)
    matic_required_confirmations: int = Field(default=0)
    eth_required_confirmations: int = Field(default=0)
    btc_required_confirmations: int = Field(default=0)
    usdc_required_confirmations: int = Field(default=0)

    # Static fiat rates (USD per token)
    rate_matic_usd: Decimal = Field(default=Decimal("0.70"))
    rate_eth_usd: Decimal = Field(default=Decimal("2500"))
    rate_btc_usd: Decimal = Field(default=Decimal("60000"))
    rate_usdc_usd: Decimal = Field(default=Decimal("1"))

    # Chain access
    chain_mode: Literal["rpc", "mock"] = Field(
        default="rpc", description="Mock chain clients must be selected explicitly"
    )
    polygon_rpc_url: str = Field(default="", description="Polygon JSON-RPC endpoint")
    ethereum_rpc_url: str = Field(default="", description="Ethereum JSON-RPC endpoint")
    usdc_token_address: str = Field(
        default="0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
        description="Polygon USDC contract",
    )
    bitcoin_api_url: str = Field(
        default="https://blockstream.info/api", description="Esplora REST endpoint"
    )

    # Threshold network
    threshold_mode: Literal["gateway", "mock"] = Field(default="gateway")
    threshold_gateway_url: str = Field(default="", description="Threshold decryption gateway")
    threshold_api_key: str = Field(default="")

    # Concurrency
    optimistic_write_attempts: int = Field(default=3)
    optimistic_backoff_seconds: float = Field(default=0.05)
    external_call_timeout_seconds: float = Field(default=8.0)
    sweep_interval_seconds: float = Field(default=30.0)

    class Config:
        env_file = ".env"
        case_sensitive = False

    def receiving_address(self, currency: str) -> str:
        return getattr(self, f"{currency.lower()}_receiving_address", "")

    def confirmation_override(self, currency: str) -> int:
        return getattr(self, f"{currency.lower()}_required_confirmations", 0)

    def rate_usd(self, currency: str) -> Decimal:
        return getattr(self, f"rate_{currency.lower()}_usd")


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["service", "sweeper"], cfg: Config = None) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.
        cfg: Configuration to check. Defaults to the global config.

    Raises:
        ValueError: If required configuration is missing.
    """
    cfg = cfg or config
    errors = []

    for currency in cfg.enabled_currencies:
        if currency not in ("MATIC", "ETH", "BTC", "USDC"):
            errors.append(f"Unknown currency in ENABLED_CURRENCIES: {currency}")
        elif not cfg.receiving_address(currency):
            errors.append(f"{currency}_RECEIVING_ADDRESS must be set when {currency} is enabled")

    if cfg.chain_mode == "rpc":
        enabled = set(cfg.enabled_currencies)
        if enabled & {"MATIC", "USDC"} and not cfg.polygon_rpc_url:
            errors.append("POLYGON_RPC_URL must be set when CHAIN_MODE=rpc")
        if "ETH" in enabled and not cfg.ethereum_rpc_url:
            errors.append("ETHEREUM_RPC_URL must be set when CHAIN_MODE=rpc")
        if "BTC" in enabled and not cfg.bitcoin_api_url:
            errors.append("BITCOIN_API_URL must be set when CHAIN_MODE=rpc")

    if service == "service" and cfg.threshold_mode == "gateway" and not cfg.threshold_gateway_url:
        errors.append("THRESHOLD_GATEWAY_URL must be set when THRESHOLD_MODE=gateway")

    if cfg.optimistic_write_attempts < 1:
        errors.append("OPTIMISTIC_WRITE_ATTEMPTS must be at least 1")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
