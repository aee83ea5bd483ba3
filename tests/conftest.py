import os
from datetime import datetime, timedelta, timezone

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

# Set offline defaults for testing
# This must run before src.config is imported by any test
os.environ.setdefault("CHAIN_MODE", "mock")
os.environ.setdefault("THRESHOLD_MODE", "mock")
os.environ.setdefault("OPTIMISTIC_BACKOFF_SECONDS", "0")
os.environ.setdefault("MATIC_RECEIVING_ADDRESS", "0x1111111111111111111111111111111111111111")
os.environ.setdefault("ETH_RECEIVING_ADDRESS", "0x2222222222222222222222222222222222222222")
os.environ.setdefault("BTC_RECEIVING_ADDRESS", "bc1qmemorychaintestreceivingaddress000000")
os.environ.setdefault("USDC_RECEIVING_ADDRESS", "0x3333333333333333333333333333333333333333")

from src.config import Config  # noqa: E402
from src.database import Database  # noqa: E402
from src.disclosure.authorization import SignatureAuthorizationVerifier, challenge_message  # noqa: E402
from src.disclosure.engine import DisclosureEngine  # noqa: E402
from src.disclosure.threshold import MockThresholdClient  # noqa: E402
from src.models import Currency, HolderProof  # noqa: E402
from src.payments.chains import MockChainClient  # noqa: E402
from src.payments.rates import StaticRateOracle  # noqa: E402
from src.payments.verifier import PaymentVerifier  # noqa: E402

# Well-known throwaway development keys
HOLDER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OTHER_KEY = "0x8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"
HOLDER_ADDRESS = Account.from_key(HOLDER_KEY).address


class FakeClock:
    """Controllable clock for deterministic expiry."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_proof(private_key: str, receipt_id: str) -> HolderProof:
    account = Account.from_key(private_key)
    signed = account.sign_message(encode_defunct(text=challenge_message(receipt_id)))
    return HolderProof(holder=account.address, signature="0x" + signed.signature.hex().removeprefix("0x"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_config(tmp_path):
    return Config(
        database_path=str(tmp_path / "test.db"),
        chain_mode="mock",
        threshold_mode="mock",
        optimistic_write_attempts=3,
        optimistic_backoff_seconds=0,
        external_call_timeout_seconds=2.0,
    )


@pytest.fixture
async def test_db(test_config):
    """Create a temporary test database."""
    db = Database(test_config.database_path)
    await db.initialize()
    return db


@pytest.fixture
def chains():
    return {currency: MockChainClient(network=currency.value.lower()) for currency in Currency}


@pytest.fixture
def rate_oracle(test_config):
    return StaticRateOracle.from_config(test_config)


@pytest.fixture
def verifier(test_db, chains, rate_oracle, test_config, clock):
    return PaymentVerifier(test_db.intents, chains, rate_oracle, test_config, clock=clock)


@pytest.fixture
def threshold(clock):
    return MockThresholdClient(clock=clock)


@pytest.fixture
def engine(test_db, threshold, test_config, clock):
    return DisclosureEngine(
        test_db.coupons,
        threshold,
        SignatureAuthorizationVerifier(owner_lookup=test_db.coupons.receipt_holder),
        test_config,
        clock=clock,
    )


@pytest.fixture
def holder_proof():
    return make_proof(HOLDER_KEY, "receipt-1")


@pytest.fixture
def other_proof():
    return make_proof(OTHER_KEY, "receipt-1")


@pytest.fixture
def sign_proof():
    """Factory signing a proof for an arbitrary receipt with the holder key."""

    def _sign(receipt_id: str, private_key: str = HOLDER_KEY) -> HolderProof:
        return make_proof(private_key, receipt_id)

    return _sign


@pytest.fixture
def holder_key():
    return HOLDER_KEY


@pytest.fixture
def holder_address():
    return HOLDER_ADDRESS
