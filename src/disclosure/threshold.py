"""Threshold network access for time-boxed coupon disclosure.

The network holds the decryption shares and enforces each policy's validity
window server-side; this module only speaks its protocol. The mock client
keeps a local policy registry and performs no real cryptography.
"""

import base64
import hashlib
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx

from src.config import Config, config
from src.errors import CoreError, ErrorKind
from src.logging_utils import get_correlation_id, get_logger
from src.models import EncryptedPayload, utcnow

logger = get_logger(__name__)


class ThresholdDisclosureClient(ABC):
    """Encrypts under a time-window policy and assembles decryption from a threshold network."""

    @abstractmethod
    async def encrypt(self, plaintext: str, valid_from: datetime, valid_until: datetime) -> EncryptedPayload:
        """Encrypt ``plaintext`` under a policy bound to the given window."""

    @abstractmethod
    async def decrypt(self, capsule: str, ciphertext: str, policy_id: str) -> str:
        """Decrypt a payload.

        Raises:
            CoreError: QUORUM_UNAVAILABLE when not enough shares could be
                gathered, POLICY_EXPIRED outside the policy window,
                UNAVAILABLE on transport failure.
        """

    async def close(self) -> None:
        """Release network resources."""


class GatewayThresholdClient(ThresholdDisclosureClient):
    """HTTP client for a threshold decryption gateway."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, body: dict) -> dict:
        headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id

        try:
            response = await self._http.post(f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Threshold gateway {path} failed: {e}")
            raise CoreError(ErrorKind.UNAVAILABLE, "Threshold gateway unreachable") from e

        if response.status_code == 503:
            raise CoreError(ErrorKind.QUORUM_UNAVAILABLE, "Threshold network could not reach quorum")
        if response.status_code == 410:
            raise CoreError(ErrorKind.POLICY_EXPIRED, "Disclosure policy is outside its validity window")
        if response.status_code >= 400:
            logger.warning(f"Threshold gateway {path} returned {response.status_code}")
            raise CoreError(
                ErrorKind.UNAVAILABLE,
                f"Threshold gateway returned {response.status_code}",
            )
        return response.json()

    async def encrypt(self, plaintext: str, valid_from: datetime, valid_until: datetime) -> EncryptedPayload:
        data = await self._post(
            "/encrypt",
            {
                "plaintext": base64.b64encode(plaintext.encode()).decode(),
                "conditions": {
                    "not_before": int(valid_from.timestamp()),
                    "not_after": int(valid_until.timestamp()),
                },
            },
        )
        return EncryptedPayload(
            capsule=data["capsule"],
            ciphertext=data["ciphertext"],
            policy_id=data["policy_id"],
        )

    async def decrypt(self, capsule: str, ciphertext: str, policy_id: str) -> str:
        data = await self._post(
            "/decrypt",
            {"capsule": capsule, "ciphertext": ciphertext, "policy_id": policy_id},
        )
        return base64.b64decode(data["plaintext"]).decode()


@dataclass
class _Policy:
    valid_from: datetime
    valid_until: datetime


class MockThresholdClient(ThresholdDisclosureClient):
    """In-process stand-in for a threshold network (development and tests)."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._policies: dict[str, _Policy] = {}
        self._quorum_available = True
        self.decrypt_calls = 0

    def set_quorum_available(self, available: bool) -> None:
        self._quorum_available = available

    @staticmethod
    def _keystream(policy_id: str, capsule: str, length: int) -> bytes:
        stream = b""
        counter = 0
        while len(stream) < length:
            stream += hashlib.sha256(f"{policy_id}:{capsule}:{counter}".encode()).digest()
            counter += 1
        return stream[:length]

    async def encrypt(self, plaintext: str, valid_from: datetime, valid_until: datetime) -> EncryptedPayload:
        policy_id = f"policy-{uuid.uuid4().hex[:12]}"
        capsule = secrets.token_hex(16)
        raw = plaintext.encode()
        masked = bytes(a ^ b for a, b in zip(raw, self._keystream(policy_id, capsule, len(raw))))
        self._policies[policy_id] = _Policy(valid_from=valid_from, valid_until=valid_until)
        logger.debug(f"[MOCK] created policy {policy_id} until {valid_until.isoformat()}")
        return EncryptedPayload(
            capsule=capsule,
            ciphertext=base64.b64encode(masked).decode(),
            policy_id=policy_id,
        )

    async def decrypt(self, capsule: str, ciphertext: str, policy_id: str) -> str:
        self.decrypt_calls += 1
        if not self._quorum_available:
            raise CoreError(ErrorKind.QUORUM_UNAVAILABLE, "Mock threshold network has no quorum")

        policy = self._policies.get(policy_id)
        if policy is None:
            raise CoreError(ErrorKind.POLICY_EXPIRED, f"Unknown policy {policy_id}")
        now = self.clock()
        if not policy.valid_from <= now <= policy.valid_until:
            raise CoreError(ErrorKind.POLICY_EXPIRED, "Disclosure policy is outside its validity window")

        masked = base64.b64decode(ciphertext)
        raw = bytes(a ^ b for a, b in zip(masked, self._keystream(policy_id, capsule, len(masked))))
        return raw.decode()


def build_threshold_client(cfg: Optional[Config] = None) -> ThresholdDisclosureClient:
    """Resolve the threshold client from ``threshold_mode``."""
    cfg = cfg or config
    if cfg.threshold_mode == "mock":
        logger.info("Using mock threshold network")
        return MockThresholdClient()
    return GatewayThresholdClient(
        cfg.threshold_gateway_url,
        api_key=cfg.threshold_api_key,
        timeout=cfg.external_call_timeout_seconds,
    )
