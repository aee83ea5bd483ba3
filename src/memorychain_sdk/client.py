"""Core Memorychain Client."""

from typing import Any, Optional

import httpx

from src.errors import CoreError, ErrorKind

from .coupons import CouponsClient
from .payments import PaymentsClient


class MemorychainAPIError(CoreError):
    """Error returned by the Memorychain service."""

    def __init__(self, kind: ErrorKind, message: str, status_code: int, details: Optional[dict] = None):
        super().__init__(kind, message, details)
        self.status_code = status_code


class MemorychainClient:
    """Main entry point for the Memorychain SDK."""

    def __init__(
        self,
        base_url: str = "http://localhost:4030",
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Memorychain Client.

        Args:
            base_url: The URL of the Memorychain service.
            api_key: Optional API key sent as a bearer token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (e.g. ASGITransport in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self):
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and decode the JSON body.

        Raises:
            MemorychainAPIError: When the service answers with an error.
        """
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise MemorychainAPIError(ErrorKind.UNAVAILABLE, f"Memorychain unreachable: {e}", 0) from e

        if response.status_code < 400:
            return response.json()

        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        try:
            kind = ErrorKind(error.get("kind"))
        except ValueError:
            kind = ErrorKind.INVALID_INPUT if response.status_code < 500 else ErrorKind.UNAVAILABLE
        raise MemorychainAPIError(
            kind,
            error.get("message") or response.text,
            response.status_code,
            error.get("details"),
        )

    async def health(self) -> dict:
        return await self._request("GET", "/health")

    @property
    def payments(self) -> PaymentsClient:
        """Access payment intent functionality."""
        return PaymentsClient(self)

    @property
    def coupons(self) -> CouponsClient:
        """Access coupon disclosure functionality."""
        return CouponsClient(self)
