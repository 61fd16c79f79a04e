"""HTTP implementation of the link session backend."""

import asyncio
import random
from typing import Any, Optional

import httpx
import structlog

from ..config.defaults import TransportParams
from ..session.models import LinkInitResult, PaymentMethodSnapshot
from .base import LinkBackend, PermanentBackendError, RetryableBackendError
from .parsers import ParseError, parse_link_init, parse_payment_methods, parse_verify_status

logger = structlog.get_logger(__name__)


class HttpLinkBackend(LinkBackend):
    """Link session backend over HTTP JSON."""

    def __init__(self, params: Optional[TransportParams] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.params = params or TransportParams()
        self.logger = logger.bind(base_url=self.params.base_url)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.params.base_url,
            timeout=self.params.request_timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "User-Agent": "cardlink/0.1",
                **self.params.headers,
            },
        )

    async def __aenter__(self) -> "HttpLinkBackend":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _path(self, path: str) -> str:
        """Prefix an endpoint path, avoiding a doubled prefix when base_url already has it."""
        prefix = "/" + self.params.api_prefix.strip("/") if self.params.api_prefix.strip("/") else ""
        if prefix and self.params.base_url.rstrip("/").endswith(prefix):
            prefix = ""
        return f"{prefix}/{path.lstrip('/')}"

    async def ensure_customer(self, account_id: str, email: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"accountId": account_id}
        if email:
            payload["email"] = email
        await self._request("POST", "/customers", json=payload)

    async def create_link_session(self, account_id: str,
                                  email: Optional[str] = None) -> LinkInitResult:
        payload: dict[str, Any] = {"accountId": account_id}
        if email:
            payload["email"] = email

        body = await self._request("POST", "/link-sessions", json=payload)
        try:
            return parse_link_init(body)
        except ParseError as e:
            raise PermanentBackendError(f"Malformed link session response: {e}", payload=body) from e

    async def verify_link_session(self, reference: str) -> Optional[str]:
        body = await self._request("POST", f"/link-sessions/{reference}/verify", retries=0)
        return parse_verify_status(body)

    async def list_payment_methods(self, account_id: str) -> PaymentMethodSnapshot:
        try:
            body = await self._request("GET", f"/accounts/{account_id}/payment-methods")
        except PermanentBackendError as e:
            # No customer record yet means no saved methods
            if e.status_code == 404:
                return PaymentMethodSnapshot.empty()
            raise

        try:
            return parse_payment_methods(body)
        except ParseError as e:
            raise RetryableBackendError(f"Malformed payment method list: {e}", payload=body) from e

    async def _request(self, method: str, path: str, json: Optional[dict] = None,
                       retries: Optional[int] = None) -> Any:
        """Send a request with bounded retry of network and server failures."""
        max_retries = self.params.max_retries if retries is None else retries
        url = self._path(path)
        attempt = 0

        while True:
            try:
                return await self._send_once(method, url, json)
            except RetryableBackendError as e:
                if attempt >= max_retries:
                    raise
                delay = self._backoff_seconds(attempt)
                self.logger.warning(
                    "Backend request failed, retrying",
                    method=method,
                    path=url,
                    attempt=attempt + 1,
                    retry_in_seconds=round(delay, 3),
                    error=str(e)
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _send_once(self, method: str, url: str, json: Optional[dict]) -> Any:
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.TimeoutException as e:
            raise RetryableBackendError(f"Request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise RetryableBackendError(f"Network error: {e}") from e

        body = self._decode(response)

        if response.status_code >= 500:
            raise RetryableBackendError(
                f"HTTP {response.status_code} from {method} {url}",
                status_code=response.status_code,
                payload=body
            )
        if response.status_code >= 400:
            raise PermanentBackendError(
                f"HTTP {response.status_code} from {method} {url}",
                status_code=response.status_code,
                payload=body
            )

        return body

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _backoff_seconds(self, attempt: int) -> float:
        base_ms = self.params.backoff_base_ms * (1 << attempt)
        jitter_ms = random.randint(0, 100 * (attempt + 1))
        return (base_ms + jitter_ms) / 1000.0
