"""Payment provider HTTP client with cached OAuth access tokens"""

import base64
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

import httpx

from payment_engine.config import ProviderSettings
from payment_engine.domain.exceptions import (
    ProviderCapacityError,
    ProviderDeclinedError,
    ProviderTransientError,
)
from payment_engine.domain.models import ProviderResponse
from payment_engine.utils.time_utils import parse_timestamp, utcnow

# Status codes a provider uses to say "too busy, go elsewhere"
CAPACITY_STATUS_CODES = {429, 503}

# Refresh the token this long before the provider says it expires
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


class ProviderClient(Protocol):
    """What the gateway pool needs from a provider integration"""

    async def submit(self, payload: Dict[str, Any]) -> ProviderResponse:
        ...

    async def query_status(self, transaction_id: str) -> Optional[ProviderResponse]:
        ...


def parse_provider_response(data: Dict[str, Any]) -> ProviderResponse:
    """Build a ProviderResponse from a provider's JSON body"""
    return ProviderResponse(
        transaction_id=data["transaction_id"],
        amount=float(data["amount"]),
        timestamp=parse_timestamp(data["timestamp"]),
        claimed_hash=data["security_hash"],
        reference=data.get("reference", ""),
        timestamp_raw=data["timestamp"],
    )


class HttpProviderClient:
    """Client for one external payment provider's REST API"""

    def __init__(
        self,
        provider: ProviderSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.base_url = provider.endpoint.rstrip("/")
        self.timeout = provider.timeout_seconds
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def generate_password(self, timestamp: str) -> str:
        """M-Pesa style request password: base64(short_code + pass_key + timestamp)"""
        raw = self.provider.short_code + self.provider.pass_key.get_secret_value() + timestamp
        return base64.b64encode(raw.encode("ascii")).decode("ascii")

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        """
        Fetch a client-credentials token, reusing the cached one until shortly
        before it expires.

        Raises:
            ProviderTransientError: Token endpoint unreachable or erroring
            ProviderDeclinedError: Credentials rejected
        """
        if self._access_token and self._token_expiry and utcnow() < self._token_expiry:
            return self._access_token

        credentials = f"{self.provider.consumer_key}:{self.provider.consumer_secret.get_secret_value()}"
        auth = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        try:
            response = await client.get(
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {auth}"},
            )
            response.raise_for_status()
            data = response.json()
            self._access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"{self.provider.name} token request timed out") from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (401, 403):
                raise ProviderDeclinedError(f"{self.provider.name} rejected credentials") from e
            raise ProviderTransientError(f"{self.provider.name} token error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise ProviderTransientError(f"{self.provider.name} token request failed: {e}") from e
        except (KeyError, ValueError, TypeError) as e:
            raise ProviderTransientError(f"Invalid token response from {self.provider.name}: {e}") from e

        self._token_expiry = utcnow() + timedelta(seconds=expires_in) - TOKEN_EXPIRY_MARGIN
        return self._access_token

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in CAPACITY_STATUS_CODES:
            raise ProviderCapacityError(f"{self.provider.name} at capacity ({status})")
        if status >= 500:
            raise ProviderTransientError(f"{self.provider.name} error: {status}")
        if status == 401:
            # Token revoked early; drop it so the next attempt fetches a fresh one
            self._access_token = None
            raise ProviderTransientError(f"{self.provider.name} rejected access token")
        raise ProviderDeclinedError(f"{self.provider.name} declined transaction ({status})")

    async def submit(self, payload: Dict[str, Any]) -> ProviderResponse:
        """
        Send one signed transaction to the provider.

        Raises:
            ProviderCapacityError: Provider throttled the request
            ProviderTransientError: Timeout, network failure or 5xx
            ProviderDeclinedError: Provider refused the transaction
        """
        timestamp = utcnow().strftime("%Y%m%d%H%M%S")
        body = dict(payload)
        body["business_short_code"] = self.provider.short_code
        body["password"] = self.generate_password(timestamp)
        body["request_timestamp"] = timestamp
        serialized = json.dumps(body, sort_keys=True)

        async with self._client() as client:
            token = await self._get_access_token(client)
            try:
                response = await client.post(
                    "/payments/v1/submit",
                    content=serialized,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {token}",
                        "X-Security-Hash": payload.get("security_hash", ""),
                    },
                )
                self._raise_for_status(response)
                return parse_provider_response(response.json())

            except httpx.TimeoutException as e:
                raise ProviderTransientError(f"{self.provider.name} timeout after {self.timeout}s") from e
            except httpx.RequestError as e:
                raise ProviderTransientError(f"{self.provider.name} request failed: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise ProviderTransientError(f"Invalid response from {self.provider.name}: {e}") from e

    async def query_status(self, transaction_id: str) -> Optional[ProviderResponse]:
        """Ask whether the provider already processed a transaction; None when unknown"""
        async with self._client() as client:
            token = await self._get_access_token(client)
            try:
                response = await client.get(
                    f"/payments/v1/status/{transaction_id}",
                    headers={"Authorization": f"Bearer {token}"},
                )
                if response.status_code == 404:
                    return None
                self._raise_for_status(response)
                return parse_provider_response(response.json())

            except httpx.TimeoutException as e:
                raise ProviderTransientError(f"{self.provider.name} status query timed out") from e
            except httpx.RequestError as e:
                raise ProviderTransientError(f"{self.provider.name} status query failed: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise ProviderTransientError(f"Invalid status response from {self.provider.name}: {e}") from e
