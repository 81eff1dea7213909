"""Authenticated, quota-gated HTTP access to a provider API.

Every outbound call goes through ``ProviderGateway.call``:

    1. pre-flight quota check (denial raises RateLimitError, nothing is sent)
    2. proactive refresh of an expiring credential
    3. bearer-authenticated request
    4. one refresh-and-retry on 401
    5. status mapping into the sync error taxonomy

A refreshed credential is handed back in ``GatewayResult.refreshed_credential``
so the caller can persist it; the gateway itself stores nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from src.ingestion.base import ProviderAdapter, TokenBundle
from src.ingestion.errors import (
    AuthExpiredError,
    ProviderRequestError,
    RateLimitError,
    TransientNetworkError,
)
from src.ingestion.rate_limit import RateLimitGovernor
from src.ingestion.token_vault import TokenVault

logger = logging.getLogger("waypoint.ingestion.gateway")

_ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE"})


@dataclass
class GatewayResult:
    """Outcome of a successful gateway call.

    Attributes:
        payload:              Decoded JSON body (None for an empty body).
        refreshed_credential: New TokenBundle if one was obtained during the
                              call, else None.
    """

    payload: Any
    refreshed_credential: TokenBundle | None = None


class ProviderGateway:
    """Send requests to one provider on behalf of a user."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        vault: TokenVault,
        governor: RateLimitGovernor,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the gateway.

        Args:
            adapter:     Provider description (API base, rate-limit headers).
            vault:       Credential refresher.
            governor:    Per-user quota governor.
            http_client: Optional shared httpx client (for pooling and tests).
            timeout:     Request timeout in seconds when no client is supplied.
        """
        self._adapter = adapter
        self._vault = vault
        self._governor = governor
        self._http_client = http_client
        self._timeout = timeout

    @property
    def governor(self) -> RateLimitGovernor:
        return self._governor

    async def call(
        self,
        user_id: int,
        bundle: TokenBundle,
        endpoint: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
        endpoint_class: str = "api",
    ) -> GatewayResult:
        """Perform one authenticated request.

        Args:
            user_id:        Internal user id; keys the quota log.
            bundle:         Current credential.
            endpoint:       Path relative to the adapter's API base.
            params:         Query parameters (GET/DELETE) or JSON body (POST/PUT).
            method:         HTTP method.
            endpoint_class: Label recorded in the usage log.

        Returns:
            GatewayResult with the decoded payload.

        Raises:
            RateLimitError:        Local quota denial or provider 429.
            AuthExpiredError:      Credential rejected even after a refresh.
            TransientNetworkError: Transport failure or 5xx.
            ProviderRequestError:  Any other non-2xx response.
        """
        method = method.upper()
        if method not in _ALLOWED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        decision = self._governor.check_quota(user_id)
        if not decision.allowed:
            raise RateLimitError(decision.limit_type or "local", decision.reset_at)

        refreshed: TokenBundle | None = None
        if self._vault.is_expired(bundle):
            logger.info("Credential for user %s is expiring, refreshing before %s", user_id, endpoint)
            bundle = await self._vault.refresh(bundle.refresh_token)
            refreshed = bundle

        response = await self._send(user_id, bundle, endpoint, params, method, endpoint_class)

        if response.status_code == 401:
            logger.info("HTTP 401 from %s for user %s, refreshing and retrying once", endpoint, user_id)
            bundle = await self._vault.refresh(bundle.refresh_token)
            refreshed = bundle
            response = await self._send(user_id, bundle, endpoint, params, method, endpoint_class)
            if response.status_code == 401:
                raise AuthExpiredError(
                    f"{self._adapter.DISPLAY_NAME} rejected the refreshed credential"
                )

        self._raise_for_status(response, endpoint)

        if not response.content:
            payload = None
        else:
            try:
                payload = response.json()
            except ValueError as exc:
                raise TransientNetworkError(f"Invalid JSON from {endpoint}") from exc
        return GatewayResult(payload=payload, refreshed_credential=refreshed)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        user_id: int,
        bundle: TokenBundle,
        endpoint: str,
        params: dict[str, Any] | None,
        method: str,
        endpoint_class: str,
    ) -> httpx.Response:
        url = f"{self._adapter.API_BASE}{endpoint}"
        headers = {
            "Authorization": f"Bearer {bundle.access_token}",
            "Accept": "application/json",
        }
        kwargs: dict[str, Any] = {"headers": headers}
        if method in ("POST", "PUT"):
            kwargs["json"] = params
        else:
            kwargs["params"] = params

        try:
            if self._http_client:
                response = await self._http_client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise TransientNetworkError(f"{method} {endpoint} failed: {exc}") from exc

        # Anything the provider answered counts against the quota, rejections included.
        self._governor.record_request(user_id, endpoint_class)
        logger.debug("%s %s → HTTP %d", method, url, response.status_code)
        return response

    def _raise_for_status(self, response: httpx.Response, endpoint: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            now = datetime.now(timezone.utc)
            parsed = self._adapter.parse_rate_limit(response.headers, now)
            if parsed is None:
                shortest = self._governor.windows[0]
                parsed = (shortest.name, now + timedelta(seconds=shortest.window_seconds))
            window, retry_after = parsed
            logger.warning(
                "%s rate limit hit on %s (%s window), retry after %s",
                self._adapter.DISPLAY_NAME,
                endpoint,
                window,
                retry_after.isoformat(),
            )
            raise RateLimitError(window, retry_after)
        if status >= 500:
            raise TransientNetworkError(f"HTTP {status} from {endpoint}")
        raise ProviderRequestError(status, endpoint)
