"""Provider OAuth credential handling: encrypt/decrypt, expiry, refresh.

Stored credentials are an encrypted JSON bundle
``{accessToken, refreshToken, expiresAt}``.  The cipher is an opaque
collaborator with ``encrypt(str) -> str`` / ``decrypt(str) -> str``;
``FernetCipher`` is the default implementation.

Token endpoints return an *absolute* ``expires_at`` (unix seconds), not a
relative ``expires_in``; only when ``expires_at`` is absent does the vault
fall back to ``expires_in``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Protocol
from urllib.parse import urlencode

import httpx
from cryptography.fernet import Fernet, InvalidToken

from src.ingestion.base import TokenBundle
from src.ingestion.errors import (
    AuthExpiredError,
    InvariantViolation,
    ProviderRequestError,
    RateLimitError,
    TransientNetworkError,
)

logger = logging.getLogger("waypoint.ingestion.token_vault")

#: Tokens expiring within this many seconds are treated as already expired.
EXPIRY_BUFFER_SECONDS = 300

#: Back-off used when a 429 from the token endpoint carries no usable headers.
TOKEN_RATE_LIMIT_FALLBACK_SECONDS = 900

RateLimitParser = Callable[[Mapping[str, str], datetime], "tuple[str, datetime] | None"]


class TokenCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class FernetCipher:
    """Symmetric cipher for credentials at rest, backed by Fernet."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ValueError("A Fernet key is required to encrypt provider tokens")
        if isinstance(key, str):
            key = key.encode()
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ValueError(f"Invalid encryption key format: {exc}") from exc

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise InvariantViolation("Stored credential could not be decrypted") from exc


class TokenVault:
    """Owns the stored-credential lifecycle for one provider.

    All operations are side-effect free except ``refresh`` and
    ``exchange_code``, which each perform one POST to the token endpoint.
    """

    def __init__(
        self,
        cipher: TokenCipher,
        token_url: str,
        client_id: str,
        client_secret: str,
        authorize_url: str = "",
        scope: str = "",
        http_client: httpx.AsyncClient | None = None,
        expiry_buffer_seconds: int = EXPIRY_BUFFER_SECONDS,
        rate_limit_parser: RateLimitParser | None = None,
    ) -> None:
        """Initialize the vault.

        Args:
            cipher:                Opaque encrypt/decrypt collaborator.
            token_url:             Provider OAuth2 token endpoint.
            client_id:             OAuth2 client id.
            client_secret:         OAuth2 client secret.
            authorize_url:         Provider authorization page (for the connect flow).
            scope:                 Default scope requested by ``authorization_url``.
            http_client:           Optional shared httpx client (for pooling and tests).
            expiry_buffer_seconds: Proactive refresh margin.
            rate_limit_parser:     Reads (window, retry_after) from a 429's headers;
                                   usually the adapter's ``parse_rate_limit``.
        """
        if not client_id or not client_secret:
            logger.warning("TokenVault for %s created without client credentials", token_url)
        self._cipher = cipher
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._authorize_url = authorize_url
        self._scope = scope
        self._http_client = http_client
        self._buffer = expiry_buffer_seconds
        self._rate_limit_parser = rate_limit_parser

    # ------------------------------------------------------------------
    # Storage form
    # ------------------------------------------------------------------

    def encrypt(self, bundle: TokenBundle) -> str:
        return self._cipher.encrypt(bundle.to_json())

    def decrypt(self, ciphertext: str) -> TokenBundle:
        """Decrypt and parse a stored bundle.

        Raises:
            InvariantViolation: If the ciphertext is empty or the bundle malformed.
        """
        if not ciphertext:
            raise InvariantViolation("Encrypted credential is empty")
        return TokenBundle.from_json(self._cipher.decrypt(ciphertext))

    def is_expired(self, bundle: TokenBundle, now: float | None = None) -> bool:
        """True if the access token expires within the buffer (or already has)."""
        current = time.time() if now is None else now
        return bundle.expires_at <= current + self._buffer

    # ------------------------------------------------------------------
    # OAuth2 grants
    # ------------------------------------------------------------------

    def authorization_url(
        self, redirect_uri: str, state: str = "", scope: str | None = None
    ) -> str:
        """Build the URL the user visits to grant access."""
        if not redirect_uri:
            raise ValueError("Redirect URI is required")
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope or self._scope,
            "state": state,
        }
        return f"{self._authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenBundle:
        """Exchange an authorization code for a new credential.

        Raises:
            AuthExpiredError:      If the provider rejects the code.
            TransientNetworkError: On transport failure or a 5xx response.
            RateLimitError:        If the token endpoint answers 429.
            ProviderRequestError:  On any other unexpected 4xx.
        """
        if not code:
            raise ValueError("Authorization code is required")
        logger.info("Exchanging authorization code at %s", self._token_url)
        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            }
        )
        return self._bundle_from_response(data, fallback_refresh=None)

    async def refresh(self, refresh_token: str) -> TokenBundle:
        """Obtain a fresh credential from a refresh token.

        Raises:
            AuthExpiredError:      If the provider rejects the refresh token.
                                   Terminal: the user must reconnect.
            TransientNetworkError: On transport failure or a 5xx response.
            RateLimitError:        If the token endpoint answers 429.
            ProviderRequestError:  On any other unexpected 4xx.
        """
        if not refresh_token:
            raise InvariantViolation("Refresh token is required")
        logger.info("Refreshing access token at %s", self._token_url)
        data = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        return self._bundle_from_response(data, fallback_refresh=refresh_token)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _post_token(self, grant: dict[str, Any]) -> dict[str, Any]:
        body = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            **grant,
        }
        headers = {"Accept": "application/json"}
        try:
            if self._http_client:
                response = await self._http_client.post(self._token_url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self._token_url, json=body, headers=headers)
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code in (400, 401, 403):
            logger.warning(
                "Token endpoint rejected %s grant with HTTP %d",
                grant.get("grant_type"),
                response.status_code,
            )
            raise AuthExpiredError(
                "Provider rejected the credential. Please reconnect your account."
            )
        if response.status_code == 429:
            raise self._rate_limited(response)
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Token endpoint returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise ProviderRequestError(response.status_code, self._token_url)
        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError("Token endpoint returned invalid JSON") from exc

    def _rate_limited(self, response: httpx.Response) -> RateLimitError:
        now = datetime.now(timezone.utc)
        parsed = None
        if self._rate_limit_parser is not None:
            parsed = self._rate_limit_parser(response.headers, now)
        if parsed is None:
            parsed = ("provider", now + timedelta(seconds=TOKEN_RATE_LIMIT_FALLBACK_SECONDS))
        window, retry_after = parsed
        logger.warning(
            "Token endpoint rate limited (%s window), retry after %s",
            window,
            retry_after.isoformat(),
        )
        return RateLimitError(window, retry_after)

    @staticmethod
    def _bundle_from_response(
        data: dict[str, Any], fallback_refresh: str | None
    ) -> TokenBundle:
        access = data.get("access_token")
        if not access:
            raise AuthExpiredError("No access token in token endpoint response")
        refresh = data.get("refresh_token") or fallback_refresh
        if not refresh:
            raise InvariantViolation("Token endpoint response has no refresh token")

        expires_at = data.get("expires_at")
        if expires_at is None:
            expires_in = data.get("expires_in", 3600)
            expires_at = int(time.time()) + int(expires_in)
        return TokenBundle(
            access_token=access, refresh_token=refresh, expires_at=int(expires_at)
        )
