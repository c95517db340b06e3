"""
Service-account credentials and the access-token cache for the document REST API.

Flow:
    1. Build a JWT assertion (RS256) from the service account's email and key
    2. Exchange it at the token endpoint for a short-lived bearer token
    3. Cache the token, refreshing it shortly before it expires

The cache is an explicit object rather than module state so that callers
(and tests) own its lifetime and its clock.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import aiohttp
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..core.errors import TokenExchangeError

logger = logging.getLogger(__name__)


TOKEN_URL = "https://oauth2.googleapis.com/token"
DATASTORE_SCOPE = "https://www.googleapis.com/auth/datastore"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

ASSERTION_LIFETIME_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 60


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def unescape_private_key(private_key: str) -> str:
    """Environment variables often carry PEM newlines as literal '\\n'."""
    return private_key.replace("\\n", "\n")


# ------------------------------------------------------------
# Credentials
# ------------------------------------------------------------

@dataclass(frozen=True)
class ServiceAccountCredentials:
    project_id: str
    client_email: str
    private_key: str
    scope: str = DATASTORE_SCOPE
    token_url: str = TOKEN_URL

    def __post_init__(self):
        object.__setattr__(self, "private_key", unescape_private_key(self.private_key))

    def _load_key(self) -> rsa.RSAPrivateKey:
        try:
            key = serialization.load_pem_private_key(
                self.private_key.encode("utf-8"),
                password=None,
            )
        except (ValueError, TypeError) as e:
            raise TokenExchangeError(f"Unable to load service account private key: {e}") from e

        if not isinstance(key, rsa.RSAPrivateKey):
            raise TokenExchangeError("Service account private key must be an RSA key")
        return key

    def claims(self, issued_at: int) -> Dict[str, Any]:
        return {
            "iss": self.client_email,
            "sub": self.client_email,
            "aud": self.token_url,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
            "scope": self.scope,
        }

    def sign_assertion(self, issued_at: Optional[int] = None) -> str:
        """Signed RS256 JWT used as the token-exchange assertion."""
        if issued_at is None:
            issued_at = int(time.time())

        header = {"alg": "RS256", "typ": "JWT"}
        signing_input = ".".join(
            _b64url(json.dumps(part, separators=(",", ":")).encode("utf-8"))
            for part in (header, self.claims(issued_at))
        )

        signature = self._load_key().sign(
            signing_input.encode("ascii"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return f"{signing_input}.{_b64url(signature)}"


# ------------------------------------------------------------
# Token cache
# ------------------------------------------------------------

@dataclass
class AccessToken:
    value: str
    expires_at: float  # epoch seconds, already reduced by the refresh margin


@dataclass
class AccessTokenCache:
    """
    Caches one bearer token per credential.

    Concurrent refreshes are allowed; the last writer wins. Exchanging
    the same credential twice is harmless.
    """

    credentials: ServiceAccountCredentials
    clock: Callable[[], float] = time.time
    refresh_margin: float = REFRESH_MARGIN_SECONDS
    _token: Optional[AccessToken] = field(default=None, init=False, repr=False)

    def valid(self) -> bool:
        return self._token is not None and self.clock() < self._token.expires_at

    def invalidate(self) -> None:
        self._token = None

    async def get_token(self, session: aiohttp.ClientSession) -> str:
        if self.valid():
            return self._token.value

        token = await self._exchange(session)
        self._token = token
        return token.value

    async def _exchange(self, session: aiohttp.ClientSession) -> AccessToken:
        now = self.clock()
        assertion = self.credentials.sign_assertion(int(now))

        logger.debug(f"Requesting access token for {self.credentials.client_email}")

        try:
            async with session.post(
                self.credentials.token_url,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise TokenExchangeError(
                        f"Failed to get access token: {resp.status} {text}",
                        details={"status": resp.status},
                    )
                payload = json.loads(text)
        except aiohttp.ClientError as e:
            raise TokenExchangeError(f"Failed to get access token: {e}") from e
        except ValueError as e:
            raise TokenExchangeError(f"Token endpoint returned invalid JSON: {e}") from e

        if "access_token" not in payload:
            raise TokenExchangeError("Token endpoint response has no access_token")

        expires_in = float(payload.get("expires_in", ASSERTION_LIFETIME_SECONDS))
        logger.debug(f"Access token refreshed, expires in {expires_in:.0f}s")

        return AccessToken(
            value=payload["access_token"],
            expires_at=now + expires_in - self.refresh_margin,
        )


__all__ = [
    "TOKEN_URL",
    "DATASTORE_SCOPE",
    "ServiceAccountCredentials",
    "AccessToken",
    "AccessTokenCache",
    "unescape_private_key",
]
