"""Service-account key to OAuth bearer token exchange (RFC 7523 JWT-bearer grant)."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from pkgtrends.core.errors import CredentialError


logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class BearerToken:
    value: str
    expires_at: float

    def is_fresh(self, now: float, skew_seconds: float = 0) -> bool:
        return self.expires_at - skew_seconds > now


@dataclass(frozen=True)
class ServiceCredential:
    client_email: str
    private_key: rsa.RSAPrivateKey

    @classmethod
    def parse(cls, blob: str) -> "ServiceCredential":
        try:
            data = json.loads(blob)
        except (TypeError, ValueError) as exc:
            raise CredentialError("Service credential is not valid JSON.") from exc
        if not isinstance(data, dict):
            raise CredentialError("Service credential must be a JSON object.")

        client_email = str(data.get("client_email") or "").strip()
        pem = str(data.get("private_key") or "")
        if not client_email or not pem:
            raise CredentialError("Service credential needs client_email and private_key.")

        try:
            key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
        except (TypeError, ValueError) as exc:
            raise CredentialError("Service credential private key could not be loaded.") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CredentialError("Service credential private key must be an RSA key.")
        return cls(client_email=client_email, private_key=key)


def credential_fingerprint(blob: str) -> str:
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def build_assertion(
    credential: ServiceCredential,
    now: int,
    *,
    scope: str,
    audience: str,
    lifetime_seconds: int = ASSERTION_LIFETIME_SECONDS,
) -> str:
    claims = {
        "iss": credential.client_email,
        "scope": scope,
        "aud": audience,
        "iat": now,
        "exp": now + lifetime_seconds,
    }
    try:
        return jwt.encode(
            claims,
            credential.private_key,
            algorithm="RS256",
            headers={"typ": "JWT"},
        )
    except (jwt.PyJWTError, TypeError, ValueError) as exc:
        raise CredentialError("Failed to sign service credential assertion.") from exc


class CredentialBroker:
    """Exchanges a service credential for a bearer token, reusing fresh tokens.

    Tokens are cached per credential fingerprint and refreshed once they are within
    ``refresh_skew_seconds`` of expiry. No retries are attempted.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str,
        scope: str,
        timeout_seconds: float = 30.0,
        refresh_skew_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._token_url = token_url
        self._scope = scope
        self._timeout_seconds = timeout_seconds
        self._refresh_skew_seconds = refresh_skew_seconds
        self._clock = clock
        self._tokens: dict[str, BearerToken] = {}
        self._lock = asyncio.Lock()

    async def get_access_token(self, service_credential: str) -> BearerToken:
        fingerprint = credential_fingerprint(service_credential)
        cached = self._tokens.get(fingerprint)
        if cached and cached.is_fresh(self._clock(), self._refresh_skew_seconds):
            return cached

        async with self._lock:
            cached = self._tokens.get(fingerprint)
            if cached and cached.is_fresh(self._clock(), self._refresh_skew_seconds):
                return cached
            token = await self._exchange(service_credential)
            self._tokens[fingerprint] = token
            return token

    def invalidate(self, service_credential: str | None = None) -> None:
        if service_credential is None:
            self._tokens.clear()
            return
        self._tokens.pop(credential_fingerprint(service_credential), None)

    async def _exchange(self, service_credential: str) -> BearerToken:
        credential = ServiceCredential.parse(service_credential)
        now = int(self._clock())
        assertion = build_assertion(
            credential, now, scope=self._scope, audience=self._token_url
        )

        try:
            response = await self._client.post(
                self._token_url,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.error(f"Token exchange request failed: {exc}")
            raise CredentialError(f"Token exchange request failed: {exc}") from exc

        if not response.is_success:
            logger.error(
                f"Token exchange rejected: status={response.status_code} body={response.text}"
            )
            raise CredentialError(
                "Token exchange failed", status=response.status_code, body=response.text
            )

        payload = _json_or_none(response)
        access_token = payload.get("access_token") if payload else None
        if not access_token:
            raise CredentialError(
                "Token exchange returned no access_token",
                status=response.status_code,
                body=response.text,
            )
        expires_in = _as_int(payload.get("expires_in"), ASSERTION_LIFETIME_SECONDS)
        logger.info(f"Obtained access token for {credential.client_email}")
        return BearerToken(value=str(access_token), expires_at=now + expires_in)


def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
