"""Token validation collaborators used by the connection registry."""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
import jwt

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Token could not be mapped to a known identity."""


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str


def _identity_from_claims(claims: dict) -> Identity:
    user_id = claims.get("id") or claims.get("sub")
    role = claims.get("role")
    if not user_id or not role:
        raise AuthError("token is missing id or role")
    return Identity(user_id=str(user_id), role=str(role).lower())


class TokenValidator(Protocol):
    async def validate(self, token: str) -> Identity: ...


class JwtTokenValidator:
    """Validates locally signed JWTs (same secret as the REST login)."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithms = [algorithm]

    async def validate(self, token: str) -> Identity:
        try:
            claims = jwt.decode(token, self._secret, algorithms=self._algorithms)
        except jwt.PyJWTError as e:
            raise AuthError(str(e)) from e
        return _identity_from_claims(claims)


class HttpTokenValidator:
    """Asks an external auth service to introspect the token."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(
            timeout=10.0,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def validate(self, token: str) -> Identity:
        try:
            resp = await self._client.post(self._url, json={"token": token})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise AuthError(f"introspection returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise AuthError(f"introspection failed: {type(e).__name__}") from e
        if not isinstance(data, dict):
            raise AuthError("introspection returned unexpected payload")
        return _identity_from_claims(data)
