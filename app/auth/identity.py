from dataclasses import dataclass
from typing import Protocol

import httpx

from app.core.errors import AuthenticationError


@dataclass(frozen=True)
class Identity:
    user_id: str


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token", code="auth_missing")
    token = authorization.removeprefix("Bearer ").strip()
    if not token:
        raise AuthenticationError("Missing bearer token", code="auth_missing")
    return token


class IdentityProvider(Protocol):
    async def authenticate(self, authorization: str | None) -> Identity:
        """Resolve the caller or raise ``AuthenticationError``."""


class StaticTokenIdentityProvider:
    """Maps configured bearer tokens to user ids."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def authenticate(self, authorization: str | None) -> Identity:
        token = bearer_token(authorization)
        user_id = self._tokens.get(token)
        if user_id is None:
            raise AuthenticationError("Invalid bearer token")
        return Identity(user_id=user_id)


class HTTPIdentityProvider:
    """Resolves bearer tokens against the hosted auth server's user endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    async def authenticate(self, authorization: str | None) -> Identity:
        token = bearer_token(authorization)
        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(self._url, headers=headers)
        except httpx.HTTPError as exc:
            raise AuthenticationError("Identity service unavailable") from exc

        if resp.status_code != 200:
            raise AuthenticationError("Invalid bearer token")
        try:
            body = resp.json()
        except ValueError as exc:
            raise AuthenticationError("Invalid identity response") from exc
        user_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(user_id, str) or not user_id:
            raise AuthenticationError("Invalid identity response")
        return Identity(user_id=user_id)
