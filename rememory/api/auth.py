"""Bearer-token identity for the REST layer.

Token verification belongs to the identity provider. The app only needs a
verifier that turns a bearer token into a caller identity, so deployments
plug in their own. StaticTokenVerifier covers development and tests.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Protocol

from starlette.requests import Request

from rememory.config import Settings
from rememory.errors import Unauthorized


@dataclass(frozen=True)
class CallerIdentity:
    uid: str
    email: str | None = None


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> CallerIdentity | None: ...


class StaticTokenVerifier:
    """Accepts a fixed set of tokens, plus DEV_STATIC_BEARER when configured."""

    def __init__(self, settings: Settings, tokens: dict[str, CallerIdentity] | None = None) -> None:
        self._tokens = dict(tokens or {})
        dev_token = settings.dev_static_bearer.strip()
        if dev_token:
            self._tokens.setdefault(
                dev_token, CallerIdentity(uid=settings.dev_static_uid, email="dev@rememory.local")
            )

    async def verify(self, token: str) -> CallerIdentity | None:
        for known, identity in self._tokens.items():
            if hmac.compare_digest(known, token):
                return identity
        return None


async def authenticate(request: Request, verifier: IdentityVerifier) -> CallerIdentity:
    """Resolve the caller from the Authorization header or raise Unauthorized."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Missing authentication token")
    identity = await verifier.verify(token.strip())
    if identity is None:
        raise Unauthorized("Could not verify credentials")
    return identity
