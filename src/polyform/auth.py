from __future__ import annotations

import hmac
from typing import Protocol

from fastapi import HTTPException, Request

from polyform.config import Settings

ADMIN_TOKEN_HEADER = "X-Admin-Token"


class AuthProvider(Protocol):
    def require_admin(self, request: Request) -> None: ...


class NoAuthProvider:
    def require_admin(self, request: Request) -> None:
        return None


class TokenAuthProvider:
    def __init__(self, token: str) -> None:
        self._token = token

    def require_admin(self, request: Request) -> None:
        supplied = request.headers.get(ADMIN_TOKEN_HEADER, "")
        if not supplied:
            auth = request.headers.get("Authorization", "")
            if auth.lower().startswith("bearer "):
                supplied = auth[7:].strip()
        if not self._token or not hmac.compare_digest(supplied, self._token):
            raise HTTPException(status_code=401, detail="Admin authorization required")


def get_auth_provider(settings: Settings) -> AuthProvider:
    if settings.auth_mode == "token":
        return TokenAuthProvider(settings.admin_token)
    return NoAuthProvider()


def admin_guard(request: Request) -> None:
    request.app.state.auth_provider.require_admin(request)
