"""Caller identification for the REST API.

User identity arrives in trusted headers set by the upstream gateway
(``X-User-Id``, ``X-User-Role``). Machine callers present shared secrets:
the analysis service a bearer token, cron and ops tooling an
``X-Internal-Secret`` header. Secrets are compared in constant time, and an
unset secret rejects everything.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Depends, Header

from proof_escrow.api.deps import get_app_settings
from proof_escrow.config import Settings
from proof_escrow.domain.enums import Role
from proof_escrow.domain.exceptions import AuthenticationError


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def secrets_match(presented: str | None, expected: str) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CurrentUser:
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    try:
        role = Role((x_user_role or Role.CREATOR.value).lower())
    except ValueError as exc:
        raise AuthenticationError(f"Unknown role: {x_user_role}") from exc
    return CurrentUser(id=x_user_id, role=role)


async def get_optional_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CurrentUser | None:
    if not x_user_id:
        return None
    return await get_current_user(x_user_id, x_user_role)


async def require_callback_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Guard for analysis-service callbacks; runs before the body is read."""
    if not secrets_match(_bearer(authorization), settings.analysis_callback_secret):
        raise AuthenticationError("Invalid callback credentials")


async def require_analysis_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    presented = _bearer(authorization) or x_api_key
    if not secrets_match(presented, settings.analysis_api_key):
        raise AuthenticationError("Invalid analysis API key")


async def has_internal_secret(
    x_internal_secret: str | None = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> bool:
    return secrets_match(x_internal_secret, settings.internal_secret)


async def require_internal_secret(
    authorized: bool = Depends(has_internal_secret),
) -> None:
    if not authorized:
        raise AuthenticationError("Invalid internal secret")
