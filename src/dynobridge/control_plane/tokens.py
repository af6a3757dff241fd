"""Process-wide cache for the organization runner registration token."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from ..common.schemas import RegistrationToken
from .errors import TokenAcquisitionFailed

LOGGER = structlog.get_logger("dynobridge.tokens")

SAFETY_MARGIN = timedelta(minutes=5)


class TokenIssuer(Protocol):
    def __call__(self, org: str) -> Awaitable[RegistrationToken]:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RegistrationTokenCache:
    """Holds at most one registration token and refreshes it single-flight.

    Every ``get`` takes the same lock. The caller that finds the slot empty or
    inside the safety margin performs the upstream call while holding it, so
    callers queued behind it find a fresh token and return without issuing
    their own request.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        *,
        margin: timedelta = SAFETY_MARGIN,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._issuer = issuer
        self._margin = margin
        self._clock = clock
        self._lock = asyncio.Lock()
        self._token: Optional[RegistrationToken] = None

    @property
    def current(self) -> Optional[RegistrationToken]:
        return self._token

    async def get(self, org: str) -> str:
        async with self._lock:
            token = self._token
            if token is None or not token.usable(self._clock(), self._margin):
                token = await self._refresh(org)
            return token.token

    async def _refresh(self, org: str) -> RegistrationToken:
        try:
            token = await self._issuer(org)
        except TokenAcquisitionFailed:
            raise
        except Exception as exc:
            LOGGER.error("Registration token refresh failed", org=org, error=str(exc))
            raise TokenAcquisitionFailed(f"could not obtain registration token for {org}") from exc
        LOGGER.info("Obtained registration token", org=org, expires_at=token.expires_at.isoformat())
        self._token = token
        return token
