"""Utilities for requesting runner registration tokens from the GitHub API."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import jwt
import structlog

from ..common.schemas import RegistrationToken
from ..common.settings import BridgeSettings
from .errors import TokenAcquisitionFailed

LOGGER = structlog.get_logger("dynobridge.github")

GITHUB_ACCEPT = "application/vnd.github+json"
GITHUB_API_VERSION = "2022-11-28"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def build_app_jwt(settings: BridgeSettings) -> str:
    """Return a short-lived JWT for GitHub App authentication."""

    if settings.github_app_private_key is None or settings.github_app_id is None:
        raise TokenAcquisitionFailed("GitHub App credentials are not configured")
    now = int(time.time())
    payload = {
        "iat": now - 60,
        "exp": now + 540,
        "iss": str(settings.github_app_id),
    }
    return jwt.encode(payload, settings.github_app_private_key.get_secret_value(), algorithm="RS256")


@dataclass
class InstallationToken:
    token: str
    expires_at: datetime

    @property
    def is_valid(self) -> bool:
        return self.expires_at > _utc_now() + timedelta(seconds=30)


class GitHubClient:
    """Wraps the GitHub API calls needed to register ephemeral runners.

    Authenticates with a personal access token when one is configured, and
    otherwise as a GitHub App installation.
    """

    def __init__(self, settings: BridgeSettings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http = http_client
        self._api_base = str(settings.github_api_url).rstrip("/")
        self._cached_installation_token: Optional[InstallationToken] = None

    async def _exchange_installation_token(self) -> InstallationToken:
        jwt_token = build_app_jwt(self._settings)
        url = (
            f"{self._api_base}/app/installations/"
            f"{self._settings.github_app_installation_id}/access_tokens"
        )
        headers = {
            "Authorization": f"Bearer {jwt_token}",
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        response = await self._http.post(url, headers=headers)
        response.raise_for_status()
        data = response.json()
        token = InstallationToken(token=data["token"], expires_at=_parse_timestamp(data["expires_at"]))
        self._cached_installation_token = token
        return token

    async def _access_token(self) -> str:
        if self._settings.github_token is not None:
            return self._settings.github_token.get_secret_value()
        if self._cached_installation_token and self._cached_installation_token.is_valid:
            return self._cached_installation_token.token
        return (await self._exchange_installation_token()).token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def create_org_registration_token(self, org: str) -> RegistrationToken:
        """Issue a registration token that lets a new runner join ``org``."""

        url = f"{self._api_base}/orgs/{org}/actions/runners/registration-token"
        try:
            headers = await self._auth_headers()
            response = await self._http.post(url, headers=headers)
            response.raise_for_status()
            data = response.json()
            token = RegistrationToken(token=data["token"], expires_at=_parse_timestamp(data["expires_at"]))
        except httpx.HTTPStatusError as exc:
            LOGGER.error(
                "GitHub rejected registration token request",
                org=org,
                status=exc.response.status_code,
                url=str(exc.request.url),
            )
            raise TokenAcquisitionFailed(
                f"GitHub returned {exc.response.status_code} for {org} registration token"
            ) from exc
        except httpx.HTTPError as exc:
            LOGGER.error("GitHub registration token request failed", org=org, error=str(exc))
            raise TokenAcquisitionFailed(f"registration token request failed: {exc}") from exc
        except jwt.PyJWTError as exc:
            LOGGER.error("Could not sign GitHub App JWT", org=org, error=str(exc))
            raise TokenAcquisitionFailed("GitHub App authentication failed") from exc
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.error("Unexpected registration token response", org=org, error=str(exc))
            raise TokenAcquisitionFailed("malformed registration token response") from exc
        return token
