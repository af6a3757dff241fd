"""Client for creating one-off dynos through the Heroku platform API."""

from __future__ import annotations

import httpx
import structlog
from pydantic import ValidationError

from ..common.schemas import Dyno, ProvisionRequest
from ..common.settings import BridgeSettings
from .errors import ProvisioningFailed

LOGGER = structlog.get_logger("dynobridge.heroku")

HEROKU_ACCEPT = "application/vnd.heroku+json; version=3"


class HerokuClient:
    """Creates detached one-off dynos that run the runner bootstrap command."""

    def __init__(self, settings: BridgeSettings, http_client: httpx.AsyncClient):
        self._http = http_client
        self._api_base = str(settings.heroku_api_url).rstrip("/")
        self._auth = httpx.BasicAuth(settings.heroku_login, settings.heroku_token.get_secret_value())

    async def create_dyno(self, request: ProvisionRequest) -> Dyno:
        url = f"{self._api_base}/apps/{request.app}/dynos"
        headers = {"Accept": HEROKU_ACCEPT}
        try:
            response = await self._http.post(url, json=request.api_body(), headers=headers, auth=self._auth)
            response.raise_for_status()
            return Dyno.model_validate(response.json())
        except httpx.HTTPStatusError as exc:
            LOGGER.error(
                "Heroku rejected dyno creation",
                app=request.app,
                status=exc.response.status_code,
                reason=_error_id(exc.response),
            )
            raise ProvisioningFailed(f"Heroku returned {exc.response.status_code} creating dyno") from exc
        except httpx.HTTPError as exc:
            LOGGER.error("Heroku dyno creation failed", app=request.app, error=str(exc))
            raise ProvisioningFailed(f"dyno creation request failed: {exc}") from exc
        except (ValidationError, ValueError) as exc:
            LOGGER.error("Unexpected dyno creation response", app=request.app, error=str(exc))
            raise ProvisioningFailed("malformed dyno creation response") from exc


def _error_id(response: httpx.Response) -> str | None:
    # Heroku errors carry {"id": "...", "message": "..."}
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("id")
    return None
