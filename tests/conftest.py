from __future__ import annotations

from typing import Any, Callable

import pytest

from dynobridge.common.settings import BridgeSettings

from tests.utils.webhooks import WEBHOOK_SECRET

_BRIDGE_ENV = (
    "GITHUB_ORG",
    "GITHUB_SECRET",
    "GITHUB_TOKEN",
    "GITHUB_APP_ID",
    "GITHUB_APP_PRIVATE_KEY",
    "GITHUB_APP_INSTALLATION_ID",
    "GITHUB_API_URL",
    "GITHUB_WEB_URL",
    "X_HEROKU_APP",
    "X_HEROKU_LOGIN",
    "X_HEROKU_TOKEN",
    "X_HEROKU_API_URL",
    "X_HEROKU_DYNO_SIZE",
    "X_HEROKU_DYNO_TTL",
    "DYNOBRIDGE_RUNNER_COMMAND",
    "DYNOBRIDGE_REQUIRED_LABELS",
    "DYNOBRIDGE_HOST",
    "PORT",
    "DYNOBRIDGE_REQUEST_TIMEOUT",
    "DYNOBRIDGE_SHUTDOWN_TIMEOUT",
    "DYNOBRIDGE_UPSTREAM_TIMEOUT",
    "DYNOBRIDGE_LOG_LEVEL",
    "DYNOBRIDGE_OTEL_EXPORTER_ENDPOINT",
)


@pytest.fixture(autouse=True)
def _clean_bridge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _BRIDGE_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings() -> Callable[..., BridgeSettings]:
    def factory(**overrides: Any) -> BridgeSettings:
        values: dict[str, Any] = {
            "github_org": "acme",
            "github_webhook_secret": WEBHOOK_SECRET,
            "github_token": "ghp-test-token",
            "heroku_app": "acme-runners",
            "heroku_login": "ops@example.com",
            "heroku_token": "heroku-api-key",
        }
        values.update(overrides)
        return BridgeSettings(_env_file=None, **values)

    return factory
