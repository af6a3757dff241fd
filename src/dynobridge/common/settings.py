"""Application configuration for the dynobridge webhook service."""

from __future__ import annotations

from typing import Optional

from pydantic import Field, HttpUrl, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RUNNER_COMMAND = (
    "./config.sh --unattended --ephemeral --url {url} --token {token} && ./run.sh"
)


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class BridgeSettings(BaseSettings):
    """Runtime settings for the webhook to dyno bridge.

    Variable names follow the Heroku deployment of the service, so the GitHub
    and Heroku credentials keep their historical names while bridge specific
    knobs are prefixed with ``DYNOBRIDGE_``.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    github_org: str = env_field(..., "GITHUB_ORG")
    github_webhook_secret: SecretStr = env_field(..., "GITHUB_SECRET")
    github_token: Optional[SecretStr] = env_field(None, "GITHUB_TOKEN")
    github_app_id: Optional[int] = env_field(None, "GITHUB_APP_ID")
    github_app_private_key: Optional[SecretStr] = env_field(None, "GITHUB_APP_PRIVATE_KEY")
    github_app_installation_id: Optional[int] = env_field(None, "GITHUB_APP_INSTALLATION_ID")
    github_api_url: HttpUrl = env_field(HttpUrl("https://api.github.com"), "GITHUB_API_URL")
    github_web_url: HttpUrl = env_field(HttpUrl("https://github.com"), "GITHUB_WEB_URL")

    heroku_app: str = env_field(..., "X_HEROKU_APP")
    heroku_login: str = env_field(..., "X_HEROKU_LOGIN")
    heroku_token: SecretStr = env_field(..., "X_HEROKU_TOKEN")
    heroku_api_url: HttpUrl = env_field(HttpUrl("https://api.heroku.com"), "X_HEROKU_API_URL")
    dyno_size: Optional[str] = env_field(None, "X_HEROKU_DYNO_SIZE")
    dyno_time_to_live: Optional[int] = env_field(None, "X_HEROKU_DYNO_TTL")

    runner_command_template: str = env_field(DEFAULT_RUNNER_COMMAND, "DYNOBRIDGE_RUNNER_COMMAND")
    required_labels_csv: str = env_field("", "DYNOBRIDGE_REQUIRED_LABELS")

    host: str = env_field("0.0.0.0", "DYNOBRIDGE_HOST")
    port: int = env_field(1123, "PORT")
    request_timeout_seconds: float = env_field(10.0, "DYNOBRIDGE_REQUEST_TIMEOUT")
    shutdown_timeout_seconds: float = env_field(15.0, "DYNOBRIDGE_SHUTDOWN_TIMEOUT")
    upstream_timeout_seconds: float = env_field(8.0, "DYNOBRIDGE_UPSTREAM_TIMEOUT")

    log_level: str = env_field("INFO", "DYNOBRIDGE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "DYNOBRIDGE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "DYNOBRIDGE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "DYNOBRIDGE_OTEL_SAMPLER_RATIO")

    @field_validator("runner_command_template")
    @classmethod
    def _check_command_placeholders(cls, value: str) -> str:
        for placeholder in ("{url}", "{token}"):
            if placeholder not in value:
                raise ValueError(f"runner command must contain {placeholder}")
        try:
            value.format(url="", token="")
        except (KeyError, IndexError, ValueError) as exc:
            raise ValueError(f"runner command has unknown placeholders: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _check_github_credentials(self) -> "BridgeSettings":
        app_fields = (self.github_app_id, self.github_app_private_key, self.github_app_installation_id)
        has_app = all(item is not None for item in app_fields)
        if any(item is not None for item in app_fields) and not has_app:
            raise ValueError(
                "GITHUB_APP_ID, GITHUB_APP_PRIVATE_KEY and GITHUB_APP_INSTALLATION_ID must be set together"
            )
        if self.github_token is None and not has_app:
            raise ValueError("either GITHUB_TOKEN or GitHub App credentials are required")
        if self.github_token is not None and has_app:
            raise ValueError("configure GITHUB_TOKEN or GitHub App credentials, not both")
        return self

    @property
    def required_labels(self) -> list[str]:
        return [item.strip() for item in self.required_labels_csv.split(",") if item.strip()]

    @property
    def otel_headers(self) -> dict[str, str]:
        """``DYNOBRIDGE_OTEL_EXPORTER_HEADERS`` as a mapping, from ``k=v,k2=v2``."""

        headers: dict[str, str] = {}
        for item in (self.otel_exporter_headers or "").split(","):
            key, sep, value = item.partition("=")
            if sep and key.strip() and value.strip():
                headers[key.strip()] = value.strip()
        return headers

    @property
    def uses_github_app(self) -> bool:
        return self.github_token is None

    @property
    def organization_url(self) -> str:
        return f"{str(self.github_web_url).rstrip('/')}/{self.github_org}"
