"""Shared data models for the webhook to dyno bridge."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

KNOWN_ACTIONS = frozenset({"queued", "in_progress", "completed", "waiting"})


class GitHubOrganization(BaseModel):
    """Organization metadata attached to organization webhooks."""

    model_config = ConfigDict(extra="ignore")

    login: Optional[str] = None
    id: Optional[int] = None
    url: Optional[str] = None
    html_url: Optional[str] = None


class GitHubRepository(BaseModel):
    """Repository metadata extracted from GitHub webhook payloads."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: Optional[str] = None
    full_name: Optional[str] = None
    private: Optional[bool] = None
    html_url: Optional[str] = None


class GitHubUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: Optional[str] = None
    id: Optional[int] = None
    type: Optional[str] = None


class WorkflowJob(BaseModel):
    """Subset of the workflow_job object needed to decide on provisioning."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    run_id: Optional[int] = None
    run_attempt: Optional[int] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    name: Optional[str] = None
    workflow_name: Optional[str] = None
    head_sha: Optional[str] = None
    labels: list[str] = Field(default_factory=list)
    runner_name: Optional[str] = None
    runner_group_id: Optional[int] = None
    html_url: Optional[str] = None

    @field_validator("labels", mode="before")
    @classmethod
    def _null_labels(cls, value):
        return [] if value is None else value


class WorkflowJobEvent(BaseModel):
    """Parsed GitHub webhook for workflow_job events.

    ``action`` is kept as a plain string: GitHub adds actions over time and
    anything other than ``queued`` is simply not acted on.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    action: str = ""
    workflow_job: Optional[WorkflowJob] = None
    organization: Optional[GitHubOrganization] = None
    repository: Optional[GitHubRepository] = None
    sender: Optional[GitHubUser] = None

    @property
    def is_queued(self) -> bool:
        return self.action == "queued"

    @property
    def is_known_action(self) -> bool:
        return self.action in KNOWN_ACTIONS

    @property
    def labels(self) -> list[str]:
        if self.workflow_job is None:
            return []
        return list(self.workflow_job.labels)


class RegistrationToken(BaseModel):
    """Organization runner registration token issued by GitHub."""

    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: datetime

    def usable(self, now: datetime, margin: timedelta) -> bool:
        return now < self.expires_at - margin


class ProvisionRequest(BaseModel):
    """One-off dyno to create for a single queued job."""

    model_config = ConfigDict(frozen=True)

    app: str
    command: str
    attach: bool = False
    size: Optional[str] = None
    time_to_live: Optional[int] = None

    def api_body(self) -> dict[str, object]:
        body: dict[str, object] = {"command": self.command, "attach": self.attach}
        if self.size:
            body["size"] = self.size
        if self.time_to_live is not None:
            body["time_to_live"] = self.time_to_live
        return body


class Dyno(BaseModel):
    """Dyno record returned by the Heroku platform API."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    state: Optional[str] = None
    type: Optional[str] = None
    size: Optional[str] = None
    command: Optional[str] = None
    created_at: Optional[datetime] = None
