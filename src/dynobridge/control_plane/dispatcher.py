"""Turns queued workflow jobs into one-off runner dynos."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

import structlog

from ..common.schemas import Dyno, ProvisionRequest, WorkflowJobEvent
from ..common.settings import BridgeSettings
from .tokens import RegistrationTokenCache

LOGGER = structlog.get_logger("dynobridge.dispatcher")

CreateDyno = Callable[[ProvisionRequest], Awaitable[Dyno]]


class ProvisionerDispatcher:
    def __init__(
        self,
        settings: BridgeSettings,
        tokens: RegistrationTokenCache,
        create_dyno: CreateDyno,
    ) -> None:
        self._settings = settings
        self._tokens = tokens
        self._create_dyno = create_dyno

    def organization_url(self) -> str:
        return self._settings.organization_url

    def build_request(self, token: str) -> ProvisionRequest:
        command = self._settings.runner_command_template.format(url=self.organization_url(), token=token)
        return ProvisionRequest(
            app=self._settings.heroku_app,
            command=command,
            attach=False,
            size=self._settings.dyno_size,
            time_to_live=self._settings.dyno_time_to_live,
        )

    def _missing_labels(self, event: WorkflowJobEvent) -> list[str]:
        labels = {label.lower() for label in event.labels}
        return [label for label in self._settings.required_labels if label.lower() not in labels]

    async def dispatch(self, event: WorkflowJobEvent) -> Optional[Dyno]:
        """Provision a runner for ``event`` if it is a queued job.

        Returns the created dyno, or ``None`` when the event needs no runner.
        ``TokenAcquisitionFailed`` and ``ProvisioningFailed`` propagate to the
        caller; nothing is retried here because GitHub redelivers on failure.
        """

        job_id = event.workflow_job.id if event.workflow_job else None
        if not event.is_queued:
            if event.is_known_action:
                LOGGER.info("Action is not queued, not creating a dyno", action=event.action, job_id=job_id)
            else:
                LOGGER.warning("Unknown workflow_job action", action=event.action, job_id=job_id)
            return None

        missing = self._missing_labels(event)
        if missing:
            LOGGER.info("Job lacks required labels, not creating a dyno", job_id=job_id, missing=missing)
            return None

        event_org = event.organization.login if event.organization else None
        if event_org and event_org != self._settings.github_org:
            LOGGER.warning(
                "Event organization differs from configured organization",
                event_org=event_org,
                org=self._settings.github_org,
                job_id=job_id,
            )

        token = await self._tokens.get(self._settings.github_org)
        request = self.build_request(token)
        dyno = await self._create_dyno(request)
        LOGGER.info(
            "Created runner dyno",
            job_id=job_id,
            labels=event.labels,
            dyno_id=dyno.id,
            dyno_name=dyno.name,
            app=request.app,
        )
        return dyno
