from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from dynobridge.common.schemas import Dyno, ProvisionRequest, RegistrationToken
from dynobridge.control_plane import app as control_app
from dynobridge.control_plane.errors import ProvisioningFailed, TokenAcquisitionFailed
from tests.utils.webhooks import sign, webhook_headers, workflow_job_body


class FakeGitHubClient:
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.calls: list[str] = []
        self.fail = False

    async def create_org_registration_token(self, org: str) -> RegistrationToken:
        self.calls.append(org)
        if self.fail:
            raise TokenAcquisitionFailed("Bad credentials")
        return RegistrationToken(
            token="AABF3JGZDX3P5PMEXLND6TS6FCWO6",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )


class FakeHerokuClient:
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.requests: list[ProvisionRequest] = []
        self.fail = False
        self.delay = 0.0
        self.cancelled = False

    async def create_dyno(self, request: ProvisionRequest) -> Dyno:
        self.requests.append(request)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.fail:
            raise ProvisioningFailed("Heroku returned 503")
        return Dyno(id="dyno-1", name="run.1", state="starting")


async def _create_client(app):
    lifespan = app.router.lifespan_context(app)
    await lifespan.__aenter__()
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    return client, lifespan


@pytest.fixture
def bridge_app(monkeypatch, make_settings):
    monkeypatch.setattr(control_app, "GitHubClient", FakeGitHubClient)
    monkeypatch.setattr(control_app, "HerokuClient", FakeHerokuClient)

    def factory(span_exporter=None, **overrides: Any):
        return control_app.create_app(make_settings(**overrides), span_exporter=span_exporter)

    return factory


def _fakes(app) -> tuple[FakeGitHubClient, FakeHerokuClient]:
    state: control_app.AppState = app.state.container
    return state.github_client, state.heroku_client  # type: ignore[return-value]


@pytest.mark.asyncio
async def test_queued_job_provisions_runner(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        body = (
            b'{"action":"queued","workflow_job":{"id":1,"labels":["self-hosted"]},'
            b'"organization":{"login":"acme"}}'
        )
        response = await client.post("/webhook", content=body, headers=webhook_headers(body))
        github, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 200
    assert github.calls == ["acme"]
    assert len(heroku.requests) == 1
    request = heroku.requests[0]
    assert request.attach is False
    assert request.app == "acme-runners"
    assert "https://github.com/acme" in request.command
    assert "AABF3JGZDX3P5PMEXLND6TS6FCWO6" in request.command


@pytest.mark.asyncio
async def test_token_is_shared_across_deliveries(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        body = workflow_job_body()
        responses = await asyncio.gather(
            *(client.post("/webhook", content=body, headers=webhook_headers(body)) for _ in range(10))
        )
        github, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert [r.status_code for r in responses] == [200] * 10
    assert github.calls == ["acme"]
    assert len(heroku.requests) == 10


@pytest.mark.asyncio
async def test_bad_signature_is_forbidden(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        body = workflow_job_body()
        headers = webhook_headers(body)
        headers["x-hub-signature-256"] = sign(body, secret="wrong")
        response = await client.post("/webhook", content=body, headers=headers)
        github, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 403
    assert response.text == "Forbidden"
    assert github.calls == []
    assert heroku.requests == []


@pytest.mark.asyncio
async def test_missing_signature_is_forbidden(bridge_app, monkeypatch) -> None:
    app = bridge_app()
    parsed: list[bytes] = []
    original = control_app.decode_delivery

    def spy(body, headers):
        parsed.append(body)
        return original(body, headers)

    monkeypatch.setattr(control_app, "decode_delivery", spy)
    client, lifespan = await _create_client(app)
    try:
        body = workflow_job_body()
        headers = webhook_headers(body)
        del headers["x-hub-signature-256"]
        response = await client.post("/webhook", content=body, headers=headers)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 403
    assert parsed == []


@pytest.mark.asyncio
async def test_other_event_types_are_accepted_and_ignored(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        body = b'{"zen":"Design for failure.","hook_id":1}'
        response = await client.post("/webhook", content=body, headers=webhook_headers(body, event="ping"))
        github, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 202
    assert github.calls == []
    assert heroku.requests == []


@pytest.mark.asyncio
async def test_non_queued_actions_succeed_without_provisioning(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        statuses = []
        for action in ("in_progress", "completed", "waiting"):
            body = workflow_job_body(action=action)
            response = await client.post("/webhook", content=body, headers=webhook_headers(body))
            statuses.append(response.status_code)
        github, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert statuses == [200, 200, 200]
    assert github.calls == []
    assert heroku.requests == []


@pytest.mark.asyncio
async def test_partial_payloads_are_decoded(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        empty = b"{}"
        empty_response = await client.post("/webhook", content=empty, headers=webhook_headers(empty))
        no_id = b'{"action":"queued","workflow_job":{"labels":null},"sender":{"id":5}}'
        no_id_response = await client.post("/webhook", content=no_id, headers=webhook_headers(no_id))
        _, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert empty_response.status_code == 200
    assert no_id_response.status_code == 200
    assert len(heroku.requests) == 1


@pytest.mark.asyncio
async def test_malformed_payload_is_bad_request(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        body = b'{"action": "queued", "workflow_job": '
        response = await client.post("/webhook", content=body, headers=webhook_headers(body))
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 400
    assert response.text == "Bad Request"


@pytest.mark.asyncio
async def test_token_failure_is_internal_error(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        github, heroku = _fakes(app)
        github.fail = True
        body = workflow_job_body()
        response = await client.post("/webhook", content=body, headers=webhook_headers(body))
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 500
    assert response.text == "Internal Server Error"
    assert heroku.requests == []


@pytest.mark.asyncio
async def test_provisioning_failure_is_internal_error(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        _, heroku = _fakes(app)
        heroku.fail = True
        body = workflow_job_body()
        response = await client.post("/webhook", content=body, headers=webhook_headers(body))
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 500
    assert len(heroku.requests) == 1


@pytest.mark.asyncio
async def test_form_encoded_delivery(bridge_app) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        body = urlencode({"payload": workflow_job_body().decode()}).encode()
        headers = webhook_headers(body, **{"content-type": "application/x-www-form-urlencoded"})
        response = await client.post("/webhook", content=body, headers=headers)
        _, heroku = _fakes(app)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 200
    assert len(heroku.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/webhook"),
        ("PUT", "/webhook"),
        ("TRACE", "/webhook"),
        ("CONNECT", "/webhook"),
        ("TRACE", "/other"),
        ("POST", "/"),
        ("GET", "/metrics"),
        ("POST", "/webhook/extra"),
    ],
)
async def test_unmatched_routes_are_not_found(bridge_app, method: str, path: str) -> None:
    app = bridge_app()
    client, lifespan = await _create_client(app)
    try:
        response = await client.request(method, path)
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 404
    assert response.text == "Not Found"


@pytest.mark.asyncio
async def test_slow_handler_times_out_with_service_unavailable(bridge_app) -> None:
    app = bridge_app(request_timeout_seconds=0.2)
    client, lifespan = await _create_client(app)
    try:
        _, heroku = _fakes(app)
        heroku.delay = 5.0
        body = workflow_job_body()
        response = await asyncio.wait_for(
            client.post("/webhook", content=body, headers=webhook_headers(body)),
            timeout=3,
        )
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 503
    assert response.text == "Service Unavailable"
    assert heroku.cancelled is True


@pytest.mark.asyncio
async def test_handler_span_records_delivery(bridge_app) -> None:
    exporter = InMemorySpanExporter()
    app = bridge_app(span_exporter=exporter, otel_sampler_ratio=1.0)
    client, lifespan = await _create_client(app)
    try:
        body = workflow_job_body()
        response = await client.post("/webhook", content=body, headers=webhook_headers(body))
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert response.status_code == 200
    (span,) = [s for s in exporter.get_finished_spans() if s.name == "control_plane.github_webhook"]
    assert span.attributes["dynobridge.webhook.action"] == "queued"
    assert span.attributes["dynobridge.webhook.delivery_id"] == "72d3162e-cc78-11e3-81ab-4c9367dc0958"
    assert span.attributes["dynobridge.dyno_id"] == "dyno-1"


@pytest.mark.asyncio
async def test_no_tracer_provider_without_endpoint(bridge_app) -> None:
    app = bridge_app(otel_sampler_ratio=1.0)
    client, lifespan = await _create_client(app)
    try:
        for action in ("queued", "completed"):
            body = workflow_job_body(action=action)
            response = await client.post("/webhook", content=body, headers=webhook_headers(body))
            assert response.status_code == 200
    finally:
        await client.aclose()
        await lifespan.__aexit__(None, None, None)

    assert app.state.tracer_provider is None
    assert not getattr(app, "_is_instrumented_by_opentelemetry", False)
