"""Signature validation and decoding of GitHub workflow_job deliveries."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Mapping, Optional
from urllib.parse import parse_qs

from pydantic import ValidationError

from ..common.schemas import WorkflowJobEvent
from .errors import InvalidSignature, MalformedPayload, MissingSignature, UnsupportedEventType

SIGNATURE_256_HEADER = "x-hub-signature-256"
SIGNATURE_HEADER = "x-hub-signature"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"
WORKFLOW_JOB_EVENT = "workflow_job"

_DIGESTS = {
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}


def event_type(headers: Mapping[str, str]) -> Optional[str]:
    return headers.get(EVENT_HEADER)


def delivery_id(headers: Mapping[str, str]) -> Optional[str]:
    return headers.get(DELIVERY_HEADER)


def compute_signature(secret: str, body: bytes, algorithm: str = "sha256") -> str:
    """Return the ``<alg>=<hexdigest>`` header value GitHub sends for ``body``."""

    digest = hmac.new(secret.encode("utf-8"), body, _DIGESTS[algorithm]).hexdigest()
    return f"{algorithm}={digest}"


def validate_signature(body: bytes, headers: Mapping[str, str], secret: str) -> bytes:
    """Check the delivery signature and hand back the exact bytes that were signed.

    The SHA-256 header wins when both are present; the SHA-1 header is only
    consulted for legacy hooks.
    """

    signature = headers.get(SIGNATURE_256_HEADER) or headers.get(SIGNATURE_HEADER)
    if not signature:
        raise MissingSignature("missing signature header")

    algorithm, sep, provided = signature.partition("=")
    digest_factory = _DIGESTS.get(algorithm.strip().lower())
    if not sep or digest_factory is None:
        raise InvalidSignature(f"unsupported signature format: {algorithm!r}")

    expected = hmac.new(secret.encode("utf-8"), body, digest_factory).hexdigest()
    if not hmac.compare_digest(provided.strip().lower().encode("ascii", "replace"), expected.encode("ascii")):
        raise InvalidSignature("payload signature does not match")
    return body


def read_payload(body: bytes, content_type: Optional[str]) -> bytes:
    """Extract the JSON document from a delivery body.

    Hooks configured with ``application/x-www-form-urlencoded`` wrap the JSON
    in a ``payload`` form field.
    """

    media_type = (content_type or "application/json").split(";", 1)[0].strip().lower()
    if media_type == "application/json":
        return body
    if media_type == "application/x-www-form-urlencoded":
        try:
            form = parse_qs(body.decode("utf-8"), strict_parsing=False)
        except UnicodeDecodeError as exc:
            raise MalformedPayload("form body is not valid UTF-8") from exc
        values = form.get("payload")
        if not values:
            raise MalformedPayload("form body has no payload field")
        return values[0].encode("utf-8")
    raise MalformedPayload(f"unsupported content type: {media_type}")


def decode_delivery(body: bytes, headers: Mapping[str, str]) -> WorkflowJobEvent:
    """Decode an already validated delivery, checking its event type first."""

    kind = event_type(headers)
    if kind != WORKFLOW_JOB_EVENT:
        raise UnsupportedEventType(f"unexpected webhook type: {kind}")
    return _decode_event(read_payload(body, headers.get("content-type")))


def parse_event(payload: bytes, kind: Optional[str]) -> WorkflowJobEvent:
    """Decode a validated payload into a :class:`WorkflowJobEvent`."""

    if kind != WORKFLOW_JOB_EVENT:
        raise UnsupportedEventType(f"unexpected webhook type: {kind}")
    return _decode_event(payload)


def _decode_event(payload: bytes) -> WorkflowJobEvent:
    try:
        document = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload(f"invalid JSON payload: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedPayload("payload is not a JSON object")
    try:
        return WorkflowJobEvent.model_validate(document)
    except ValidationError as exc:
        raise MalformedPayload(f"invalid workflow_job payload: {exc.error_count()} error(s)") from exc
