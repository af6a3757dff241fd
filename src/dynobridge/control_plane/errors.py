"""Request-scoped failures raised while handling a webhook delivery."""

from __future__ import annotations

from fastapi import status


class BridgeError(Exception):
    """Base error mapped to an HTTP status by the front door."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


class MissingSignature(BridgeError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidSignature(BridgeError):
    status_code = status.HTTP_403_FORBIDDEN


class UnsupportedEventType(BridgeError):
    """Valid delivery that is not a workflow_job event; acknowledged and ignored."""

    status_code = status.HTTP_202_ACCEPTED


class MalformedPayload(BridgeError):
    status_code = status.HTTP_400_BAD_REQUEST


class TokenAcquisitionFailed(BridgeError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ProvisioningFailed(BridgeError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
