from __future__ import annotations

from typing import Any


class IntegrationHubError(Exception):
    """Base error for the integration pipeline."""


class ValidationError(IntegrationHubError):
    """Invalid transform or action configuration; never retried."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class TransformValidationError(ValidationError):
    """Transform pipeline rejected before any step ran."""


class ActionValidationError(ValidationError):
    """Action type or config cannot be dispatched."""


class TransformExecutionError(IntegrationHubError):
    """A transform step raised at runtime."""

    def __init__(self, message: str, *, index: int, transform_type: str) -> None:
        super().__init__(message)
        self.index = index
        self.transform_type = transform_type


class GatewayError(IntegrationHubError):
    """Outbound HTTP or network failure."""

    default_status = 502

    def __init__(
        self,
        message: str,
        *,
        connector_id: str,
        status_code: int | None = None,
        duration_ms: float = 0.0,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.connector_id = connector_id
        self.status_code = status_code if status_code is not None else self.default_status
        self.duration_ms = duration_ms
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": str(self),
            "connector_id": self.connector_id,
            "status_code": self.status_code,
            "duration_ms": self.duration_ms,
            "details": self.details,
        }


class GatewayTimeoutError(GatewayError):
    """Outbound request exceeded its timeout."""

    default_status = 408


class RateLimitError(GatewayError):
    """Connector sliding window is exhausted."""

    default_status = 429


class CircuitBreakerError(GatewayError):
    """Connector circuit is open."""

    default_status = 503


class ActionExecutionError(IntegrationHubError):
    """Action failed; wraps gateway, validation, or executor errors."""

    def __init__(self, message: str, *, action_id: str, action_type: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.action_id = action_id
        self.action_type = action_type
        self.cause = cause


class ConnectorNotFoundError(IntegrationHubError):
    """Connector is missing or belongs to another tenant."""


class ConnectorDisabledError(IntegrationHubError):
    """Connector is disabled or lacks a base URL."""


class DeadLetterNotFoundError(IntegrationHubError):
    """Dead-letter entry does not exist."""


class DeadLetterStateError(IntegrationHubError):
    """Operation not allowed for the entry's current status."""


class WebhookNotFoundError(IntegrationHubError):
    """Webhook endpoint is missing or no longer active."""
