from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Protocol

from integrationhub.core.errors import ActionValidationError
from integrationhub.domain.pipeline import ActionSpec, EventJobPayload
from integrationhub.services.gateway import ApiKeyAuth, BasicAuth, OutboundGateway, OutboundRequest
from integrationhub.services.pipeline.conditions import get_path
from integrationhub.services.resilience import RateLimitPolicy
from integrationhub.services.transforms import TransformRegistry, apply_field_transforms, get_default_registry
from integrationhub.services.webhooks import build_signature_header


logger = logging.getLogger(__name__)

HTTP_ACTION_TYPES = ("send_webhook", "http_request")
EXTERNAL_ACTION_TYPES = ("send_email", "send_sms", "update_crm", "create_task")

_TEMPLATE = re.compile(r"\{\{\s*([a-zA-Z0-9_.]+)\s*\}\}")
# The gateway budget stays this far under the action timeout.
_GATEWAY_RESERVE_MS = 250


class ActionExecutor(Protocol):
    """Non-HTTP action provider (email, SMS, CRM, tasks)."""

    async def execute(self, action_type: str, config: dict[str, Any], event_data: dict[str, Any]) -> Any: ...


ActionHandler = Callable[[ActionSpec, EventJobPayload, dict[str, Any]], Awaitable[dict[str, Any]]]


def gateway_budget_ms(action_timeout_ms: int) -> int:
    return max(1, action_timeout_ms - min(_GATEWAY_RESERVE_MS, action_timeout_ms // 10))


def template_context(event: EventJobPayload) -> dict[str, Any]:
    return {"event": event.snapshot()}


def render_template(value: Any, context: dict[str, Any]) -> Any:
    # "{{event.data.x}}" alone keeps the raw value type; embedded placeholders render as text.
    if isinstance(value, str):
        whole = _TEMPLATE.fullmatch(value.strip())
        if whole is not None:
            return get_path(context, whole.group(1))
        return _TEMPLATE.sub(lambda match: _stringify(get_path(context, match.group(1))), value)
    if isinstance(value, dict):
        return {key: render_template(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, context) for item in value]
    return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _auth_from_config(auth: dict[str, Any] | None) -> BasicAuth | ApiKeyAuth | None:
    if not auth:
        return None
    auth_type = auth.get("type")
    if auth_type == "basic":
        return BasicAuth(username=str(auth.get("username", "")), password=str(auth.get("password", "")))
    if auth_type == "apikey":
        return ApiKeyAuth(api_key=str(auth.get("api_key", "")), header_name=auth.get("header_name") or "X-API-Key")
    raise ActionValidationError(f"unsupported auth type: {auth_type}", {"auth_type": auth_type})


def _default_body(event: EventJobPayload) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": event.event_type,
        "tenant_id": event.tenant_id,
        "occurred_at": event.occurred_at.isoformat(),
        "data": event.data,
    }


class ActionDispatcher:
    """Resolves an action type to its handler; HTTP types go through the gateway."""

    def __init__(
        self,
        *,
        gateway: OutboundGateway | None,
        executor: ActionExecutor | None = None,
        transforms: TransformRegistry | None = None,
    ) -> None:
        self._gateway = gateway
        self._executor = executor
        self._transforms = transforms or get_default_registry()
        self._handlers: dict[str, ActionHandler] = {}
        self._frozen = False
        for action_type in HTTP_ACTION_TYPES:
            self._handlers[action_type] = self._http_action
        for action_type in EXTERNAL_ACTION_TYPES:
            self._handlers[action_type] = self._external_action

    def register(self, action_type: str, handler: ActionHandler) -> None:
        if self._frozen:
            raise RuntimeError(f"action dispatcher is frozen; cannot register {action_type!r}")
        self._handlers[action_type] = handler

    def freeze(self) -> None:
        self._frozen = True

    def action_types(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, action: ActionSpec, event: EventJobPayload) -> dict[str, Any]:
        handler = self._handlers.get(action.action_type)
        if handler is None:
            raise ActionValidationError(
                f"unknown action type: {action.action_type}",
                {"action_type": action.action_type, "available_types": self.action_types()},
            )
        config = render_template(action.config, template_context(event))
        return await handler(action, event, config)

    async def _http_action(
        self, action: ActionSpec, event: EventJobPayload, config: dict[str, Any]
    ) -> dict[str, Any]:
        if self._gateway is None:
            raise ActionValidationError("no outbound gateway configured", {"action_type": action.action_type})
        url = config.get("url")
        if not isinstance(url, str) or not url:
            raise ActionValidationError("http action requires a url", {"action_id": action.id})
        body = config.get("body")
        if body is None:
            body = _default_body(event)
        if isinstance(body, dict) and config.get("transforms"):
            body = apply_field_transforms(body, config["transforms"], registry=self._transforms)
        headers = {str(key): str(value) for key, value in (config.get("headers") or {}).items()}
        secret = config.get("secret")
        if secret and action.action_type == "send_webhook":
            signature_header, signed_body = build_signature_header(str(secret), body)
            headers.update(signature_header)
            headers.setdefault("Content-Type", "application/json")
            body = signed_body
        rate_limit = None
        if config.get("rate_limit"):
            rate_limit = RateLimitPolicy(
                max_requests=int(config["rate_limit"]["max_requests"]),
                window_ms=int(config["rate_limit"]["window_ms"]),
            )
        request = OutboundRequest(
            url=url,
            method=str(config.get("method", "POST")),
            headers=headers,
            body=body,
            timeout_ms=config.get("timeout_ms"),
            max_retries=config.get("max_retries"),
            budget_ms=gateway_budget_ms(action.timeout_ms),
            auth=_auth_from_config(config.get("auth")),
            rate_limit=rate_limit,
        )
        connector_id = str(config.get("connector_id") or f"action:{action.id}")
        response = await self._gateway.send(connector_id, event.tenant_id, request)
        return {
            "status_code": response.status_code,
            "data": response.data,
            "duration_ms": response.duration_ms,
            "attempts": response.attempts,
        }

    async def _external_action(
        self, action: ActionSpec, event: EventJobPayload, config: dict[str, Any]
    ) -> dict[str, Any]:
        if self._executor is None:
            raise ActionValidationError(
                f"no executor configured for {action.action_type}", {"action_type": action.action_type}
            )
        result = await self._executor.execute(action.action_type, config, event.data)
        if isinstance(result, dict):
            return result
        return {"result": result}
