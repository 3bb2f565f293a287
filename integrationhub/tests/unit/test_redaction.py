from __future__ import annotations

from integrationhub.core.errors import ActionExecutionError, GatewayError, TransformValidationError
from integrationhub.services.redaction import error_detail, error_summary, sanitize_metadata


def test_sanitize_metadata_masks_sensitive_keys_recursively() -> None:
    payload = {
        "headers": {"Authorization": "Basic abc", "X-Api-Key": "k", "Accept": "json"},
        "items": [{"client_secret": "s", "name": "n"}],
        "url": "https://svc:pw@erp.example.com/api",
    }
    assert sanitize_metadata(payload) == {
        "headers": {"Authorization": "[REDACTED]", "X-Api-Key": "[REDACTED]", "Accept": "json"},
        "items": [{"client_secret": "[REDACTED]", "name": "n"}],
        "url": "https://[REDACTED]@erp.example.com/api",
    }


def test_error_detail_unwraps_action_errors() -> None:
    cause = GatewayError("HTTP 502: Bad Gateway", connector_id="erp-1", status_code=502, details={"token": "t"})
    wrapped = ActionExecutionError("failed", action_id="a-1", action_type="http_request", cause=cause)

    detail = error_detail(wrapped)

    assert detail["type"] == "GatewayError"
    assert detail["status_code"] == 502
    assert detail["details"] == {"token": "[REDACTED]"}
    assert (detail["action_id"], detail["action_type"]) == ("a-1", "http_request")
    assert error_summary(wrapped) == "GatewayError: HTTP 502: Bad Gateway"


def test_error_detail_keeps_validation_details() -> None:
    detail = error_detail(TransformValidationError("bad", {"transform_index": 2}))
    assert detail == {"type": "TransformValidationError", "message": "bad", "details": {"transform_index": 2}}


def test_error_message_is_scrubbed_and_bounded() -> None:
    detail = error_detail(RuntimeError("connect to https://u:p@db.internal failed " + "x" * 5000))
    assert "u:p@" not in detail["message"]
    assert len(detail["message"]) <= 2000 + len("[REDACTED]")
