"""Lambda handler for GET / (service descriptor) and GET /health."""

from __future__ import annotations

from typing import Any

from leasestore.config import Settings, configure_logging
from leasestore.errors import MethodNotAllowedError
from leasestore.http import error_response_for, json_response, request_method, request_path
from leasestore.orchestrator import now_ms
from leasestore.service_info import describe, health

configure_logging()


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        event = event or {}
        if request_method(event) not in {"", "GET"}:
            raise MethodNotAllowedError("Only GET is supported")
        if request_path(event).rstrip("/").endswith("/health"):
            return json_response(200, health(now_ms()))
        return json_response(200, describe(Settings.from_env()))
    except Exception as exc:
        return error_response_for(exc)
