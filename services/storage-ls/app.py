"""Lambda handler for GET /files: the caller's unexpired leases, newest first."""

from __future__ import annotations

from typing import Any

from leasestore.config import configure_logging
from leasestore.http import error_response_for
from leasestore.orchestrator import build_orchestrator
from leasestore.routes import Operation

configure_logging()


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        orchestrator = build_orchestrator()
    except Exception as exc:
        return error_response_for(exc)
    return orchestrator.dispatch(Operation.LIST, event)
