"""
Lambda handler for POST /upload.

Priced, identity-tagged upload. The caller declares its identity in
`X-Owner-Identity` and sends the file as multipart field `file`. An unpaid
request gets a 402 challenge; the paid retry stores the blob under
`{owner}/{epoch ms}-{sanitized name}` and opens a lease.
"""

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
    return orchestrator.dispatch(Operation.UPLOAD, event)
