"""
Scheduled housekeeping Lambda: removes lease rows whose expiry has passed.

Blobs are not touched. Supports `dry_run` (event field or HOUSEKEEPING_DRY_RUN)
and an event `now` override for replaying a sweep at a fixed time.
"""

from __future__ import annotations

from typing import Any

import boto3

from leasestore.config import Settings, configure_logging
from leasestore.housekeeping import run_sweep
from leasestore.http import error_response_for, json_response
from leasestore.ledger import LeaseLedger
from leasestore.orchestrator import now_ms

configure_logging()


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        settings = Settings.from_env()
        dynamodb = boto3.resource("dynamodb")
        ledger = LeaseLedger(
            dynamodb.Table(settings.storage.lease_table_name),
            owner_index_name=settings.storage.owner_index_name,
        )
        return json_response(200, run_sweep(ledger, event or {}, now_ms()))
    except Exception as exc:
        return error_response_for(exc)
