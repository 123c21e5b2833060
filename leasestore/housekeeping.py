"""
Scheduled lease sweep.

Removes ledger rows whose expiry has passed. Blobs are left alone; their
lifecycle belongs to the blob store. Each delete is conditional on the row
still being expired, so a lease renewed between scan and delete survives.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Mapping

from leasestore.errors import BadRequestError
from leasestore.ledger import DEFAULT_SCAN_LIMIT, LeaseLedger, isoformat_ms

logger = logging.getLogger(__name__)

SCAN_LIMIT_ENV = "HOUSEKEEPING_SCAN_LIMIT"
DRY_RUN_ENV = "HOUSEKEEPING_DRY_RUN"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def read_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    normalized = str(value).strip().lower()
    return normalized in {"1", "true", "yes", "y", "on"}


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None

    raw = value.strip()
    if raw.isdigit():
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = datetime.strptime(raw, TIMESTAMP_FORMAT)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_event_now(event: dict[str, Any], default_ms: int) -> int:
    """Sweep time in epoch milliseconds; `event.now` overrides the clock."""
    now_override = event.get("now")
    if now_override in (None, ""):
        return default_ms
    parsed = _parse_timestamp(now_override)
    if not parsed:
        raise BadRequestError("event.now must be an ISO timestamp, epoch seconds, or YYYY-MM-DD HH:MM:SS")
    return int(parsed.astimezone(timezone.utc).timestamp() * 1000)


def _scan_limit(environ: Mapping[str, str]) -> int:
    raw = str(environ.get(SCAN_LIMIT_ENV) or "").strip()
    if not raw:
        return DEFAULT_SCAN_LIMIT
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise BadRequestError(f"{SCAN_LIMIT_ENV} must be an integer") from exc
    if parsed < 1:
        raise BadRequestError(f"{SCAN_LIMIT_ENV} must be >= 1")
    return parsed


def run_sweep(
    ledger: LeaseLedger,
    event: dict[str, Any],
    now_ms: int,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    event = event or {}
    now = parse_event_now(event, now_ms)
    scan_limit = _scan_limit(env)
    dry_run = read_bool(env.get(DRY_RUN_ENV)) or read_bool(event.get("dry_run"))

    expired = ledger.find_expired(now, scan_limit=scan_limit)
    expired_details = [
        {
            "file_key": record.key,
            "owner_address": record.owner,
            "expires_at": isoformat_ms(record.expires_at),
        }
        for record in expired
    ]

    removed = 0
    if not dry_run:
        removed = ledger.sweep_expired(now, records=expired)
    logger.info("lease sweep at %s: %d expired, %d removed (dry_run=%s)", now, len(expired), removed, dry_run)

    return {
        "success": True,
        "dry_run": dry_run,
        "now": isoformat_ms(now),
        "leases_expired": len(expired),
        "leases_removed": removed,
        "expired_details": expired_details,
    }
