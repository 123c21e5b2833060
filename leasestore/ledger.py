"""
Lease ledger backed by a DynamoDB table.

One item per stored object, keyed by `file_key`, with a global secondary index
on (`owner_address`, `uploaded_at`) for per-owner listing. Timestamps are
stored as integer epoch milliseconds taken from the server clock.

Keys are `owner/timestamp-name`, which makes them practically unique (an owner
would have to upload the same name twice in one millisecond), not
cryptographically guaranteed. `create` still refuses to overwrite.

Row writes rely on DynamoDB single-item atomicity:
- create: conditional put on `attribute_not_exists(file_key)`
- extend_expiry: compare-and-swap on `expires_at`, re-read on conflict
- sweep_expired: delete conditional on the row still being expired
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from botocore.exceptions import ClientError

from leasestore.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

CREATE_CONDITION = "attribute_not_exists(file_key)"
EXTEND_UPDATE = "SET expires_at = :new_expires_at"
EXTEND_CONDITION = "expires_at = :expected_expires_at"
OWNER_KEY_CONDITION = "owner_address = :owner"
SWEEP_DELETE_CONDITION = "expires_at < :now"

MAX_EXTEND_ATTEMPTS = 5
DEFAULT_SCAN_LIMIT = 100
FILENAME_UNSAFE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(frozen=True)
class LeaseMetadata:
    content_type: str
    size: int
    original_name: str


@dataclass(frozen=True)
class LeaseRecord:
    key: str
    owner: str
    content_type: str
    size: int
    original_name: str
    uploaded_at: int
    expires_at: int

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at

    def to_item(self) -> dict[str, Any]:
        return {
            "file_key": self.key,
            "owner_address": self.owner,
            "content_type": self.content_type,
            "size": self.size,
            "original_filename": self.original_name,
            "uploaded_at": self.uploaded_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "LeaseRecord":
        return cls(
            key=str(item["file_key"]),
            owner=str(item["owner_address"]).lower(),
            content_type=str(item.get("content_type") or "application/octet-stream"),
            size=int(item.get("size") or 0),
            original_name=str(item.get("original_filename") or ""),
            uploaded_at=int(item["uploaded_at"]),
            expires_at=int(item["expires_at"]),
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "fileKey": self.key,
            "filename": self.original_name,
            "contentType": self.content_type,
            "size": self.size,
            "uploadedAt": isoformat_ms(self.uploaded_at),
            "expiresAt": isoformat_ms(self.expires_at),
        }


def isoformat_ms(epoch_ms: int) -> str:
    moment = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize_filename(filename: str) -> str:
    return FILENAME_UNSAFE_PATTERN.sub("_", filename)


def generate_file_key(owner: str, filename: str, now: int) -> str:
    """`{owner lowercase}/{epoch ms}-{filename with unsafe characters as _}`."""
    return f"{owner.lower()}/{now}-{sanitize_filename(filename)}"


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class LeaseLedger:
    def __init__(self, table: Any, owner_index_name: str):
        self.table = table
        self.owner_index_name = owner_index_name

    def create(self, key: str, owner: str, metadata: LeaseMetadata, now: int, lease_duration_ms: int) -> LeaseRecord:
        record = LeaseRecord(
            key=key,
            owner=owner.lower(),
            content_type=metadata.content_type,
            size=metadata.size,
            original_name=metadata.original_name,
            uploaded_at=now,
            expires_at=now + lease_duration_ms,
        )
        try:
            self.table.put_item(Item=record.to_item(), ConditionExpression=CREATE_CONDITION)
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise ConflictError(f"lease key already exists: {key}") from exc
            raise
        return record

    def get(self, key: str) -> LeaseRecord | None:
        response = self.table.get_item(Key={"file_key": key}, ConsistentRead=True)
        item = response.get("Item")
        if not item:
            return None
        return LeaseRecord.from_item(item)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def _query_owner(self, owner: str) -> Iterator[dict[str, Any]]:
        query_kwargs: dict[str, Any] = {
            "IndexName": self.owner_index_name,
            "KeyConditionExpression": OWNER_KEY_CONDITION,
            "ExpressionAttributeValues": {":owner": owner.lower()},
            "ScanIndexForward": False,
        }
        while True:
            response = self.table.query(**query_kwargs)
            yield from response.get("Items") or []
            last_evaluated_key = response.get("LastEvaluatedKey")
            if not last_evaluated_key:
                break
            query_kwargs["ExclusiveStartKey"] = last_evaluated_key

    def list_by_owner(self, owner: str, now: int) -> list[LeaseRecord]:
        """Unexpired records of `owner`, most recently uploaded first."""
        records = [LeaseRecord.from_item(item) for item in self._query_owner(owner)]
        active = [record for record in records if not record.is_expired(now)]
        active.sort(key=lambda record: record.uploaded_at, reverse=True)
        return active

    def is_owner(self, key: str, identity: str) -> bool:
        record = self.get(key)
        if record is None or not identity:
            return False
        return record.owner == identity.strip().lower()

    def is_expired(self, key: str, now: int) -> bool:
        """Absent keys count as expired."""
        record = self.get(key)
        if record is None:
            return True
        return record.is_expired(now)

    def extend_expiry(self, key: str, now: int, lease_duration_ms: int) -> tuple[int, int]:
        """Extend from max(now, current expiry). Returns (old, new) expiry."""
        for _ in range(MAX_EXTEND_ATTEMPTS):
            record = self.get(key)
            if record is None:
                raise NotFoundError(f"lease not found: {key}")

            new_expires_at = max(now, record.expires_at) + lease_duration_ms
            try:
                self.table.update_item(
                    Key={"file_key": key},
                    UpdateExpression=EXTEND_UPDATE,
                    ConditionExpression=EXTEND_CONDITION,
                    ExpressionAttributeValues={
                        ":new_expires_at": new_expires_at,
                        ":expected_expires_at": record.expires_at,
                    },
                )
            except ClientError as exc:
                if _is_conditional_failure(exc):
                    logger.info("concurrent expiry update on %s, retrying", key)
                    continue
                raise
            return record.expires_at, new_expires_at

        raise ConflictError(f"lease {key} is being renewed concurrently, retry the request")

    def delete(self, key: str) -> None:
        self.table.delete_item(Key={"file_key": key})

    def _scan(self, scan_limit: int) -> Iterator[dict[str, Any]]:
        scan_kwargs: dict[str, Any] = {"Limit": scan_limit}
        while True:
            response = self.table.scan(**scan_kwargs)
            yield from response.get("Items") or []
            last_evaluated_key = response.get("LastEvaluatedKey")
            if not last_evaluated_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_evaluated_key

    def find_expired(self, now: int, scan_limit: int = DEFAULT_SCAN_LIMIT) -> list[LeaseRecord]:
        expired: list[LeaseRecord] = []
        for item in self._scan(scan_limit):
            record = LeaseRecord.from_item(item)
            if record.expires_at < now:
                expired.append(record)
        return expired

    def sweep_expired(
        self,
        now: int,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        records: Iterable[LeaseRecord] | None = None,
    ) -> int:
        """Remove rows with expires_at < now. Rows renewed since the scan are kept.

        `records` are the candidates from an earlier `find_expired` call; the
        table is scanned only when they are not given.
        """
        if records is None:
            records = self.find_expired(now, scan_limit=scan_limit)
        removed = 0
        for record in records:
            try:
                self.table.delete_item(
                    Key={"file_key": record.key},
                    ConditionExpression=SWEEP_DELETE_CONDITION,
                    ExpressionAttributeValues={":now": now},
                )
            except ClientError as exc:
                if _is_conditional_failure(exc):
                    logger.info("lease %s was renewed after the sweep scan, kept", record.key)
                    continue
                raise
            removed += 1
        return removed
