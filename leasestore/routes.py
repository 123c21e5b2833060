"""
Static operation table.

Each operation names the guards it needs. The orchestrator resolves a request
to an operation once and applies exactly these guards, in this order:
identity signature, ownership, payment.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable

from leasestore import ownership


class Operation(str, enum.Enum):
    UPLOAD = "upload"
    READ = "read"
    LIST = "list"
    INFO = "info"
    DELETE = "delete"
    RENEW = "renew"


@dataclass(frozen=True)
class Guards:
    method: str
    path: str
    priced: bool
    signed: bool
    needs_key: bool
    description: str
    canonical_message: Callable[[str], str] | None = None


OPERATIONS: dict[Operation, Guards] = {
    Operation.UPLOAD: Guards(
        method="POST",
        path="/upload",
        priced=True,
        signed=False,
        needs_key=False,
        description="Upload a file with a time-bound lease",
    ),
    Operation.READ: Guards(
        method="GET",
        path="/file/{key}",
        priced=False,
        signed=True,
        needs_key=True,
        description="Download a file",
        canonical_message=ownership.read_message,
    ),
    Operation.LIST: Guards(
        method="GET",
        path="/files",
        priced=False,
        signed=True,
        needs_key=False,
        description="List the caller's unexpired files",
        canonical_message=ownership.list_message,
    ),
    Operation.INFO: Guards(
        method="GET",
        path="/file-info/{key}",
        priced=False,
        signed=True,
        needs_key=True,
        description="Get file metadata and expiry status",
        canonical_message=ownership.info_message,
    ),
    Operation.DELETE: Guards(
        method="DELETE",
        path="/file/{key}",
        priced=False,
        signed=True,
        needs_key=True,
        description="Delete a file",
        canonical_message=ownership.delete_message,
    ),
    Operation.RENEW: Guards(
        method="POST",
        path="/renew/{key}",
        priced=True,
        signed=True,
        needs_key=True,
        description="Extend a file's lease",
        canonical_message=ownership.renew_message,
    ),
}


def guards_for(operation: Operation) -> Guards:
    return OPERATIONS[operation]
