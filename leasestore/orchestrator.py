"""
Per-request control flow for the storage API.

`StorageOrchestrator.dispatch(operation, event)` looks up the operation's row
in `leasestore.routes` and applies its guards in order: method, path key when
`needs_key`, identity header, signature when `signed`. Payment is collected
only for `priced` rows. Each operation then runs a short linear pipeline with
early exits:

- upload: identity header -> file -> size limit -> payment -> key -> blob -> ledger
- read: signature over key -> record (404) -> owner (403) -> expiry (410, purge)
  -> blob (404 on drift, purge)
- list: signature over `list-files` -> owner's unexpired records
- info: signature over key -> record (404) -> owner (403) -> record + isExpired
- delete: signature over `delete:key` -> record (404) -> owner (403)
  -> best-effort blob delete -> ledger delete
- renew: signature over `renew:key` -> record (404) -> owner (403) -> payment
  -> compare-and-swap expiry extension

Ownership is always checked before payment is requested, so a non-owner
cannot learn whether a key is priced. Every priced operation needs a fresh
settlement: a proof that was already settled is rejected.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import boto3

from leasestore.blobstore import BlobStore, RpcBlobStore, S3BlobStore
from leasestore.config import Settings
from leasestore.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    GoneError,
    MethodNotAllowedError,
    NotFoundError,
    PaymentRequiredError,
    UnauthenticatedError,
)
from leasestore.http import (
    attachment_disposition,
    binary_response,
    error_response_for,
    identity_header,
    json_response,
    normalize_headers,
    parse_uploaded_file,
    path_key,
    request_method,
    request_path,
    signature_header,
)
from leasestore.ledger import LeaseLedger, LeaseMetadata, LeaseRecord, generate_file_key, isoformat_ms
from leasestore.ownership import OwnershipVerifier, normalize_identity
from leasestore.payment import (
    ChallengeIssuer,
    PaymentChallenge,
    find_payment_header,
    parse_payment_proof,
    payment_response_headers,
    pricing_policy_from_settings,
)
from leasestore.routes import Guards, Operation, guards_for
from leasestore.settlement import SettlementLog, SettlementResult, SettlementVerifier

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class GuardedRequest:
    """A request that passed the method, key and identity guards of its operation."""

    event: dict[str, Any]
    headers: dict[str, str]
    guards: Guards
    identity: str
    key: str | None = None


class StorageOrchestrator:
    def __init__(
        self,
        settings: Settings,
        ledger: LeaseLedger,
        blob_store: BlobStore,
        ownership_verifier: OwnershipVerifier,
        challenge_issuer: ChallengeIssuer,
        settlement_verifier: SettlementVerifier,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.ledger = ledger
        self.blob_store = blob_store
        self.ownership_verifier = ownership_verifier
        self.challenge_issuer = challenge_issuer
        self.settlement_verifier = settlement_verifier
        self.clock = clock
        self._handlers: dict[Operation, Callable[[GuardedRequest], dict[str, Any]]] = {
            Operation.UPLOAD: self.upload,
            Operation.READ: self.read,
            Operation.LIST: self.list_files,
            Operation.INFO: self.file_info,
            Operation.DELETE: self.delete,
            Operation.RENEW: self.renew,
        }

    def dispatch(self, operation: Operation, event: dict[str, Any]) -> dict[str, Any]:
        try:
            guards = guards_for(operation)
            method = request_method(event) or guards.method
            if method != guards.method:
                raise MethodNotAllowedError(f"Only {guards.method} is supported")
            headers = normalize_headers(event.get("headers"))
            key = path_key(event) if guards.needs_key else None
            identity = self._authenticate(guards, headers, key)
            request = GuardedRequest(event=event, headers=headers, guards=guards, identity=identity, key=key)
            return self._handlers[operation](request)
        except Exception as exc:
            return error_response_for(exc)

    # Guards

    def _authenticate(self, guards: Guards, headers: dict[str, str], key: str | None) -> str:
        raw_identity = identity_header(headers)
        if not raw_identity:
            raise BadRequestError("Missing X-Owner-Identity header")
        identity = normalize_identity(raw_identity, "X-Owner-Identity")
        if not guards.signed:
            return identity

        signature = signature_header(headers)
        if not signature:
            raise BadRequestError("Missing X-Signature header")
        message = guards.canonical_message(key or "") if guards.canonical_message else ""
        if not self.ownership_verifier.verify(identity, message, signature):
            raise UnauthenticatedError("Invalid signature")
        return identity

    def _owned_record(self, request: GuardedRequest) -> LeaseRecord:
        record = self.ledger.get(request.key or "")
        if record is None:
            raise NotFoundError("File not found")
        if record.owner != request.identity:
            raise ForbiddenError("Access denied: not the owner")
        return record

    def _collect_payment(self, request: GuardedRequest, size_bytes: int | None) -> SettlementResult | None:
        """Settle a fresh payment when the operation is priced, otherwise None."""
        guards = request.guards
        if not guards.priced:
            return None

        challenge = self.challenge_issuer.issue(
            resource=request_path(request.event),
            description=guards.description,
            size_bytes=size_bytes,
        )
        payment_header = find_payment_header(request.headers)
        if not payment_header:
            logger.info("payment required for %s by %s", guards.path, request.identity)
            raise self._challenge_error(challenge, "Payment required")

        try:
            proof = parse_payment_proof(payment_header)
        except BadRequestError as exc:
            raise self._challenge_error(challenge, "Invalid payment proof", details=str(exc)) from exc

        result = self.settlement_verifier.verify(proof, challenge)
        if result.replayed:
            raise self._challenge_error(challenge, "Payment proof has already been used")
        if not result.settled or not result.tx_ref:
            raise self._challenge_error(challenge, "Payment settlement failed", details=result.reason)
        return result

    @staticmethod
    def _challenge_error(challenge: PaymentChallenge, message: str, details: Any = None) -> PaymentRequiredError:
        return PaymentRequiredError(
            message=message,
            requirements=challenge.requirements(),
            resource=challenge.resource_info(),
            details=details,
        )

    @contextmanager
    def _settled_effects(self, request: GuardedRequest, settlement: SettlementResult | None) -> Iterator[None]:
        try:
            yield
        except Exception:
            if settlement is not None:
                logger.error(
                    "%s failed after payment settled tx=%s payer=%s identity=%s key=%s",
                    request.guards.path,
                    settlement.tx_ref,
                    settlement.payer,
                    request.identity,
                    request.key,
                )
            raise

    # Operations

    def upload(self, request: GuardedRequest) -> dict[str, Any]:
        uploaded = parse_uploaded_file(request.event, request.headers)
        max_file_size = self.settings.storage.max_file_size
        if uploaded.size > max_file_size:
            raise BadRequestError(f"File exceeds the maximum size of {max_file_size} bytes")

        settlement = self._collect_payment(request, uploaded.size)

        with self._settled_effects(request, settlement):
            now = self.clock()
            key = generate_file_key(request.identity, uploaded.filename, now)
            if self.ledger.exists(key):
                raise ConflictError(f"File key already exists: {key}")
            self.blob_store.put(key, uploaded.content, uploaded.content_type)
            record = self.ledger.create(
                key,
                request.identity,
                LeaseMetadata(
                    content_type=uploaded.content_type,
                    size=uploaded.size,
                    original_name=uploaded.filename,
                ),
                now=now,
                lease_duration_ms=self.settings.storage.lease_duration_ms,
            )
        logger.info("stored %s for %s (%d bytes)", key, request.identity, record.size)

        body = {
            "success": True,
            "key": record.key,
            "fileKey": record.key,
            "size": record.size,
            "uploadedAt": isoformat_ms(record.uploaded_at),
            "expiresAt": isoformat_ms(record.expires_at),
            "message": f"File uploaded successfully. Expires in {self.settings.storage.expiration_days} days.",
        }
        return json_response(200, body, headers=self._settlement_headers(settlement))

    def read(self, request: GuardedRequest) -> dict[str, Any]:
        record = self._owned_record(request)
        key = record.key

        if record.is_expired(self.clock()):
            self.ledger.delete(key)
            logger.info("purged expired lease %s on read", key)
            raise GoneError("File has expired")

        content = self.blob_store.get(key)
        if content is None:
            self.ledger.delete(key)
            logger.warning("blob missing for lease %s, purged ledger row", key)
            raise NotFoundError("File not found in storage")

        logger.info("serving %s to %s", key, request.identity)
        return binary_response(
            content,
            {
                "Content-Type": record.content_type,
                "Content-Disposition": attachment_disposition(record.original_name),
                "X-Expires-At": isoformat_ms(record.expires_at),
            },
        )

    def list_files(self, request: GuardedRequest) -> dict[str, Any]:
        records = self.ledger.list_by_owner(request.identity, self.clock())
        files = [record.to_public_dict() for record in records]
        return json_response(200, {"files": files, "total": len(files)})

    def file_info(self, request: GuardedRequest) -> dict[str, Any]:
        record = self._owned_record(request)
        body = record.to_public_dict()
        body["isExpired"] = record.is_expired(self.clock())
        return json_response(200, body)

    def delete(self, request: GuardedRequest) -> dict[str, Any]:
        key = self._owned_record(request).key

        if not self.blob_store.delete(key):
            logger.warning("blob for %s was already absent", key)
        self.ledger.delete(key)
        logger.info("deleted %s for %s", key, request.identity)
        return json_response(200, {"success": True, "message": "File deleted successfully", "fileKey": key})

    def renew(self, request: GuardedRequest) -> dict[str, Any]:
        record = self._owned_record(request)
        key = record.key

        settlement = self._collect_payment(request, record.size)

        with self._settled_effects(request, settlement):
            old_expires_at, new_expires_at = self.ledger.extend_expiry(
                key,
                now=self.clock(),
                lease_duration_ms=self.settings.storage.renewal_duration_ms,
            )
        logger.info("renewed %s: %s -> %s", key, old_expires_at, new_expires_at)
        body = {
            "success": True,
            "fileKey": key,
            "oldExpires": isoformat_ms(old_expires_at),
            "newExpires": isoformat_ms(new_expires_at),
        }
        return json_response(200, body, headers=self._settlement_headers(settlement))

    @staticmethod
    def _settlement_headers(settlement: SettlementResult | None) -> dict[str, str] | None:
        if settlement is None:
            return None
        return payment_response_headers(
            transaction=settlement.tx_ref or "",
            network=settlement.network,
            payer=settlement.payer,
        )


def build_orchestrator(settings: Settings | None = None) -> StorageOrchestrator:
    """Wire the orchestrator from environment settings and AWS clients."""
    settings = settings or Settings.from_env()
    dynamodb = boto3.resource("dynamodb")
    ledger = LeaseLedger(
        dynamodb.Table(settings.storage.lease_table_name),
        owner_index_name=settings.storage.owner_index_name,
    )

    blob_store: BlobStore
    if settings.storage.blob_backend == "rpc":
        blob_store = RpcBlobStore(settings.storage.blob_rpc_url)
    else:
        blob_store = S3BlobStore(
            boto3.client("s3", region_name=settings.storage.region),
            settings.storage.bucket_name,
        )

    settlement_log = None
    if settings.storage.settlement_table_name:
        settlement_log = SettlementLog(dynamodb.Table(settings.storage.settlement_table_name))

    return StorageOrchestrator(
        settings=settings,
        ledger=ledger,
        blob_store=blob_store,
        ownership_verifier=OwnershipVerifier(),
        challenge_issuer=ChallengeIssuer(settings.payment, pricing_policy_from_settings(settings.pricing)),
        settlement_verifier=SettlementVerifier(settings.payment, settlement_log=settlement_log),
    )
