"""
Payment settlement.

`SettlementVerifier.verify(proof, challenge)` checks a proof against the
challenge it answers, then settles it through the configured facilitator.

Flow:
1. Local checks: payee, asset, network, amount, validity window, and EIP-712
   signer recovery against `authorization.from`.
2. Claim the proof in the settlement log (conditional put). A proof that was
   already settled returns its recorded transaction reference, flagged as
   replayed, without contacting the facilitator again.
3. Facilitator `/verify` then `/settle`, or a deterministic mock reference.
4. Record the settled transaction reference.

Facilitator transport failures raise a retryable UpstreamError. They are never
treated as settled.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from botocore.exceptions import ClientError

from leasestore.config import PaymentSettings
from leasestore.errors import BadRequestError, PaymentRequiredError, UpstreamError
from leasestore.payment import (
    X402_VERSION,
    PaymentChallenge,
    PaymentProof,
    TransferAuthorization,
    transfer_typed_data,
)

logger = logging.getLogger(__name__)

SETTLEMENT_LOG_RETENTION_SECONDS = 24 * 60 * 60
CLAIM_CONDITION = "attribute_not_exists(proof_id)"


@dataclass(frozen=True)
class SettlementResult:
    settled: bool
    tx_ref: str | None = None
    network: str = ""
    payer: str = ""
    amount: int = 0
    replayed: bool = False
    reason: str | None = None


def _payment_required(challenge: PaymentChallenge, message: str, details: Any = None) -> PaymentRequiredError:
    return PaymentRequiredError(
        message=message,
        requirements=challenge.requirements(),
        resource=challenge.resource_info(),
        details=details,
    )


def recover_authorization_signer(authorization: TransferAuthorization) -> str:
    from eth_account import Account
    from eth_account.messages import encode_typed_data

    signable = encode_typed_data(**transfer_typed_data(authorization))
    signer = Account.recover_message(signable, signature=authorization.signature)
    return f"0x{signer[2:].lower()}"


def check_proof_against_challenge(
    proof: PaymentProof,
    challenge: PaymentChallenge,
    now: int | None = None,
) -> TransferAuthorization:
    """Validate the signed authorization locally; return it with domain filled in."""
    authorization = proof.authorization
    if not authorization.domain_name or not authorization.domain_version:
        authorization = dataclasses.replace(
            authorization,
            domain_name=authorization.domain_name or challenge.extra.get("name", ""),
            domain_version=authorization.domain_version or challenge.extra.get("version", ""),
        )

    if authorization.to_address != challenge.pay_to.lower():
        raise _payment_required(challenge, "Payment recipient does not match the challenge payTo")
    if authorization.asset != challenge.asset.lower():
        raise _payment_required(challenge, "Payment asset does not match the challenge asset")
    if authorization.network != challenge.network.lower():
        raise _payment_required(challenge, "Payment network does not match the challenge network")
    if authorization.value < challenge.amount:
        raise _payment_required(challenge, "Payment amount is lower than the challenge price")

    current = int(time.time()) if now is None else now
    if authorization.valid_after > current:
        raise _payment_required(challenge, "Payment authorization is not yet valid")
    if authorization.valid_before <= current:
        raise _payment_required(challenge, "Payment authorization has expired")

    try:
        recovered_signer = recover_authorization_signer(authorization)
    except Exception as exc:
        raise _payment_required(challenge, "EIP-712 signature verification failed", details=str(exc)) from exc
    if recovered_signer != authorization.from_address:
        raise _payment_required(challenge, "EIP-712 signature does not recover the payer")

    return authorization


class FacilitatorClient:
    """HTTP client for an x402 facilitator's `/verify` and `/settle` endpoints."""

    def __init__(self, base_url: str, timeout: float = 30.0, http_client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.Client(timeout=timeout)

    def _post(self, path: str, proof: PaymentProof, challenge: PaymentChallenge) -> tuple[int, dict[str, Any]]:
        request_body = {
            "x402Version": X402_VERSION,
            "paymentPayload": proof.payload,
            "paymentRequirements": challenge.requirements(),
        }
        try:
            response = self.http_client.post(f"{self.base_url}{path}", json=request_body)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Facilitator {path} request failed", details=str(exc)) from exc

        if response.status_code >= 500:
            raise UpstreamError(f"Facilitator {path} returned {response.status_code}", details=response.text[:500])
        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text[:500]}
        if not isinstance(data, dict):
            data = {"raw": data}
        return response.status_code, data

    def verify(self, proof: PaymentProof, challenge: PaymentChallenge) -> tuple[bool, str | None]:
        status_code, data = self._post("/verify", proof, challenge)
        if status_code != 200 or data.get("isValid") is not True:
            return False, str(data.get("invalidReason") or data.get("error") or f"status {status_code}")
        return True, None

    def settle(self, proof: PaymentProof, challenge: PaymentChallenge) -> SettlementResult:
        status_code, data = self._post("/settle", proof, challenge)
        if status_code != 200 or data.get("success") is not True:
            return SettlementResult(
                settled=False,
                reason=str(data.get("errorReason") or data.get("error") or f"status {status_code}"),
            )

        transaction = data.get("transaction") or data.get("txHash")
        if isinstance(transaction, dict):
            transaction = transaction.get("hash")
        if not isinstance(transaction, str) or not transaction:
            raise UpstreamError("Facilitator settlement response is missing a transaction reference", details=data)
        return SettlementResult(
            settled=True,
            tx_ref=transaction,
            network=str(data.get("network") or challenge.network),
            payer=str(data.get("payer") or proof.authorization.from_address).lower(),
            amount=proof.authorization.value,
        )


def mock_settlement_tx_id(authorization: TransferAuthorization) -> str:
    digest = hashlib.sha256(
        f"{authorization.signature}:{authorization.nonce}:{authorization.value}".encode("utf-8")
    ).hexdigest()
    return f"0x{digest[:64]}"


class SettlementLog:
    """Durable per-proof settlement records in DynamoDB.

    This is per-proof state used to avoid double settlement, not a record of
    which identities have paid.
    """

    def __init__(self, table: Any):
        self.table = table

    def get(self, proof_id: str) -> dict[str, Any] | None:
        response = self.table.get_item(Key={"proof_id": proof_id}, ConsistentRead=True)
        return response.get("Item") or None

    def claim(self, proof_id: str, payer: str, now: int, valid_before: int) -> dict[str, Any] | None:
        """Claim a proof for settlement. Returns the existing item if already claimed."""
        item = {
            "proof_id": proof_id,
            "status": "pending",
            "payer": payer,
            "created_at": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            "expires_at": max(valid_before, now) + SETTLEMENT_LOG_RETENTION_SECONDS,
        }
        try:
            self.table.put_item(Item=item, ConditionExpression=CLAIM_CONDITION)
            return None
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise
        return self.get(proof_id) or {"proof_id": proof_id, "status": "pending"}

    def record_settled(self, proof_id: str, result: SettlementResult, now: int, valid_before: int) -> None:
        self.table.put_item(
            Item={
                "proof_id": proof_id,
                "status": "settled",
                "tx_ref": result.tx_ref,
                "network": result.network,
                "payer": result.payer,
                "amount": result.amount,
                "settled_at": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
                "expires_at": max(valid_before, now) + SETTLEMENT_LOG_RETENTION_SECONDS,
            }
        )

    def release(self, proof_id: str) -> None:
        try:
            self.table.delete_item(Key={"proof_id": proof_id})
        except ClientError:
            # The pending claim expires through the table TTL if this fails.
            logger.warning("failed to release settlement claim %s", proof_id)


class SettlementVerifier:
    def __init__(
        self,
        settings: PaymentSettings,
        facilitator: FacilitatorClient | None = None,
        settlement_log: SettlementLog | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.settlement_log = settlement_log
        self.clock = clock
        if settlement_log is None and settings.settlement_mode == "mock":
            raise ValueError("mock settlement requires a settlement log to reject reused proofs")
        if facilitator is None and settings.settlement_mode == "facilitator":
            facilitator = FacilitatorClient(settings.facilitator_url, timeout=settings.facilitator_timeout_seconds)
        self.facilitator = facilitator

    def verify(self, proof: PaymentProof, challenge: PaymentChallenge) -> SettlementResult:
        now = int(self.clock())
        try:
            authorization = check_proof_against_challenge(proof, challenge, now=now)
        except BadRequestError as exc:
            raise _payment_required(challenge, "Payment authorization is invalid", details=str(exc)) from exc
        proof = dataclasses.replace(proof, authorization=authorization)

        if self.settlement_log is not None:
            existing = self.settlement_log.claim(
                proof.proof_id,
                payer=authorization.from_address,
                now=now,
                valid_before=authorization.valid_before,
            )
            if existing is not None:
                return self._existing_result(existing, challenge)

        try:
            result = self._settle(proof, challenge)
        except Exception:
            if self.settlement_log is not None:
                self.settlement_log.release(proof.proof_id)
            raise

        if not result.settled:
            if self.settlement_log is not None:
                self.settlement_log.release(proof.proof_id)
            return result

        if self.settlement_log is not None:
            self.settlement_log.record_settled(proof.proof_id, result, now=now, valid_before=authorization.valid_before)
        logger.info("payment settled tx=%s payer=%s amount=%s", result.tx_ref, result.payer, result.amount)
        return result

    def _existing_result(self, item: dict[str, Any], challenge: PaymentChallenge) -> SettlementResult:
        status = str(item.get("status") or "").lower()
        if status == "settled" and item.get("tx_ref"):
            return SettlementResult(
                settled=True,
                tx_ref=str(item["tx_ref"]),
                network=str(item.get("network") or challenge.network),
                payer=str(item.get("payer") or ""),
                amount=int(item.get("amount") or 0),
                replayed=True,
            )
        raise _payment_required(challenge, "Payment proof is already being settled")

    def _settle(self, proof: PaymentProof, challenge: PaymentChallenge) -> SettlementResult:
        authorization = proof.authorization
        if self.settings.settlement_mode == "mock":
            return SettlementResult(
                settled=True,
                tx_ref=mock_settlement_tx_id(authorization),
                network=authorization.network,
                payer=authorization.from_address,
                amount=authorization.value,
            )

        if self.facilitator is None:
            raise RuntimeError("FACILITATOR_URL is required for facilitator settlement mode")
        is_valid, reason = self.facilitator.verify(proof, challenge)
        if not is_valid:
            return SettlementResult(settled=False, reason=reason)
        return self.facilitator.settle(proof, challenge)
