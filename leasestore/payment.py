"""
x402 payment challenges and proofs.

The issuer turns configuration plus a pricing policy into a `PaymentChallenge`
for one protected operation. Challenges are never persisted; a new one is built
for every unpaid request. Proofs arrive as a base64 JSON `PAYMENT-SIGNATURE`
header carrying an EIP-3009 TransferWithAuthorization signed under EIP-712.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from leasestore.config import PaymentSettings, PricingSettings
from leasestore.errors import BadRequestError

logger = logging.getLogger(__name__)

X402_VERSION = 2
EXACT_SCHEME = "exact"
BYTES_PER_MEGABYTE = 1000 * 1000

PAYMENT_SIGNATURE_HEADER_NAMES = (
    "PAYMENT-SIGNATURE",
    "X-PAYMENT",
)
PAYMENT_REQUIRED_RESPONSE_HEADERS = ("PAYMENT-REQUIRED",)
PAYMENT_RESPONSE_HEADERS = ("PAYMENT-RESPONSE",)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
NONCE_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")
NETWORK_PATTERN = re.compile(r"^eip155:(\d+)$")

TRANSFER_WITH_AUTH_TYPES = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

PricingPolicy = Callable[[int | None], int]


@dataclass(frozen=True)
class PaymentChallenge:
    scheme: str
    network: str
    pay_to: str
    asset: str
    amount: int
    max_timeout_seconds: int
    extra: dict[str, str] = field(default_factory=dict)
    resource: str = ""
    description: str = ""

    def requirements(self) -> dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "amount": str(self.amount),
            "asset": self.asset,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "extra": dict(self.extra),
        }

    def resource_info(self) -> dict[str, Any]:
        return {"url": self.resource, "description": self.description}

    @property
    def chain_id(self) -> int:
        return chain_id_from_network(self.network)


@dataclass(frozen=True)
class TransferAuthorization:
    signature: str
    from_address: str
    to_address: str
    value: int
    valid_after: int
    valid_before: int
    nonce: str
    network: str
    asset: str
    domain_name: str
    domain_version: str


@dataclass(frozen=True)
class PaymentProof:
    raw_header: str
    payload: dict[str, Any]
    authorization: TransferAuthorization

    @property
    def proof_id(self) -> str:
        auth = self.authorization
        return f"{auth.network}:{auth.asset}:{auth.from_address}:{auth.nonce}"


def flat_pricing(price: int) -> PricingPolicy:
    def _price(_size_bytes: int | None = None) -> int:
        return price

    return _price


def per_megabyte_pricing(base_price: int, price_per_megabyte: int) -> PricingPolicy:
    """Base price plus a charge per started megabyte of payload."""

    def _price(size_bytes: int | None = None) -> int:
        if not size_bytes or size_bytes <= 0:
            return base_price
        megabytes = -(-size_bytes // BYTES_PER_MEGABYTE)
        return base_price + megabytes * price_per_megabyte

    return _price


def pricing_policy_from_settings(settings: PricingSettings) -> PricingPolicy:
    if settings.mode == "per_megabyte":
        return per_megabyte_pricing(settings.base_price, settings.price_per_megabyte)
    return flat_pricing(settings.base_price)


def chain_id_from_network(network: str) -> int:
    match = NETWORK_PATTERN.fullmatch((network or "").strip().lower())
    if not match:
        raise BadRequestError("network must be a CAIP-2 eip155:<chainId> identifier")
    return int(match.group(1))


class ChallengeIssuer:
    def __init__(self, settings: PaymentSettings, pricing: PricingPolicy):
        self.settings = settings
        self.pricing = pricing

    def price_for(self, size_bytes: int | None = None) -> int:
        return int(self.pricing(size_bytes))

    def issue(self, resource: str, description: str, size_bytes: int | None = None) -> PaymentChallenge:
        return PaymentChallenge(
            scheme=EXACT_SCHEME,
            network=self.settings.network,
            pay_to=self.settings.pay_to,
            asset=self.settings.asset,
            amount=self.price_for(size_bytes),
            max_timeout_seconds=self.settings.max_timeout_seconds,
            extra={
                "name": self.settings.token_name,
                "version": self.settings.token_version,
            },
            resource=resource,
            description=description,
        )


def encode_json_base64(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(encoded).decode("ascii")


def decode_json_base64(value: str) -> dict[str, Any]:
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError) as exc:
        raise BadRequestError("value must be base64-encoded JSON") from exc
    if not isinstance(payload, dict):
        raise BadRequestError("decoded JSON must be an object")
    return payload


def payment_required_headers(requirements: dict[str, Any], resource: dict[str, Any]) -> dict[str, str]:
    encoded = encode_json_base64(
        {
            "x402Version": X402_VERSION,
            "resource": resource,
            "accepts": [requirements],
        }
    )
    return {header_name: encoded for header_name in PAYMENT_REQUIRED_RESPONSE_HEADERS}


def payment_response_headers(transaction: str, network: str, payer: str) -> dict[str, str]:
    encoded = encode_json_base64(
        {
            "success": True,
            "transaction": transaction,
            "network": network,
            "payer": payer,
        }
    )
    return {header_name: encoded for header_name in PAYMENT_RESPONSE_HEADERS}


def find_payment_header(headers: dict[str, str]) -> str | None:
    for header_name in PAYMENT_SIGNATURE_HEADER_NAMES:
        value = (headers.get(header_name.lower()) or "").strip()
        if value:
            return value
    return None


def _decode_payment_payload(payment_header: str) -> dict[str, Any]:
    candidates: list[str] = [payment_header]
    try:
        candidates.insert(0, base64.b64decode(payment_header, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.debug("payment header is not base64, trying it as raw JSON")

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    raise BadRequestError("payment signature header must be base64-encoded JSON")


def _coerce_int(value: Any, field_name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise BadRequestError(f"{field_name} must be an integer") from exc


def _normalize_address(value: Any, field_name: str) -> str:
    candidate = value.strip() if isinstance(value, str) else ""
    if not ADDRESS_PATTERN.fullmatch(candidate):
        raise BadRequestError(f"{field_name} must be a 0x-prefixed 20-byte hex address")
    return f"0x{candidate[2:].lower()}"


def _normalize_nonce(nonce: Any) -> str:
    if not isinstance(nonce, str):
        raise BadRequestError("payment nonce must be a hex string")
    normalized = nonce.strip()
    if not NONCE_PATTERN.fullmatch(normalized):
        raise BadRequestError("payment nonce must be 32 bytes hex (0x-prefixed)")
    return f"0x{normalized[2:].lower()}"


def _extract_transfer_authorization(payment_payload: dict[str, Any]) -> TransferAuthorization:
    payload_obj = payment_payload.get("payload")
    signature = payment_payload.get("signature")
    authorization = payment_payload.get("authorization")

    if isinstance(payload_obj, dict):
        signature = signature or payload_obj.get("signature")
        authorization = authorization or payload_obj.get("authorization")

    accepted = payment_payload.get("accepted")
    accepted_obj: dict[str, Any] = {}
    if isinstance(accepted, list):
        accepted_obj = next((candidate for candidate in accepted if isinstance(candidate, dict)), {})
    elif isinstance(accepted, dict):
        accepted_obj = accepted

    if not isinstance(authorization, dict):
        raise BadRequestError("payment payload is missing authorization fields")
    if not isinstance(signature, str) or not signature.strip():
        raise BadRequestError("payment signature is required")

    signature = signature.strip()
    if not signature.startswith("0x"):
        signature = f"0x{signature}"
    if len(signature) != 132:
        raise BadRequestError("payment signature must be a 65-byte hex string")

    def _raw_or_fallback(key: str, fallback_key: str | None = None) -> Any:
        if authorization.get(key) not in (None, ""):
            return authorization[key]
        if fallback_key and accepted_obj.get(fallback_key) not in (None, ""):
            return accepted_obj[fallback_key]
        return None

    network = str(_raw_or_fallback("network", "network") or payment_payload.get("network") or "").strip().lower()
    chain_id_from_network(network)
    extra = accepted_obj.get("extra") if isinstance(accepted_obj.get("extra"), dict) else {}

    return TransferAuthorization(
        signature=signature,
        from_address=_normalize_address(_raw_or_fallback("from"), "payment authorization from"),
        to_address=_normalize_address(_raw_or_fallback("to", "payTo"), "payment authorization to"),
        value=_coerce_int(_raw_or_fallback("value", "amount"), "payment authorization value"),
        valid_after=_coerce_int(_raw_or_fallback("validAfter"), "payment authorization validAfter"),
        valid_before=_coerce_int(_raw_or_fallback("validBefore"), "payment authorization validBefore"),
        nonce=_normalize_nonce(_raw_or_fallback("nonce")),
        network=network,
        asset=_normalize_address(_raw_or_fallback("asset", "asset"), "payment asset"),
        domain_name=str(authorization.get("name") or extra.get("name") or ""),
        domain_version=str(authorization.get("version") or extra.get("version") or ""),
    )


def parse_payment_proof(payment_header: str) -> PaymentProof:
    payload = _decode_payment_payload(payment_header)
    return PaymentProof(
        raw_header=payment_header,
        payload=payload,
        authorization=_extract_transfer_authorization(payload),
    )


def transfer_typed_data(authorization: TransferAuthorization) -> dict[str, Any]:
    return {
        "domain_data": {
            "name": authorization.domain_name,
            "version": authorization.domain_version,
            "chainId": chain_id_from_network(authorization.network),
            "verifyingContract": authorization.asset,
        },
        "message_types": TRANSFER_WITH_AUTH_TYPES,
        "message_data": {
            "from": authorization.from_address,
            "to": authorization.to_address,
            "value": int(authorization.value),
            "validAfter": int(authorization.valid_after),
            "validBefore": int(authorization.valid_before),
            "nonce": authorization.nonce,
        },
    }
