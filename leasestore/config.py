"""
Environment-driven settings for the storage services.

Each Lambda reads its settings once per invocation with `Settings.from_env()`.
Required variables raise RuntimeError naming the missing variable.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Mapping

US_EAST_1_REGION = "us-" + "east-1"
DEFAULT_LOCATION = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or US_EAST_1_REGION

DEFAULT_OWNER_INDEX_NAME = "owner_address-uploaded_at-index"
DEFAULT_PAYMENT_TOKEN_NAME = "Bridged USDC (SKALE Bridge)"
DEFAULT_PAYMENT_TOKEN_VERSION = "2"
DEFAULT_NETWORK_CHAIN_ID = "324705682"
DEFAULT_PRICE = "20000"
DEFAULT_MAX_FILE_SIZE = 1000 * 1000 * 1000
DEFAULT_EXPIRATION_DAYS = 10
DEFAULT_MAX_TIMEOUT_SECONDS = 300
DEFAULT_FACILITATOR_TIMEOUT_SECONDS = 30

BLOB_BACKENDS = {"s3", "rpc"}
SETTLEMENT_MODES = {"facilitator", "mock"}
PRICING_MODES = {"flat", "per_megabyte"}

DAY_MS = 24 * 60 * 60 * 1000
ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class PaymentSettings:
    network: str
    pay_to: str
    asset: str
    token_name: str
    token_version: str
    max_timeout_seconds: int
    settlement_mode: str
    facilitator_url: str
    facilitator_timeout_seconds: float


@dataclass(frozen=True)
class PricingSettings:
    mode: str
    base_price: int
    price_per_megabyte: int


@dataclass(frozen=True)
class StorageSettings:
    lease_table_name: str
    owner_index_name: str
    settlement_table_name: str | None
    blob_backend: str
    bucket_name: str
    region: str
    blob_rpc_url: str
    max_file_size: int
    expiration_days: int
    renewal_days: int

    @property
    def lease_duration_ms(self) -> int:
        return self.expiration_days * DAY_MS

    @property
    def renewal_duration_ms(self) -> int:
        return self.renewal_days * DAY_MS


@dataclass(frozen=True)
class Settings:
    storage: StorageSettings
    payment: PaymentSettings
    pricing: PricingSettings

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        storage = _storage_settings(env)
        payment = _payment_settings(env)
        # Mock settlement has no external nonce check; the log is the only replay guard.
        if payment.settlement_mode == "mock" and not storage.settlement_table_name:
            raise RuntimeError("SETTLEMENT_TABLE_NAME environment variable is required when PAYMENT_SETTLEMENT_MODE is mock")
        return cls(storage=storage, payment=payment, pricing=_pricing_settings(env))


def _optional(env: Mapping[str, str], name: str, default: str) -> str:
    value = str(env.get(name) or "").strip()
    return value or default


def _require(env: Mapping[str, str], name: str) -> str:
    value = str(env.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"{name} environment variable is required")
    return value


def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name) or "").strip()
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return parsed


def _read_choice(env: Mapping[str, str], name: str, default: str, choices: set[str]) -> str:
    value = _optional(env, name, default).lower()
    if value not in choices:
        raise RuntimeError(f"{name} must be one of: {', '.join(sorted(choices))}")
    return value


def _require_address(env: Mapping[str, str], name: str) -> str:
    value = _require(env, name)
    if not ADDRESS_PATTERN.fullmatch(value):
        raise RuntimeError(f"{name} must be a 0x-prefixed 20-byte hex address")
    return value.lower()


def _storage_settings(env: Mapping[str, str]) -> StorageSettings:
    blob_backend = _read_choice(env, "BLOB_BACKEND", "s3", BLOB_BACKENDS)
    bucket_name = _require(env, "S3_BUCKET_NAME") if blob_backend == "s3" else _optional(env, "S3_BUCKET_NAME", "")
    blob_rpc_url = _require(env, "BLOB_RPC_URL") if blob_backend == "rpc" else _optional(env, "BLOB_RPC_URL", "")
    region = _optional(env, "AWS_REGION", _optional(env, "AWS_DEFAULT_REGION", DEFAULT_LOCATION))
    expiration_days = _read_int(env, "FILE_EXPIRATION_DAYS", DEFAULT_EXPIRATION_DAYS, minimum=1)

    return StorageSettings(
        lease_table_name=_require(env, "LEASE_TABLE_NAME"),
        owner_index_name=_optional(env, "LEASE_OWNER_INDEX_NAME", DEFAULT_OWNER_INDEX_NAME),
        settlement_table_name=_optional(env, "SETTLEMENT_TABLE_NAME", "") or None,
        blob_backend=blob_backend,
        bucket_name=bucket_name,
        region=region,
        blob_rpc_url=blob_rpc_url,
        max_file_size=_read_int(env, "MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE, minimum=1),
        expiration_days=expiration_days,
        renewal_days=_read_int(env, "RENEWAL_DAYS", expiration_days, minimum=1),
    )


def _payment_settings(env: Mapping[str, str]) -> PaymentSettings:
    settlement_mode = _read_choice(env, "PAYMENT_SETTLEMENT_MODE", "facilitator", SETTLEMENT_MODES)
    if settlement_mode == "facilitator":
        facilitator_url = _require(env, "FACILITATOR_URL")
    else:
        facilitator_url = _optional(env, "FACILITATOR_URL", "")
    chain_id = _optional(env, "NETWORK_CHAIN_ID", DEFAULT_NETWORK_CHAIN_ID)
    if not chain_id.isdigit():
        raise RuntimeError("NETWORK_CHAIN_ID must be a decimal chain id")

    return PaymentSettings(
        network=f"eip155:{chain_id}",
        pay_to=_require_address(env, "RECEIVING_ADDRESS"),
        asset=_require_address(env, "PAYMENT_TOKEN_ADDRESS"),
        token_name=_optional(env, "PAYMENT_TOKEN_NAME", DEFAULT_PAYMENT_TOKEN_NAME),
        token_version=_optional(env, "PAYMENT_TOKEN_VERSION", DEFAULT_PAYMENT_TOKEN_VERSION),
        max_timeout_seconds=_read_int(env, "PAYMENT_MAX_TIMEOUT_SECONDS", DEFAULT_MAX_TIMEOUT_SECONDS, minimum=1),
        settlement_mode=settlement_mode,
        facilitator_url=facilitator_url.rstrip("/"),
        facilitator_timeout_seconds=float(
            _read_int(env, "FACILITATOR_TIMEOUT_SECONDS", DEFAULT_FACILITATOR_TIMEOUT_SECONDS, minimum=1)
        ),
    )


def _pricing_settings(env: Mapping[str, str]) -> PricingSettings:
    return PricingSettings(
        mode=_read_choice(env, "PRICING_MODE", "flat", PRICING_MODES),
        base_price=_read_int(env, "DEFAULT_PRICE", int(DEFAULT_PRICE), minimum=0),
        price_per_megabyte=_read_int(env, "PRICE_PER_MEGABYTE", 0, minimum=0),
    )


def configure_logging(environ: Mapping[str, str] | None = None) -> None:
    env = os.environ if environ is None else environ
    level_name = _optional(env, "LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s %(message)s")
    root.setLevel(level)
