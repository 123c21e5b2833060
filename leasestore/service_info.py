"""Service descriptor and health payloads."""

from __future__ import annotations

from typing import Any

from leasestore.config import Settings
from leasestore.ledger import isoformat_ms
from leasestore.payment import pricing_policy_from_settings
from leasestore.routes import OPERATIONS

SERVICE_NAME = "Leased Object Storage"
SERVICE_VERSION = "1.0.0"


def _endpoint_label(method: str, path: str) -> str:
    return f"{method} {path}"


def describe(settings: Settings) -> dict[str, Any]:
    pricing = pricing_policy_from_settings(settings.pricing)
    endpoints: dict[str, str] = {
        "GET /": "Service information and available endpoints",
        "GET /health": "Health check endpoint",
    }
    for guards in OPERATIONS.values():
        requirements = []
        if guards.priced:
            requirements.append("x402 payment")
        if guards.signed:
            requirements.append("owner signature")
        suffix = f" (requires {' + '.join(requirements)})" if requirements else ""
        endpoints[_endpoint_label(guards.method, guards.path)] = f"{guards.description}{suffix}"

    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": f"x402-paid object storage with {settings.storage.expiration_days}-day leases",
        "endpoints": endpoints,
        "pricing": {
            "mode": settings.pricing.mode,
            "upload": {"price": str(pricing(None)), "description": "Each upload requires payment"},
            "renewal": {"price": str(pricing(None)), "description": "Each renewal requires payment"},
            "pricePerMegabyte": str(settings.pricing.price_per_megabyte),
            "unit": "Price in smallest token unit",
        },
        "limits": {
            "maxFileSizeBytes": settings.storage.max_file_size,
            "expirationDays": settings.storage.expiration_days,
            "renewalDays": settings.storage.renewal_days,
        },
        "payment": {
            "network": settings.payment.network,
            "token": settings.payment.token_name,
            "asset": settings.payment.asset,
            "receivingAddress": settings.payment.pay_to,
            "facilitatorUrl": settings.payment.facilitator_url or None,
            "settlementMode": settings.payment.settlement_mode,
        },
    }


def health(now_ms: int) -> dict[str, Any]:
    return {"status": "ok", "timestamp": isoformat_ms(now_ms)}
