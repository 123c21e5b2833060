"""
Ownership proofs.

A caller proves control of an identity by signing an operation-specific
canonical message with EIP-191 `personal_sign`. The server recovers the signer
from (message, signature) and compares it case-insensitively to the claimed
identity.

Canonical messages:
- read object / get metadata: the object key, verbatim
- list objects: `list-files`
- delete object: `delete:<key>`
- renew lease: `renew:<key>`

The `delete:` and `renew:` prefixes keep a read signature from authorizing a
destructive or paid intent on the same key.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from leasestore.errors import BadRequestError

logger = logging.getLogger(__name__)

LIST_FILES_MESSAGE = "list-files"
DELETE_MESSAGE_PREFIX = "delete:"
RENEW_MESSAGE_PREFIX = "renew:"

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
SIGNATURE_PATTERN = re.compile(r"^0x[a-fA-F0-9]{130}$")


def read_message(key: str) -> str:
    return key


def info_message(key: str) -> str:
    return key


def list_message(_key: str | None = None) -> str:
    return LIST_FILES_MESSAGE


def delete_message(key: str) -> str:
    return f"{DELETE_MESSAGE_PREFIX}{key}"


def renew_message(key: str) -> str:
    return f"{RENEW_MESSAGE_PREFIX}{key}"


def normalize_identity(value: Any, field_name: str = "identity") -> str:
    candidate = value.strip() if isinstance(value, str) else ""
    if not ADDRESS_PATTERN.fullmatch(candidate):
        raise BadRequestError(f"{field_name} must be a 0x-prefixed 20-byte hex address")
    return f"0x{candidate[2:].lower()}"


def same_identity(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


class SignatureScheme(Protocol):
    def recover(self, message: str, signature: str) -> str:
        """Return the address that produced `signature` over `message`."""


class EthPersonalSignScheme:
    """EIP-191 personal_sign recovery via eth-account."""

    def recover(self, message: str, signature: str) -> str:
        from eth_account import Account
        from eth_account.messages import encode_defunct

        normalized = signature.strip()
        if not normalized.startswith("0x"):
            normalized = f"0x{normalized}"
        if not SIGNATURE_PATTERN.fullmatch(normalized):
            raise ValueError("signature must be a 65-byte hex string")
        signable = encode_defunct(text=message)
        return Account.recover_message(signable, signature=normalized)


class OwnershipVerifier:
    def __init__(self, scheme: SignatureScheme | None = None):
        self.scheme = scheme or EthPersonalSignScheme()

    def verify(self, identity: str, message: str, signature: str) -> bool:
        """True when `signature` over `message` recovers to `identity`.

        Malformed signatures or messages are a failed verification, never an
        exception.
        """
        if not identity or not signature or message is None:
            return False
        try:
            recovered = self.scheme.recover(message, signature)
        except Exception as exc:
            logger.info("signature recovery failed: %s", type(exc).__name__)
            return False
        return same_identity(recovered, identity)
