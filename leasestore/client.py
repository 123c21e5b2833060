"""
Client-side payment agent for the storage API.

`StorageClient` signs canonical ownership messages with its private key and
answers HTTP 402 challenges by signing an EIP-3009 TransferWithAuthorization
for the first accepted requirement, then retrying the request once with the
`PAYMENT-SIGNATURE` header attached.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from leasestore import ownership
from leasestore.errors import BadRequestError
from leasestore.payment import (
    PAYMENT_REQUIRED_RESPONSE_HEADERS,
    PAYMENT_RESPONSE_HEADERS,
    X402_VERSION,
    TransferAuthorization,
    decode_json_base64,
    encode_json_base64,
    transfer_typed_data,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
VALID_AFTER_SKEW_SECONDS = 600
FILENAME_PATTERN = re.compile(r'filename="([^"]+)"')


class StorageClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class UploadResult:
    file_key: str
    size: int
    uploaded_at: str
    expires_at: str
    transaction: str | None = None


@dataclass(frozen=True)
class DownloadResult:
    data: bytes
    filename: str
    content_type: str
    expires_at: str | None = None


@dataclass(frozen=True)
class RenewResult:
    file_key: str
    old_expires: str
    new_expires: str
    transaction: str | None = None


def guess_content_type(filename: str) -> str:
    content_type, _encoding = mimetypes.guess_type(filename)
    return content_type or DEFAULT_CONTENT_TYPE


def _hex_signature(signed: Any) -> str:
    return f"0x{bytes(signed.signature).hex()}"


class StorageClient:
    def __init__(self, server_url: str, private_key: str | bytes, http_client: httpx.Client | None = None, timeout: float = 60.0):
        from eth_account import Account

        self.server_url = server_url.rstrip("/")
        self.account = Account.from_key(private_key)
        self.http_client = http_client or httpx.Client(timeout=timeout)

    @property
    def address(self) -> str:
        return self.account.address

    # Signing

    def sign_message(self, message: str) -> str:
        from eth_account.messages import encode_defunct

        return _hex_signature(self.account.sign_message(encode_defunct(text=message)))

    def _ownership_headers(self, message: str) -> dict[str, str]:
        return {
            "X-Owner-Identity": self.address,
            "X-Signature": self.sign_message(message),
        }

    def build_payment_header(self, requirements: dict[str, Any], resource: dict[str, Any] | None = None) -> str:
        """Sign an EIP-3009 authorization that satisfies `requirements`."""
        from eth_account.messages import encode_typed_data

        now = int(time.time())
        extra = requirements.get("extra") or {}
        authorization = TransferAuthorization(
            signature="",
            from_address=self.address.lower(),
            to_address=str(requirements["payTo"]).lower(),
            value=int(requirements["amount"]),
            valid_after=now - VALID_AFTER_SKEW_SECONDS,
            valid_before=now + int(requirements.get("maxTimeoutSeconds") or 300),
            nonce=f"0x{secrets.token_hex(32)}",
            network=str(requirements["network"]),
            asset=str(requirements["asset"]).lower(),
            domain_name=str(extra.get("name") or ""),
            domain_version=str(extra.get("version") or ""),
        )
        signable = encode_typed_data(**transfer_typed_data(authorization))
        signature = _hex_signature(self.account.sign_message(signable))

        payload = {
            "x402Version": X402_VERSION,
            "resource": resource or {},
            "accepted": requirements,
            "payload": {
                "signature": signature,
                "authorization": {
                    "from": authorization.from_address,
                    "to": authorization.to_address,
                    "value": str(authorization.value),
                    "validAfter": str(authorization.valid_after),
                    "validBefore": str(authorization.valid_before),
                    "nonce": authorization.nonce,
                },
            },
        }
        return encode_json_base64(payload)

    # Transport

    @staticmethod
    def _payment_requirements(response: httpx.Response) -> tuple[dict[str, Any], dict[str, Any]]:
        challenge: dict[str, Any] | None = None
        for header_name in PAYMENT_REQUIRED_RESPONSE_HEADERS:
            encoded = response.headers.get(header_name)
            if encoded:
                try:
                    challenge = decode_json_base64(encoded)
                except BadRequestError as exc:
                    raise StorageClientError(f"malformed {header_name} header: {exc}", 402, encoded) from exc
                break
        if challenge is None:
            try:
                challenge = response.json()
            except ValueError as exc:
                raise StorageClientError("402 response did not include payment requirements", 402, response.text) from exc

        accepts = challenge.get("accepts") if isinstance(challenge, dict) else None
        if not isinstance(accepts, list) or not accepts or not isinstance(accepts[0], dict):
            raise StorageClientError("402 response did not include payment requirements", 402, challenge)
        resource = challenge.get("resource") if isinstance(challenge.get("resource"), dict) else {}
        return accepts[0], resource

    @staticmethod
    def _settled_transaction(response: httpx.Response) -> str | None:
        for header_name in PAYMENT_RESPONSE_HEADERS:
            encoded = response.headers.get(header_name)
            if encoded:
                try:
                    return decode_json_base64(encoded).get("transaction")
                except BadRequestError as exc:
                    raise StorageClientError(f"malformed {header_name} header: {exc}", response.status_code, encoded) from exc
        return None

    def _request_with_payment(self, method: str, path: str, headers: dict[str, str], **kwargs: Any) -> httpx.Response:
        url = f"{self.server_url}{path}"
        response = self.http_client.request(method, url, headers=headers, **kwargs)
        if response.status_code != 402:
            return response

        logger.info("payment required for %s %s, signing authorization", method, path)
        requirements, resource = self._payment_requirements(response)
        paid_headers = dict(headers)
        paid_headers["PAYMENT-SIGNATURE"] = self.build_payment_header(requirements, resource)
        return self.http_client.request(method, url, headers=paid_headers, **kwargs)

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        raise StorageClientError(f"{action} failed: {response.status_code}", response.status_code, body)

    # Operations

    def upload_bytes(self, content: bytes, filename: str, content_type: str | None = None) -> UploadResult:
        files = {"file": (filename, content, content_type or guess_content_type(filename))}
        response = self._request_with_payment("POST", "/upload", {"X-Owner-Identity": self.address}, files=files)
        self._raise_for_status(response, "Upload")
        data = response.json()
        return UploadResult(
            file_key=data["fileKey"],
            size=int(data["size"]),
            uploaded_at=data["uploadedAt"],
            expires_at=data["expiresAt"],
            transaction=self._settled_transaction(response),
        )

    def upload_text(self, text: str, filename: str = "text.txt") -> UploadResult:
        return self.upload_bytes(text.encode("utf-8"), filename, "text/plain")

    def upload_file(self, file_path: str | Path) -> UploadResult:
        path = Path(file_path)
        if not path.is_file():
            raise StorageClientError(f"File not found: {path}")
        return self.upload_bytes(path.read_bytes(), path.name)

    def download(self, file_key: str) -> DownloadResult:
        response = self.http_client.get(
            f"{self.server_url}/file/{quote(file_key, safe='')}",
            headers=self._ownership_headers(ownership.read_message(file_key)),
        )
        self._raise_for_status(response, "Download")
        match = FILENAME_PATTERN.search(response.headers.get("Content-Disposition") or "")
        return DownloadResult(
            data=response.content,
            filename=match.group(1) if match else "download",
            content_type=response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE,
            expires_at=response.headers.get("X-Expires-At"),
        )

    def save_to_file(self, file_key: str, output_path: str | Path | None = None) -> Path:
        result = self.download(file_key)
        target = Path(output_path) if output_path else Path(result.filename)
        if target.is_dir():
            target = target / result.filename
        target.write_bytes(result.data)
        return target

    def list_files(self) -> dict[str, Any]:
        response = self.http_client.get(
            f"{self.server_url}/files",
            headers=self._ownership_headers(ownership.list_message()),
        )
        self._raise_for_status(response, "List")
        return response.json()

    def file_info(self, file_key: str) -> dict[str, Any]:
        response = self.http_client.get(
            f"{self.server_url}/file-info/{quote(file_key, safe='')}",
            headers=self._ownership_headers(ownership.info_message(file_key)),
        )
        self._raise_for_status(response, "Get info")
        return response.json()

    def delete(self, file_key: str) -> dict[str, Any]:
        response = self.http_client.delete(
            f"{self.server_url}/file/{quote(file_key, safe='')}",
            headers=self._ownership_headers(ownership.delete_message(file_key)),
        )
        self._raise_for_status(response, "Delete")
        return response.json()

    def renew(self, file_key: str) -> RenewResult:
        response = self._request_with_payment(
            "POST",
            f"/renew/{quote(file_key, safe='')}",
            self._ownership_headers(ownership.renew_message(file_key)),
        )
        self._raise_for_status(response, "Renew")
        data = response.json()
        return RenewResult(
            file_key=data["fileKey"],
            old_expires=data["oldExpires"],
            new_expires=data["newExpires"],
            transaction=self._settled_transaction(response),
        )
