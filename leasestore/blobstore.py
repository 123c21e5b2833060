"""
Blob store adapters.

The ledger never touches blobs. These adapters store, fetch and delete object
bytes by key; a missing object is reported as `None` / `False`, any other
backend failure as UpstreamError.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any, Protocol

import httpx
from botocore.exceptions import ClientError

from leasestore.errors import UpstreamError

logger = logging.getLogger(__name__)

BUCKET_NAME_MIN_LEN = 3
BUCKET_NAME_MAX_LEN = 63
BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
BUCKET_FORBIDDEN_PREFIXES = ("xn--", "sthree-", "amzn-s3-demo-")
BUCKET_FORBIDDEN_SUFFIXES = ("-s3alias", "--ol-s3", ".mrap", "--x-s3", "--table-s3")
BUCKET_IP_PATTERN = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")

NOT_FOUND_ERROR_CODES = {"404", "NotFound", "NoSuchKey"}


class BlobStore(Protocol):
    def put(self, key: str, content: bytes, content_type: str) -> None: ...

    def get(self, key: str) -> bytes | None: ...

    def delete(self, key: str) -> bool: ...


def validate_bucket_name(name: str) -> None:
    if not (BUCKET_NAME_MIN_LEN <= len(name) <= BUCKET_NAME_MAX_LEN):
        raise RuntimeError(f"Bucket name must be {BUCKET_NAME_MIN_LEN}-{BUCKET_NAME_MAX_LEN} characters")
    if not BUCKET_NAME_PATTERN.match(name):
        raise RuntimeError("Bucket name must use only lowercase letters, digits, dots, and hyphens")
    if name.startswith(BUCKET_FORBIDDEN_PREFIXES) or name.endswith(BUCKET_FORBIDDEN_SUFFIXES):
        raise RuntimeError("Bucket name uses a forbidden prefix or suffix")
    if BUCKET_IP_PATTERN.match(name):
        raise RuntimeError("Bucket name must not be formatted as an IP address")


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _error_message(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Message", str(exc)))


def _is_not_found_error(exc: ClientError) -> bool:
    return _error_code(exc) in NOT_FOUND_ERROR_CODES


class S3BlobStore:
    """All objects in one bucket; keys are owner-prefixed by the ledger."""

    def __init__(self, s3_client: Any, bucket_name: str):
        validate_bucket_name(bucket_name)
        self.s3_client = s3_client
        self.bucket_name = bucket_name

    def put(self, key: str, content: bytes, content_type: str) -> None:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except ClientError as exc:
            raise UpstreamError("Failed to store file", details=_error_message(exc)) from exc

    def get(self, key: str) -> bytes | None:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as exc:
            if _is_not_found_error(exc):
                return None
            raise UpstreamError("Failed to fetch file", details=_error_message(exc)) from exc
        return response["Body"].read()

    def delete(self, key: str) -> bool:
        """Delete `key`; False when it was already absent."""
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as exc:
            if _is_not_found_error(exc):
                return False
            raise UpstreamError("Failed to delete file", details=_error_message(exc)) from exc
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as exc:
            raise UpstreamError("Failed to delete file", details=_error_message(exc)) from exc
        return True


class RpcBlobStore:
    """HTTP blob RPC: JSON POSTs to `/v1/s3/put`, `/v1/s3/get` and `/v1/s3/delete`.

    Object bytes travel base64-encoded in the `value` field. `/v1/s3/get`
    answers 404 for a missing key.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, http_client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.Client(timeout=timeout)

    def _post(self, path: str, payload: dict[str, Any], action: str) -> httpx.Response:
        try:
            return self.http_client.post(f"{self.base_url}{path}", json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Failed to {action} file", details=str(exc)) from exc

    def _json(self, response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Failed to {action} file", details=response.text[:500]) from exc
        if not isinstance(data, dict):
            raise UpstreamError(f"Failed to {action} file", details="blob RPC returned a non-object")
        return data

    def put(self, key: str, content: bytes, content_type: str) -> None:
        response = self._post(
            "/v1/s3/put",
            {
                "key": key,
                "value": base64.b64encode(content).decode("ascii"),
                "content_type": content_type,
            },
            "store",
        )
        if response.status_code != 200 or self._json(response, "store").get("success") is not True:
            raise UpstreamError("Failed to store file", details=f"status {response.status_code}")

    def get(self, key: str) -> bytes | None:
        response = self._post("/v1/s3/get", {"key": key}, "fetch")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise UpstreamError("Failed to fetch file", details=f"status {response.status_code}")
        value = self._json(response, "fetch").get("value")
        if not isinstance(value, str):
            return None
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise UpstreamError("Failed to fetch file", details="blob RPC returned invalid base64") from exc

    def delete(self, key: str) -> bool:
        response = self._post("/v1/s3/delete", {"key": key}, "delete")
        if response.status_code == 404:
            return False
        if response.status_code != 200:
            raise UpstreamError("Failed to delete file", details=f"status {response.status_code}")
        return self._json(response, "delete").get("success") is True
