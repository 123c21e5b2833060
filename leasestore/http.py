"""
API Gateway proxy event parsing and response building.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from leasestore.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    GoneError,
    MethodNotAllowedError,
    NotFoundError,
    PaymentRequiredError,
    UnauthenticatedError,
    UpstreamError,
)
from leasestore.payment import payment_required_headers

logger = logging.getLogger(__name__)

IDENTITY_HEADER_NAMES = ("X-Owner-Identity", "X-Wallet-Address")
SIGNATURE_HEADER_NAME = "X-Signature"
UPLOAD_FIELD_NAME = "file"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
DISPOSITION_UNSAFE_PATTERN = re.compile(r'[\x00-\x1f\x7f"\\]')


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def json_response(status_code: int, body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    merged_headers = {
        "Content-Type": "application/json",
        "Access-Control-Allow-Origin": "*",
    }
    if headers:
        merged_headers.update(headers)
    return {
        "statusCode": status_code,
        "headers": merged_headers,
        "body": json.dumps(body, default=str),
    }


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error, "message": message}
    if details is not None:
        body["details"] = details
    return json_response(status_code, body, headers=headers)


def attachment_disposition(filename: str) -> str:
    """`attachment; filename="..."` with quotes, backslashes and control characters replaced."""
    safe_name = DISPOSITION_UNSAFE_PATTERN.sub("_", filename or "").strip() or "download"
    return f'attachment; filename="{safe_name}"'


def binary_response(content: bytes, headers: dict[str, str]) -> dict[str, Any]:
    merged_headers = {"Access-Control-Allow-Origin": "*"}
    merged_headers.update(headers)
    return {
        "statusCode": 200,
        "headers": merged_headers,
        "body": base64.b64encode(content).decode("ascii"),
        "isBase64Encoded": True,
    }


def payment_required_response(exc: PaymentRequiredError) -> dict[str, Any]:
    body: dict[str, Any] = {
        "x402Version": 2,
        "error": "payment_required",
        "message": exc.message,
        "resource": exc.resource,
        "accepts": [exc.requirements],
    }
    if exc.details is not None:
        body["details"] = exc.details
    return json_response(402, body, headers=payment_required_headers(exc.requirements, exc.resource))


def error_response_for(exc: Exception) -> dict[str, Any]:
    """Translate any exception raised while handling a request to a proxy response."""
    if isinstance(exc, PaymentRequiredError):
        return payment_required_response(exc)
    if isinstance(exc, BadRequestError):
        return error_response(400, "Bad request", str(exc))
    if isinstance(exc, UnauthenticatedError):
        return error_response(401, "Unauthorized", str(exc))
    if isinstance(exc, ForbiddenError):
        return error_response(403, "Forbidden", str(exc))
    if isinstance(exc, NotFoundError):
        return error_response(404, "Not found", str(exc))
    if isinstance(exc, MethodNotAllowedError):
        return error_response(405, "method_not_allowed", str(exc))
    if isinstance(exc, ConflictError):
        return error_response(409, "conflict", str(exc))
    if isinstance(exc, GoneError):
        return error_response(410, "File expired", str(exc))
    if isinstance(exc, UpstreamError):
        logger.warning("upstream failure: %s", exc.message)
        details: dict[str, Any] = {"retryable": exc.retryable}
        if exc.details is not None:
            details["cause"] = exc.details
        return error_response(500, "upstream_error", exc.message, details=details)
    logger.exception("unhandled error")
    return error_response(500, "internal_error", "Internal error")


def normalize_headers(headers: Any) -> dict[str, str]:
    if not isinstance(headers, dict):
        return {}
    normalized: dict[str, str] = {}
    for key, value in headers.items():
        if isinstance(key, str) and value is not None:
            normalized[key.lower()] = str(value)
    return normalized


def header_value(headers: dict[str, str], name: str) -> str | None:
    value = headers.get(name.lower())
    if value is None:
        return None
    value = value.strip()
    return value or None


def identity_header(headers: dict[str, str]) -> str | None:
    for header_name in IDENTITY_HEADER_NAMES:
        value = header_value(headers, header_name)
        if value:
            return value
    return None


def signature_header(headers: dict[str, str]) -> str | None:
    return header_value(headers, SIGNATURE_HEADER_NAME)


def request_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        method = ((event.get("requestContext") or {}).get("http") or {}).get("method")
    return str(method or "").upper()


def request_path(event: dict[str, Any]) -> str:
    return str(event.get("path") or event.get("rawPath") or "/")


def path_key(event: dict[str, Any]) -> str:
    """Object key from the `{key+}` path parameter, URL-decoded."""
    path_parameters = event.get("pathParameters") or {}
    raw_key = path_parameters.get("key") if isinstance(path_parameters, dict) else None
    if not isinstance(raw_key, str) or not raw_key.strip():
        raise BadRequestError("File key is required")
    return unquote(raw_key.strip())


def decode_body_bytes(event: dict[str, Any]) -> bytes:
    raw_body = event.get("body")
    if raw_body in (None, ""):
        return b""
    if isinstance(raw_body, bytes):
        return raw_body
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(raw_body, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BadRequestError("body must be valid base64") from exc
    return str(raw_body).encode("utf-8")


def _header_param(options: dict[bytes, bytes], name: bytes) -> str:
    value = options.get(name)
    if value is None:
        return ""
    return value.decode("utf-8", errors="replace")


def parse_multipart_file(body: bytes, content_type: str, field_name: str = UPLOAD_FIELD_NAME) -> UploadedFile | None:
    """Return the first part named `field_name` that carries a filename."""
    _mime, options = parse_options_header(content_type)
    boundary = options.get(b"boundary")
    if not boundary:
        raise BadRequestError("multipart body is missing a boundary")

    parts: list[dict[str, Any]] = []
    current: dict[str, Any] = {}
    header_field = bytearray()
    header_value_buffer = bytearray()

    def on_part_begin() -> None:
        current.clear()
        current.update({"headers": {}, "data": bytearray()})

    def on_header_field(data: bytes, start: int, end: int) -> None:
        header_field.extend(data[start:end])

    def on_header_value(data: bytes, start: int, end: int) -> None:
        header_value_buffer.extend(data[start:end])

    def on_header_end() -> None:
        current["headers"][bytes(header_field).lower()] = bytes(header_value_buffer)
        header_field.clear()
        header_value_buffer.clear()

    def on_part_data(data: bytes, start: int, end: int) -> None:
        current["data"].extend(data[start:end])

    def on_part_end() -> None:
        parts.append(dict(current))

    parser = MultipartParser(
        boundary,
        callbacks={
            "on_part_begin": on_part_begin,
            "on_header_field": on_header_field,
            "on_header_value": on_header_value,
            "on_header_end": on_header_end,
            "on_part_data": on_part_data,
            "on_part_end": on_part_end,
        },
    )
    try:
        parser.write(body)
        parser.finalize()
    except MultipartParseError as exc:
        raise BadRequestError("multipart body could not be parsed") from exc

    for part in parts:
        disposition = part["headers"].get(b"content-disposition")
        if not disposition:
            continue
        _disposition, disposition_options = parse_options_header(disposition)
        if _header_param(disposition_options, b"name") != field_name:
            continue
        filename = _header_param(disposition_options, b"filename")
        if not filename:
            continue
        part_content_type = part["headers"].get(b"content-type", b"").decode("utf-8", errors="replace").strip()
        return UploadedFile(
            filename=filename,
            content_type=part_content_type or DEFAULT_CONTENT_TYPE,
            content=bytes(part["data"]),
        )
    return None


def parse_json_file(body: bytes) -> UploadedFile | None:
    """JSON upload body: `{"filename", "content" (base64), "contentType"}`."""
    try:
        decoded = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BadRequestError("body must be valid JSON") from exc
    if not isinstance(decoded, dict):
        raise BadRequestError("JSON body must be an object")

    filename = decoded.get("filename")
    content = decoded.get("content")
    if not isinstance(filename, str) or not filename.strip() or not isinstance(content, str):
        return None
    try:
        payload = base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise BadRequestError("content must be valid base64") from exc
    content_type = decoded.get("contentType")
    return UploadedFile(
        filename=filename.strip(),
        content_type=content_type.strip() if isinstance(content_type, str) and content_type.strip() else DEFAULT_CONTENT_TYPE,
        content=payload,
    )


def parse_uploaded_file(event: dict[str, Any], headers: dict[str, str]) -> UploadedFile:
    content_type = header_value(headers, "content-type") or ""
    body = decode_body_bytes(event)
    if not body:
        raise BadRequestError("No file provided")

    if content_type.lower().startswith("multipart/form-data"):
        uploaded = parse_multipart_file(body, content_type)
    elif content_type.lower().startswith("application/json"):
        uploaded = parse_json_file(body)
    else:
        raise BadRequestError("upload body must be multipart/form-data")

    if uploaded is None:
        raise BadRequestError("No file provided")
    return uploaded
