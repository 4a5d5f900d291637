"""Embedding provider error taxonomy and HTTP error classification"""

import json
import time
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Any

import httpx

HTML_SAMPLE_LENGTH = 160

_NETWORK_HINTS = ("net::err", "econn", "enotfound", "timeout", "timed out", "network")


class ErrorCode(StrEnum):
    """Normalised provider failure codes"""

    HOST_UNAVAILABLE = "HOST_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    LICENSE_INVALID = "LICENSE_INVALID"
    HTTP_ERROR = "HTTP_ERROR"
    UNEXPECTED_RESPONSE = "UNEXPECTED_RESPONSE"
    INVALID_RESPONSE = "INVALID_RESPONSE"


class EmbeddingsProviderError(Exception):
    """Raised when an embedding request fails"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNEXPECTED_RESPONSE,
        status: int | None = None,
        transient: bool = False,
        license_related: bool = False,
        retry_in_ms: int | None = None,
        provider_id: str | None = None,
        endpoint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = ErrorCode(code)
        self.status = status
        self.transient = transient
        self.license_related = license_related
        self.retry_in_ms = retry_in_ms
        self.provider_id = provider_id
        self.endpoint = endpoint
        self.details = details or {}
        super().__init__(message)


class ParsedErrorResponse:
    """Message, retry hint and details extracted from a failed HTTP response"""

    def __init__(
        self, message: str, retry_in_ms: int | None, details: dict[str, Any], is_html: bool
    ):
        self.message = message
        self.retry_in_ms = retry_in_ms
        self.details = details
        self.is_html = is_html


def is_transient_status(status: int | None) -> bool:
    if status is None:
        return False
    return status >= 500 or status in (408, 429)


def looks_like_network_error(message: str) -> bool:
    lower = message.lower()
    return any(hint in lower for hint in _NETWORK_HINTS)


def classify_error_code(status: int | None, message: str, is_html: bool = False) -> ErrorCode:
    """
    Map an HTTP status and message to an error code

    Args:
        status: HTTP status (None when no response was received)
        message: Error message extracted from the response or exception
        is_html: Whether the response body was an HTML page instead of JSON

    Returns:
        ErrorCode: Normalised failure code
    """
    if is_html:
        if status == 403 or (status is not None and status >= 500):
            return ErrorCode.HOST_UNAVAILABLE
        return ErrorCode.INVALID_RESPONSE
    if status in (401, 402, 403):
        return ErrorCode.LICENSE_INVALID
    if status == 429:
        return ErrorCode.RATE_LIMITED
    if status == 0:
        return ErrorCode.NETWORK_ERROR
    if not status and looks_like_network_error(message):
        return ErrorCode.NETWORK_ERROR
    if "temporarily unavailable" in message.lower():
        return ErrorCode.HOST_UNAVAILABLE
    if status and status >= 400:
        return ErrorCode.HTTP_ERROR
    return ErrorCode.NETWORK_ERROR


def parse_retry_after(value: str | None) -> int | None:
    """Convert a Retry-After header (seconds or HTTP date) to milliseconds"""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return int(seconds * 1000) if seconds >= 0 else None

    try:
        absolute = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    diff_ms = int((absolute.timestamp() - time.time()) * 1000)
    return diff_ms if diff_ms > 0 else None


def _combine_message(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    message_field = payload.get("message")
    error_field = payload.get("error")
    if isinstance(error_field, dict):
        # OpenAI style: {"error": {"message": ...}}
        error_field = error_field.get("message")
    message = message_field.strip() if isinstance(message_field, str) else ""
    error = error_field.strip() if isinstance(error_field, str) else ""
    if message and error and message.lower() != error.lower():
        return f"{message} ({error})"
    if message or error:
        return message or error
    detail = payload.get("detail")
    return detail.strip() if isinstance(detail, str) and detail.strip() else None


def parse_error_response(response: httpx.Response) -> ParsedErrorResponse:
    """
    Extract a readable message from a failed HTTP response

    HTML bodies (gateway/CDN pages) are flagged with details kind 'html-response'
    and a short sample so callers can tell them apart from API errors.
    """
    status = response.status_code
    text = response.text or ""
    trimmed = text.strip()
    lower = trimmed.lower()
    content_type = response.headers.get("content-type", "").lower()
    is_html = (
        "text/html" in content_type
        or lower.startswith("<!doctype html")
        or lower.startswith("<html")
        or trimmed.startswith("<")
    )

    payload: Any = None
    if not is_html and trimmed:
        try:
            payload = json.loads(trimmed)
        except ValueError:
            payload = None

    if status in (502, 503, 504):
        if is_html:
            message = (
                f"Embeddings API is temporarily unavailable (HTTP {status}). "
                "The upstream service returned a gateway error page instead of JSON."
            )
        else:
            message = f"Embeddings API is temporarily unavailable (HTTP {status}). Retry shortly."
    elif is_html:
        message = (
            f"Received HTML (HTTP {status}) instead of JSON from the embeddings API. "
            "This usually means a gateway or CDN page was returned."
        )
    else:
        message = _combine_message(payload) or trimmed

    if not message:
        message = f"HTTP {status}" if status else "Unknown error"

    details: dict[str, Any] = dict(payload) if isinstance(payload, dict) else {}
    if is_html:
        details = {
            "kind": "html-response",
            "sample": trimmed[:HTML_SAMPLE_LENGTH],
            "full_text": trimmed,
            **details,
        }
    elif trimmed:
        details["full_text"] = trimmed

    return ParsedErrorResponse(
        message=message,
        retry_in_ms=parse_retry_after(response.headers.get("retry-after")),
        details=details,
        is_html=is_html,
    )


def build_http_error(
    response: httpx.Response, provider_id: str, endpoint: str
) -> EmbeddingsProviderError:
    """Build a classified error from a non-success HTTP response"""
    parsed = parse_error_response(response)
    status = response.status_code
    code = classify_error_code(status, parsed.message, parsed.is_html)
    return EmbeddingsProviderError(
        f"API error {status}: {parsed.message}",
        code=code,
        status=status,
        transient=is_transient_status(status),
        license_related=code == ErrorCode.LICENSE_INVALID,
        retry_in_ms=parsed.retry_in_ms,
        provider_id=provider_id,
        endpoint=endpoint,
        details=parsed.details,
    )


def ensure_provider_error(
    error: BaseException,
    provider_id: str | None = None,
    endpoint: str | None = None,
) -> EmbeddingsProviderError:
    """
    Normalise any exception raised during an embedding request

    Transport failures (timeouts, refused connections) become transient
    NETWORK_ERROR; anything unrecognised becomes a non-transient
    UNEXPECTED_RESPONSE.
    """
    if isinstance(error, EmbeddingsProviderError):
        return error

    if isinstance(error, httpx.TransportError):
        message = str(error) or type(error).__name__
        if isinstance(error, httpx.TimeoutException) and "timeout" not in message.lower():
            message = f"Request timed out: {message}"
        code = classify_error_code(None, message)
        return EmbeddingsProviderError(
            message,
            code=code,
            transient=code in (ErrorCode.NETWORK_ERROR, ErrorCode.HOST_UNAVAILABLE),
            provider_id=provider_id,
            endpoint=endpoint,
            details={"kind": "transport", "error_type": type(error).__name__},
        )

    return EmbeddingsProviderError(
        str(error) or type(error).__name__,
        code=ErrorCode.UNEXPECTED_RESPONSE,
        transient=False,
        provider_id=provider_id,
        endpoint=endpoint,
        details={"kind": "unexpected", "error_type": type(error).__name__},
    )


def is_html_rejection(error: EmbeddingsProviderError) -> bool:
    """Whether a 403 came back as an HTML page (payload silently rejected upstream)"""
    if error.status != 403:
        return False

    details = error.details or {}
    if details.get("kind") == "html-response":
        return True
    for key in ("sample", "text"):
        value = details.get(key)
        if isinstance(value, str) and value.strip().startswith("<"):
            return True

    message = (error.message or "").lower()
    return "received html" in message and "403" in message


def is_license_error(error: EmbeddingsProviderError) -> bool:
    """Credential or licensing rejection; gateway pages (HOST_UNAVAILABLE) never count"""
    if error.code == ErrorCode.HOST_UNAVAILABLE:
        return False
    return (
        error.license_related
        or error.code == ErrorCode.LICENSE_INVALID
        or error.status in (401, 403)
    )
