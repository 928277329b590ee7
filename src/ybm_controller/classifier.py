"""Error classification for transport and API failures.

Turns heterogeneous failure payloads into a uniform, retry-decidable error:

- Structured JSON bodies: the human-readable detail is extracted.
- Oversized bodies (almost always an HTML page from a gateway rejecting a
  stale token, not an application error): truncated to a bounded prefix
  with an explicit note.
- Transport failures: connection errors and timeouts are retryable.

STATUS MAPPING:
- 404                  -> NOT_FOUND
- 408, 429, 5xx        -> RETRYABLE
- any other 4xx        -> FATAL

SECURITY: Request descriptions attached to errors pass through token
obfuscation so bearer tokens never reach logs or user output.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

from .errors import ApiError, ErrorKind, NotFoundError, ReconcileError

# Longest error message surfaced verbatim
MAX_ERROR_MESSAGE_LENGTH = 10_000

TRUNCATION_NOTE = (
    "NOTE: The length of the HTML output indicates your authentication token "
    "may be out of date. A truncated response follows:"
)

# Statuses outside 5xx that still warrant a retry
RETRYABLE_STATUS_CODES = frozenset({408, 429})

# JWTs start with a base64 encoded '{"' header
_BEARER_TOKEN_PATTERN = re.compile(r"eyJ(.*)")

_MIN_OBFUSCATE_LENGTH = 6
_OBFUSCATE_KEEP_CHARS = 2


@dataclass(frozen=True)
class ClassifiedError:
    """Uniform view of a failure: what to do with it and what to tell the user."""

    kind: ErrorKind
    message: str
    status_code: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return ErrorKind.RETRYABLE
    return ErrorKind.FATAL


def truncate_message(message: str) -> str:
    """Bound a message to MAX_ERROR_MESSAGE_LENGTH characters.

    Messages within the bound are returned unmodified. Longer ones are cut
    to exactly the bound and prefixed with TRUNCATION_NOTE.
    """
    if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return f"{TRUNCATION_NOTE}\n{message[:MAX_ERROR_MESSAGE_LENGTH]}"


def extract_error_detail(body: str | bytes | None) -> str:
    """Extract a human-readable message from an error body.

    Recognizes {"error": {"detail": ...}}, {"error": {"message": ...}} and
    {"message": ...}. Anything else (HTML pages, plain text) is returned as-is.
    """
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")

    try:
        parsed = json.loads(body)
    except ValueError:
        return body

    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict):
            for key in ("detail", "message"):
                value = error.get(key)
                if isinstance(value, str) and value:
                    return value
        message = parsed.get("message")
        if isinstance(message, str) and message:
            return message

    return body


def classify_response(status_code: int, body: str | bytes | None) -> ClassifiedError:
    """Classify a non-2xx HTTP response."""
    detail = extract_error_detail(body).strip()
    if not detail:
        detail = f"HTTP {status_code}"
    return ClassifiedError(
        kind=kind_for_status(status_code),
        message=truncate_message(detail),
        status_code=status_code,
    )


def classify_exception(exc: BaseException) -> ClassifiedError:
    """Classify an exception raised while talking to the remote API."""
    match exc:
        case ReconcileError():
            status_code = exc.status_code if isinstance(exc, ApiError) else None
            return ClassifiedError(kind=exc.kind, message=exc.message, status_code=status_code)
        case ServiceRequestError() | ServiceResponseError() | TimeoutError() | ConnectionError():
            return ClassifiedError(
                kind=ErrorKind.RETRYABLE,
                message=truncate_message(str(exc) or type(exc).__name__),
            )
        case HttpResponseError() if exc.status_code is not None:
            body = exc.response.text() if exc.response is not None else exc.message
            return classify_response(exc.status_code, body)
        case _:
            return ClassifiedError(
                kind=ErrorKind.FATAL,
                message=truncate_message(str(exc) or type(exc).__name__),
            )


def error_from_response(
    status_code: int,
    body: str | bytes | None,
    *,
    title: str | None = None,
) -> ApiError:
    """Build the ApiError (or NotFoundError) matching a failed response."""
    classified = classify_response(status_code, body)
    if classified.kind == ErrorKind.NOT_FOUND:
        return NotFoundError(classified.message, status_code=status_code, title=title)
    return ApiError(
        classified.message,
        status_code=status_code,
        title=title,
        kind=classified.kind,
    )


def obfuscate_token(text: str) -> str:
    """Mask anything that looks like a JWT bearer token."""
    return _BEARER_TOKEN_PATTERN.sub("***", text)


def obfuscate_string(value: str) -> str:
    """Mask the middle of a secret, keeping two characters on each side."""
    if len(value) < _MIN_OBFUSCATE_LENGTH:
        return "X"
    masked = len(value) - 2 * _OBFUSCATE_KEEP_CHARS
    return value[:_OBFUSCATE_KEEP_CHARS] + "X" * masked + value[-_OBFUSCATE_KEEP_CHARS:]


def describe_request_failure(error: str, request: str, response_body: str) -> str:
    """Render an error with its (obfuscated) request and response for diagnostics."""
    return (
        f"{error}\n\nAPI Request:\n{obfuscate_token(request)}"
        f"\n\nAPI Response:\n{truncate_message(response_body)}"
    )
