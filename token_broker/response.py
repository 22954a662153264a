"""
Response Assembler: turns a broker outcome into the minimal JSON contract for the
front-end. Errors map to an HTTP status, a kind and a generic message; stack traces,
secrets and raw upstream bodies never appear.
"""
import re
from typing import TYPE_CHECKING, Iterable

from fastapi.responses import JSONResponse

from token_broker.errors import BrokerError, RateLimited, UpstreamError

if TYPE_CHECKING:
    from token_broker.broker import Outcome

_ERROR_CODE_RE = re.compile(r"^[a-z0-9_.-]{1,64}$")
_MAX_DESCRIPTION = 200
_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def safe_error_code(code: str | None) -> str | None:
    """Provider error codes are plain tokens (RFC 6749 §5.2); anything else is dropped."""
    if code and _ERROR_CODE_RE.match(code):
        return code
    return None


def safe_error_description(description: str | None, redact: Iterable[str | None] = ()) -> str | None:
    if not description or len(description) > _MAX_DESCRIPTION or not description.isprintable():
        return None
    for value in redact:
        if value and value in description:
            return None
    return description


def error_body(error: BrokerError, redact: Iterable[str | None] = ()) -> dict:
    body = {"status": "error", "kind": error.kind.value, "message": error.message}
    if isinstance(error, UpstreamError):
        code = safe_error_code(error.error_code)
        if code:
            body["upstream_error"] = code
            description = safe_error_description(error.error_description, redact)
            if description:
                body["upstream_error_description"] = description
    return body


def assemble_error(
    error: BrokerError,
    *,
    cors_headers: dict[str, str] | None = None,
    redact: Iterable[str | None] = (),
) -> JSONResponse:
    headers = dict(_NO_STORE)
    if cors_headers:
        headers.update(cors_headers)
    if isinstance(error, RateLimited):
        headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(error_body(error, redact), status_code=error.status_code, headers=headers)


def assemble(
    outcome: "Outcome",
    *,
    cors_headers: dict[str, str] | None = None,
    deliver_tokens: bool = False,
    redact: Iterable[str | None] = (),
) -> JSONResponse:
    if outcome.error is not None:
        return assemble_error(outcome.error, cors_headers=cors_headers, redact=redact)

    token_set = outcome.token_set
    body: dict = {"status": outcome.success_status}
    if outcome.realm_id:
        body["realmId"] = outcome.realm_id
    if outcome.refresh_ticket:
        body["refresh_ticket"] = outcome.refresh_ticket
    if token_set is not None:
        body["expires_in"] = token_set.expires_in
        body["expires_at"] = token_set.expires_at.isoformat()
        if deliver_tokens:
            # Browser-held tokens: only in this origin-restricted body, never in a URL
            body["access_token"] = token_set.access_token
            body["token_type"] = token_set.token_type
            if token_set.refresh_token:
                body["refresh_token"] = token_set.refresh_token
            if token_set.refresh_expires_in is not None:
                body["refresh_expires_in"] = token_set.refresh_expires_in
    headers = dict(_NO_STORE)
    if cors_headers:
        headers.update(cors_headers)
    return JSONResponse(body, status_code=200, headers=headers)
