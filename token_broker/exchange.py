"""
Token Exchange Client: the secret-bearing POST to the provider's token endpoint.
authorization_code grant (optionally with PKCE) and refresh_token grant.

No automatic retry except once for connection-establishment failures, where no
request bytes reached the provider. exchange_timeout_seconds is one budget for the
whole call: the retry only gets what the first attempt left over. Tokens and secrets are never logged.
"""
import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from token_broker.config import BrokerConfig
from token_broker.errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenSet:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    token_type: str
    expires_in: int
    expires_at: datetime
    refresh_expires_in: int | None = None

    @property
    def refresh_expires_at(self) -> datetime | None:
        if self.refresh_expires_in is None:
            return None
        return self.expires_at - timedelta(seconds=self.expires_in) + timedelta(seconds=self.refresh_expires_in)

    @classmethod
    def from_response(cls, data: dict[str, Any], now: datetime | None = None) -> "TokenSet":
        now = now or datetime.now(timezone.utc)
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        # Provider-specific names for the refresh token lifetime
        refresh_raw = data.get("x_refresh_token_expires_in", data.get("refresh_expires_in"))
        try:
            refresh_expires_in = int(refresh_raw) if refresh_raw is not None else None
        except (TypeError, ValueError):
            refresh_expires_in = None
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            token_type=data.get("token_type") or "Bearer",
            expires_in=expires_in,
            expires_at=now + timedelta(seconds=expires_in),
            refresh_expires_in=refresh_expires_in,
        )


def fingerprint(value: str) -> str:
    """Short non-reversible reference for logs."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _json_body(r) -> dict:
    try:
        body = r.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class TokenExchangeClient:
    def __init__(self, config: BrokerConfig):
        self.token_endpoint = config.token_endpoint
        self.timeout = config.exchange_timeout_seconds
        self.tenant_param = config.tenant_param
        self._client_id = config.client_id
        self._client_secret = config.client_secret
        self._auth_method = config.token_auth_method

    def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        code_verifier: str | None = None,
        realm_id: str | None = None,
    ) -> TokenSet:
        """authorization_code grant. redirect_uri must byte-match the one used at /authorize."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        if realm_id and self.tenant_param:
            data[self.tenant_param] = realm_id
        logger.info("exchanging authorization code %s (pkce=%s)", fingerprint(code), bool(code_verifier))
        return self._post(data)

    def refresh(self, refresh_token: str) -> TokenSet:
        """refresh_token grant; same endpoint and credentials."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        logger.info("refreshing token %s", fingerprint(refresh_token))
        return self._post(data)

    def _post(self, data: dict[str, str]) -> TokenSet:
        auth = None
        if self._auth_method == "client_secret_basic":
            auth = (self._client_id, self._client_secret)
        else:
            data = {**data, "client_id": self._client_id, "client_secret": self._client_secret}

        r = None
        deadline = time.monotonic() + self.timeout
        for attempt in (1, 2):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("token endpoint unreachable within %ss", self.timeout)
                raise UpstreamError(relayed=False, detail="connect failed: budget spent")
            try:
                r = httpx.post(
                    self.token_endpoint,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                    timeout=httpx.Timeout(remaining),
                )
                break
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                # Connection never opened: nothing reached the provider, one retry is safe
                if attempt == 2:
                    logger.warning("token endpoint unreachable after retry: %s", type(e).__name__)
                    raise UpstreamError(relayed=False, detail=f"connect failed: {type(e).__name__}")
                logger.warning("token endpoint connect failed (%s); retrying once", type(e).__name__)
            except httpx.TimeoutException as e:
                logger.warning("token endpoint timed out: %s", type(e).__name__)
                raise UpstreamError(relayed=True, detail=f"timeout: {type(e).__name__}")
            except httpx.HTTPError as e:
                logger.warning("token endpoint request failed: %s", type(e).__name__)
                raise UpstreamError(relayed=True, detail=f"transport: {type(e).__name__}")

        body = _json_body(r)
        if not 200 <= r.status_code < 300:
            error_code = body.get("error")
            error_description = body.get("error_description")
            logger.warning("token endpoint rejected exchange: status=%s error=%s", r.status_code, error_code)
            raise UpstreamError(
                str(error_code) if error_code else None,
                str(error_description) if error_description else None,
                relayed=True,
                http_status=r.status_code,
            )
        if not body.get("access_token"):
            logger.warning("token endpoint returned %s without access_token", r.status_code)
            raise UpstreamError("invalid_token_response", relayed=True, http_status=r.status_code)
        return TokenSet.from_response(body)
