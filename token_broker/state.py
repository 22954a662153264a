"""
Signed, time-bounded state tokens (CSRF defense for the callback).

A state is a compact HS256 JWT over the broker's own claims: a 256-bit nonce (jti),
iat, exp, a fixed audience, caller metadata, and optionally the PKCE code_verifier.
The verifier is Fernet-encrypted with a key derived from the signing key, so the
front-end only ever round-trips ciphertext and the broker stays stateless.

The same key signs refresh tickets: long-lived tokens naming one realm, handed to the
front-end with a successful callback and required to refresh or disconnect that realm
while its tokens stay on the server. A distinct audience keeps the two apart.
"""
import base64
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from token_broker.errors import InvalidState

logger = logging.getLogger(__name__)

STATE_AUDIENCE = "token-broker/state"
TICKET_AUDIENCE = "token-broker/refresh"
_ALGORITHM = "HS256"
_HKDF_INFO = b"token-broker pkce verifier"


@dataclass(frozen=True)
class StateClaims:
    nonce: str
    issued_at: int
    expires_at: int
    metadata: dict[str, Any]
    code_verifier: str | None = field(default=None, repr=False)


def _derive_fernet(signing_key: str) -> Fernet:
    raw = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_HKDF_INFO,
    ).derive(signing_key.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(raw))


class StateSigner:
    def __init__(self, signing_key: str, ttl_seconds: int = 300, ticket_ttl_seconds: int = 8640000):
        self._key = signing_key
        self._fernet = _derive_fernet(signing_key)
        self.ttl_seconds = ttl_seconds
        self.ticket_ttl_seconds = ticket_ttl_seconds

    def issue(
        self,
        metadata: dict[str, Any] | None = None,
        *,
        code_verifier: str | None = None,
        now: float | None = None,
    ) -> str:
        """Return an opaque state string binding metadata (and PKCE verifier) to this flow."""
        issued_at = int(now if now is not None else time.time())
        payload: dict[str, Any] = {
            "jti": secrets.token_urlsafe(32),
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
            "aud": STATE_AUDIENCE,
            "meta": dict(metadata or {}),
        }
        if code_verifier:
            payload["pkce"] = self._fernet.encrypt(code_verifier.encode("ascii")).decode("ascii")
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> StateClaims:
        """
        Verify signature, audience and expiry. Raises InvalidState on any failure;
        the reason is logged, never returned to the caller.
        """
        if not token or not isinstance(token, str):
            raise InvalidState("empty state")
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                audience=STATE_AUDIENCE,
                options={"require": ["exp", "iat", "jti", "aud"]},
                leeway=0,
            )
        except jwt.ExpiredSignatureError:
            logger.info("state rejected: expired")
            raise InvalidState("state expired")
        except jwt.InvalidTokenError as e:
            logger.info("state rejected: %s", type(e).__name__)
            raise InvalidState("state verification failed")

        meta = payload.get("meta", {})
        if not isinstance(meta, dict) or not isinstance(payload["jti"], str):
            raise InvalidState("state claims malformed")

        code_verifier = None
        if payload.get("pkce"):
            try:
                code_verifier = self._fernet.decrypt(str(payload["pkce"]).encode("ascii")).decode("ascii")
            except (InvalidToken, UnicodeError):
                logger.info("state rejected: pkce binding unreadable")
                raise InvalidState("state pkce binding invalid")

        return StateClaims(
            nonce=payload["jti"],
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            metadata=meta,
            code_verifier=code_verifier,
        )

    def issue_ticket(self, realm_id: str | None, *, now: float | None = None) -> str:
        """Refresh ticket for realm_id (None is the default realm)."""
        issued_at = int(now if now is not None else time.time())
        payload = {
            "jti": secrets.token_urlsafe(16),
            "iat": issued_at,
            "exp": issued_at + self.ticket_ttl_seconds,
            "aud": TICKET_AUDIENCE,
            "realm": realm_id,
        }
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM)

    def verify_ticket(self, token: str) -> str | None:
        """Return the realm the ticket was issued for. Raises InvalidState."""
        if not token or not isinstance(token, str):
            raise InvalidState("empty refresh ticket")
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                audience=TICKET_AUDIENCE,
                options={"require": ["exp", "iat", "aud"]},
                leeway=0,
            )
        except jwt.ExpiredSignatureError:
            logger.info("refresh ticket rejected: expired")
            raise InvalidState("refresh ticket expired")
        except jwt.InvalidTokenError as e:
            logger.info("refresh ticket rejected: %s", type(e).__name__)
            raise InvalidState("refresh ticket verification failed")
        realm_id = payload.get("realm")
        if realm_id is not None and not isinstance(realm_id, str):
            raise InvalidState("refresh ticket claims malformed")
        return realm_id
