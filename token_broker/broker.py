"""
Broker orchestration. Per request:
Received -> OriginChecked -> StateValidated -> ReplayChecked -> Exchanged -> Responded,
with Failed(kind) reachable from any state. No step is retried here; the front-end
restarts the whole authorization flow.

Replay policy: the state nonce and the code are reserved atomically *before* the
upstream call, so two racing requests cannot both reach the provider. A failed
exchange keeps the reservation whenever the code may have reached the provider
(any HTTP response, timeout, transport error), which blocks client-side retry
storms. Only when the connection could not be opened at all is the code key
released; the state nonce stays consumed either way.

With server-held tokens a successful callback also returns a refresh ticket. Refresh
and disconnect require it; the Origin header alone authorizes nothing.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from token_broker.audit import (
    EVENT_CALLBACK_FAIL,
    EVENT_CALLBACK_OK,
    EVENT_DISCONNECT_FAIL,
    EVENT_DISCONNECT_OK,
    EVENT_PERSIST_FAIL,
    EVENT_REFRESH_FAIL,
    EVENT_REFRESH_OK,
    OUTCOME_FAIL,
    AuditTrail,
)
from token_broker.config import BrokerConfig
from token_broker.database import init_db, make_engine, make_session_factory
from token_broker.errors import (
    BrokerError,
    InvalidOrigin,
    InvalidState,
    MalformedRequest,
    NotConnected,
    PersistenceError,
    RateLimited,
    ReplayDetected,
    UpstreamError,
)
from token_broker.exchange import TokenExchangeClient, TokenSet, fingerprint
from token_broker.origin import OriginDecision, OriginGuard
from token_broker.pkce import build_authorize_url, generate_pkce
from token_broker.rate_limit import RateLimiter
from token_broker.replay import MemoryReplayGuard, ReplayGuard, Reservation, SqlReplayGuard, code_key, state_key
from token_broker.response import assemble
from token_broker.state import StateSigner
from token_broker.token_store import TokenStore

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 4096
MAX_REALM_LENGTH = 255
MAX_METADATA_BYTES = 1024


class BrokerState(str, Enum):
    RECEIVED = "Received"
    ORIGIN_CHECKED = "OriginChecked"
    STATE_VALIDATED = "StateValidated"
    REPLAY_CHECKED = "ReplayChecked"
    EXCHANGED = "Exchanged"
    RESPONDED = "Responded"
    FAILED = "Failed"


@dataclass(frozen=True)
class AuthorizationCallback:
    code: str = field(repr=False)
    state: str = field(repr=False)
    realm_id: str | None = None


@dataclass
class Outcome:
    state: BrokerState = BrokerState.RECEIVED
    realm_id: str | None = None
    token_set: TokenSet | None = None
    error: BrokerError | None = None
    origin_allowed: bool = False
    success_status: str = "connected"
    # Server delivery: proof the front-end may later refresh or disconnect this realm
    refresh_ticket: str | None = field(default=None, repr=False)
    # Values that must never be echoed back, even inside a provider's error description
    redact: tuple = field(default=(), repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failure_kind(self) -> str | None:
        return self.error.kind.value if self.error is not None else None

    def advance(self, state: BrokerState) -> None:
        logger.debug("broker transition %s -> %s", self.state.value, state.value)
        self.state = state

    def fail(self, error: BrokerError) -> None:
        logger.debug("broker transition %s -> Failed(%s)", self.state.value, error.kind.value)
        self.error = error
        self.state = BrokerState.FAILED


def _string_field(fields: Mapping[str, Any], *names: str, required: bool, max_length: int) -> str | None:
    for name in names:
        value = fields.get(name)
        if value is None or value == "":
            continue
        if not isinstance(value, str) or len(value) > max_length:
            raise MalformedRequest(f"field {name} invalid")
        return value
    if required:
        raise MalformedRequest(f"missing field {names[0]}")
    return None


def parse_callback(fields: Mapping[str, Any] | None) -> AuthorizationCallback:
    """Exactly code, state and an optional realmId (alias realm_id)."""
    if fields is None:
        raise MalformedRequest("body is not a JSON object or form")
    return AuthorizationCallback(
        code=_string_field(fields, "code", required=True, max_length=MAX_FIELD_LENGTH),
        state=_string_field(fields, "state", required=True, max_length=MAX_FIELD_LENGTH),
        realm_id=_string_field(fields, "realmId", "realm_id", required=False, max_length=MAX_REALM_LENGTH),
    )


class Broker:
    def __init__(
        self,
        config: BrokerConfig,
        *,
        state_signer: StateSigner,
        origin_guard: OriginGuard,
        replay_guard: ReplayGuard,
        exchange_client: TokenExchangeClient,
        token_store: TokenStore,
        audit: AuditTrail,
        rate_limiter: RateLimiter | None = None,
    ):
        self.config = config
        self.state_signer = state_signer
        self.origin_guard = origin_guard
        self.replay_guard = replay_guard
        self.exchange_client = exchange_client
        self.token_store = token_store
        self.audit = audit
        self.rate_limiter = rate_limiter

    @classmethod
    def from_config(cls, config: BrokerConfig, session_factory: sessionmaker | None = None) -> "Broker":
        """Wire every component from one resolved config."""
        if session_factory is None:
            engine = make_engine(config.database_url)
            init_db(engine)
            session_factory = make_session_factory(engine)
        if config.replay_backend == "memory":
            replay_guard = MemoryReplayGuard(ttl_seconds=config.replay_ttl_seconds)
        else:
            replay_guard = SqlReplayGuard(session_factory, ttl_seconds=config.replay_ttl_seconds)
        return cls(
            config,
            state_signer=StateSigner(
                config.state_signing_key,
                ttl_seconds=config.state_ttl_seconds,
                ticket_ttl_seconds=config.refresh_ticket_ttl_seconds,
            ),
            origin_guard=OriginGuard(config.allowed_origin),
            replay_guard=replay_guard,
            exchange_client=TokenExchangeClient(config),
            token_store=TokenStore(session_factory),
            audit=AuditTrail(session_factory),
            rate_limiter=RateLimiter(config.rate_limit_per_minute),
        )

    @property
    def persists_tokens(self) -> bool:
        return not self.config.deliver_tokens_to_browser

    def _check_rate(self, client_ip: str | None) -> None:
        if self.rate_limiter is None or not client_ip:
            return
        allowed, retry_after = self.rate_limiter.check_and_consume(client_ip)
        if not allowed:
            raise RateLimited(retry_after or 1, detail=f"rate limited ip={client_ip}")

    def _check_origin(self, origin: str | None, outcome: Outcome | None = None) -> None:
        if self.origin_guard.authorize(origin) is not OriginDecision.ALLOWED:
            raise InvalidOrigin(f"origin={origin!r}")
        if outcome is not None:
            outcome.origin_allowed = True
            outcome.advance(BrokerState.ORIGIN_CHECKED)

    def start(self, origin: str | None, metadata: Any, *, client_ip: str | None = None) -> dict:
        """
        Begin a flow: sign a fresh state (binding a new PKCE verifier when enabled) and
        build the provider authorize URL. metadata is None when the body was unreadable.
        Raises BrokerError.
        """
        if not self.config.authorize_endpoint:
            raise RuntimeError("authorize_endpoint is not configured")
        self._check_origin(origin)
        self._check_rate(client_ip)
        if not isinstance(metadata, dict):
            raise MalformedRequest("metadata must be a JSON object")
        if len(json.dumps(metadata, separators=(",", ":"))) > MAX_METADATA_BYTES:
            raise MalformedRequest("metadata too large")

        pair = generate_pkce() if self.config.use_pkce else None
        state = self.state_signer.issue(metadata, code_verifier=pair.code_verifier if pair else None)
        url = build_authorize_url(
            authorize_endpoint=self.config.authorize_endpoint,
            client_id=self.config.client_id,
            redirect_uri=self.config.redirect_uri,
            scope=self.config.scope,
            state=state,
            code_challenge=pair.code_challenge if pair else None,
        )
        return {"authorize_url": url, "state": state}

    def _fail(self, outcome: Outcome, error: BrokerError, event_type: str, client_ip: str | None) -> Outcome:
        outcome.fail(error)
        if not isinstance(error, RateLimited):
            logger.warning("%s: kind=%s reason=%s", event_type, error.kind.value, error.detail)
            self.audit.record(
                event_type,
                realm_id=outcome.realm_id,
                ip=client_ip,
                outcome=OUTCOME_FAIL,
                error_kind=error.kind.value,
            )
        return outcome

    def handle_callback(
        self,
        origin: str | None,
        fields: Mapping[str, Any] | None,
        *,
        client_ip: str | None = None,
    ) -> Outcome:
        outcome = Outcome()
        try:
            self._check_origin(origin, outcome)
            self._check_rate(client_ip)
            self._run_callback(outcome, fields)
        except BrokerError as e:
            return self._fail(outcome, e, EVENT_CALLBACK_FAIL, client_ip)
        logger.info("callback exchanged: realm=%s expires_in=%s", outcome.realm_id, outcome.token_set.expires_in)
        self.audit.record(EVENT_CALLBACK_OK, realm_id=outcome.realm_id, ip=client_ip)
        return outcome

    def _reserve(self, key: str) -> Reservation:
        try:
            return self.replay_guard.check_and_reserve(key)
        except SQLAlchemyError as e:
            raise BrokerError(f"replay store unavailable: {type(e).__name__}") from e

    def _run_callback(self, outcome: Outcome, fields: Mapping[str, Any] | None) -> None:
        callback = parse_callback(fields)
        outcome.realm_id = callback.realm_id

        claims = self.state_signer.verify(callback.state)
        if self.config.use_pkce and not claims.code_verifier:
            raise InvalidState("state carries no PKCE binding")
        outcome.advance(BrokerState.STATE_VALIDATED)

        ckey = code_key(callback.code)
        if self._reserve(state_key(claims.nonce)) is Reservation.ALREADY_CONSUMED:
            raise ReplayDetected("state nonce already consumed")
        if self._reserve(ckey) is Reservation.ALREADY_CONSUMED:
            raise ReplayDetected(f"code {fingerprint(callback.code)} already consumed")
        outcome.advance(BrokerState.REPLAY_CHECKED)

        outcome.redact = (self.config.client_secret, callback.code, claims.code_verifier)
        try:
            token_set = self.exchange_client.exchange_code(
                callback.code,
                redirect_uri=self.config.redirect_uri,
                code_verifier=claims.code_verifier,
                realm_id=callback.realm_id,
            )
        except UpstreamError as e:
            if not e.relayed:
                try:
                    self.replay_guard.release(ckey)
                except SQLAlchemyError as db_error:
                    logger.warning(
                        "code %s stays reserved: release failed (%s)",
                        fingerprint(callback.code),
                        type(db_error).__name__,
                    )
                else:
                    logger.info("code %s released: request never reached the provider", fingerprint(callback.code))
            raise
        outcome.token_set = token_set
        if self.persists_tokens:
            outcome.refresh_ticket = self.state_signer.issue_ticket(outcome.realm_id)
        outcome.advance(BrokerState.EXCHANGED)

    def _ticket_realm(self, fields: Mapping[str, Any]) -> str | None:
        """Realm named by a valid refresh ticket; a realmId in the body must agree with it."""
        ticket = _string_field(fields, "refresh_ticket", required=True, max_length=MAX_FIELD_LENGTH)
        realm_id = self.state_signer.verify_ticket(ticket)
        claimed = _string_field(fields, "realmId", "realm_id", required=False, max_length=MAX_REALM_LENGTH)
        if claimed is not None and claimed != realm_id:
            raise InvalidState("refresh ticket issued for another realm")
        return realm_id

    def handle_refresh(
        self,
        origin: str | None,
        fields: Mapping[str, Any] | None,
        *,
        client_ip: str | None = None,
    ) -> Outcome:
        """
        refresh_token grant through the same exchange client. Browser delivery sends the
        refresh token itself; server delivery sends the refresh ticket from the callback
        and the stored refresh token is used.
        """
        outcome = Outcome(success_status="refreshed")
        try:
            self._check_origin(origin, outcome)
            self._check_rate(client_ip)
            if fields is None:
                raise MalformedRequest("body is not a JSON object or form")
            if self.config.deliver_tokens_to_browser:
                outcome.realm_id = _string_field(
                    fields, "realmId", "realm_id", required=False, max_length=MAX_REALM_LENGTH
                )
                refresh_token = _string_field(fields, "refresh_token", required=True, max_length=MAX_FIELD_LENGTH)
            else:
                outcome.realm_id = self._ticket_realm(fields)
                stored = self._stored(outcome.realm_id)
                if stored is None or not stored.refresh_token:
                    raise NotConnected(f"no refresh token for realm={outcome.realm_id!r}")
                refresh_token = stored.refresh_token
            outcome.redact = (self.config.client_secret, refresh_token)
            outcome.token_set = self.exchange_client.refresh(refresh_token)
            if self.persists_tokens:
                outcome.refresh_ticket = self.state_signer.issue_ticket(outcome.realm_id)
            outcome.advance(BrokerState.EXCHANGED)
        except BrokerError as e:
            return self._fail(outcome, e, EVENT_REFRESH_FAIL, client_ip)
        logger.info("refresh succeeded: realm=%s", outcome.realm_id)
        self.audit.record(EVENT_REFRESH_OK, realm_id=outcome.realm_id, ip=client_ip)
        return outcome

    def handle_disconnect(
        self,
        origin: str | None,
        fields: Mapping[str, Any] | None,
        *,
        client_ip: str | None = None,
    ) -> Outcome:
        """Forget the server-held token set for the realm named by a refresh ticket."""
        outcome = Outcome(success_status="disconnected")
        try:
            self._check_origin(origin, outcome)
            self._check_rate(client_ip)
            if fields is None:
                raise MalformedRequest("body is not a JSON object or form")
            if not self.persists_tokens:
                raise NotConnected("tokens are held by the browser")
            outcome.realm_id = self._ticket_realm(fields)
            try:
                removed = self.token_store.delete(outcome.realm_id)
            except SQLAlchemyError as e:
                raise PersistenceError(type(e).__name__) from e
            if not removed:
                raise NotConnected(f"no tokens for realm={outcome.realm_id!r}")
        except BrokerError as e:
            return self._fail(outcome, e, EVENT_DISCONNECT_FAIL, client_ip)
        logger.info("realm disconnected: realm=%s", outcome.realm_id)
        self.audit.record(EVENT_DISCONNECT_OK, realm_id=outcome.realm_id, ip=client_ip)
        return outcome

    def _stored(self, realm_id: str | None):
        try:
            return self.token_store.get(realm_id)
        except SQLAlchemyError as e:
            raise BrokerError(f"token store unavailable: {type(e).__name__}") from e

    def respond(self, outcome: Outcome):
        """Exchanged -> Responded. Assembly never changes the outcome."""
        response = assemble(
            outcome,
            cors_headers=self.origin_guard.cors_headers() if outcome.origin_allowed else None,
            deliver_tokens=self.config.deliver_tokens_to_browser,
            redact=outcome.redact,
        )
        if outcome.ok:
            outcome.advance(BrokerState.RESPONDED)
        return response

    def persist(self, outcome: Outcome) -> bool:
        """
        Best-effort side effect after the response: store the token set under its realm.
        A failure is logged and audited as PersistenceError; it never rolls back the
        successful exchange already reported to the front-end.
        """
        if not outcome.ok or outcome.token_set is None:
            return False
        try:
            self.token_store.save(outcome.realm_id, outcome.token_set)
        except SQLAlchemyError as e:
            err = PersistenceError(type(e).__name__)
            logger.error("token persistence failed: realm=%s kind=%s", outcome.realm_id, err.kind.value)
            self.audit.record(
                EVENT_PERSIST_FAIL,
                realm_id=outcome.realm_id,
                outcome=OUTCOME_FAIL,
                error_kind=err.kind.value,
            )
            return False
        logger.info("token set persisted: realm=%s", outcome.realm_id)
        return True
