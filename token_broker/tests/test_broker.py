"""Tests for broker orchestration with a spy in place of the exchange client."""
import dataclasses
import time
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from token_broker.broker import Broker, BrokerState, parse_callback
from token_broker.errors import ErrorKind, MalformedRequest, UpstreamError
from token_broker.exchange import TokenExchangeClient, TokenSet
from token_broker.pkce import generate_pkce
from token_broker.rate_limit import RateLimiter

from conftest import ORIGIN, audit_events

TOKENS = {"access_token": "A", "refresh_token": "R", "expires_in": 3600}


@pytest.fixture
def spy(broker):
    exchange = MagicMock(spec=TokenExchangeClient)
    exchange.exchange_code.return_value = TokenSet.from_response(TOKENS)
    exchange.refresh.return_value = TokenSet.from_response(TOKENS)
    broker.exchange_client = exchange
    return exchange


def _state(broker, **kwargs):
    return broker.state_signer.issue({}, code_verifier=generate_pkce().code_verifier, **kwargs)


def test_happy_path_walks_every_state(broker, spy):
    state = _state(broker)
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": state, "realmId": "9130"})
    assert outcome.ok
    assert outcome.state is BrokerState.EXCHANGED
    assert outcome.realm_id == "9130"
    spy.exchange_code.assert_called_once()
    kwargs = spy.exchange_code.call_args.kwargs
    assert kwargs["redirect_uri"] == broker.config.redirect_uri
    assert kwargs["code_verifier"] == broker.state_signer.verify(state).code_verifier
    assert kwargs["realm_id"] == "9130"
    broker.respond(outcome)
    assert outcome.state is BrokerState.RESPONDED


@pytest.mark.parametrize("origin", [None, "https://evil.example", "null"])
def test_bad_origin_rejected_before_exchange(broker, spy, origin):
    outcome = broker.handle_callback(origin, {"code": "c1", "state": _state(broker)})
    assert outcome.state is BrokerState.FAILED
    assert outcome.failure_kind == ErrorKind.INVALID_ORIGIN.value
    assert not outcome.origin_allowed
    spy.exchange_code.assert_not_called()


def test_invalid_state_rejected_before_exchange(broker, spy):
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": "forged"})
    assert outcome.failure_kind == "InvalidState"
    spy.exchange_code.assert_not_called()


def test_expired_state_rejected(broker, spy):
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker, now=time.time() - 600)})
    assert outcome.failure_kind == "InvalidState"
    spy.exchange_code.assert_not_called()


def test_state_without_pkce_binding_rejected_when_pkce_enabled(broker, spy):
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": broker.state_signer.issue({})})
    assert outcome.failure_kind == "InvalidState"
    spy.exchange_code.assert_not_called()


def test_pkce_disabled_allows_plain_state(config, spy):
    broker = Broker.from_config(dataclasses.replace(config, use_pkce=False))
    broker.exchange_client = spy
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": broker.state_signer.issue({})})
    assert outcome.ok
    assert spy.exchange_code.call_args.kwargs["code_verifier"] is None


def test_second_attempt_is_replay_without_upstream_call(broker, spy):
    fields = {"code": "c1", "state": _state(broker)}
    assert broker.handle_callback(ORIGIN, fields).ok
    again = broker.handle_callback(ORIGIN, fields)
    assert again.failure_kind == "ReplayDetected"
    assert spy.exchange_code.call_count == 1


def test_same_code_with_fresh_state_is_replay(broker, spy):
    assert broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)}).ok
    again = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)})
    assert again.failure_kind == "ReplayDetected"
    assert spy.exchange_code.call_count == 1


def test_same_state_with_other_code_is_replay(broker, spy):
    state = _state(broker)
    assert broker.handle_callback(ORIGIN, {"code": "c1", "state": state}).ok
    again = broker.handle_callback(ORIGIN, {"code": "c2", "state": state})
    assert again.failure_kind == "ReplayDetected"
    assert spy.exchange_code.call_count == 1


def test_relayed_upstream_failure_keeps_code_consumed(broker, spy):
    spy.exchange_code.side_effect = UpstreamError("invalid_grant", relayed=True, http_status=400)
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)})
    assert outcome.failure_kind == "UpstreamError"
    spy.exchange_code.side_effect = None
    retry = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)})
    assert retry.failure_kind == "ReplayDetected"
    assert spy.exchange_code.call_count == 1


def test_unrelayed_upstream_failure_releases_code_not_state(broker, spy):
    spy.exchange_code.side_effect = UpstreamError(relayed=False)
    state = _state(broker)
    assert broker.handle_callback(ORIGIN, {"code": "c1", "state": state}).failure_kind == "UpstreamError"
    spy.exchange_code.side_effect = None
    # Same state is spent
    assert broker.handle_callback(ORIGIN, {"code": "c1", "state": state}).failure_kind == "ReplayDetected"
    # Fresh flow may still use the code the provider never saw
    assert broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)}).ok
    assert spy.exchange_code.call_count == 2


@pytest.mark.parametrize(
    "fields",
    [None, {}, {"code": "c1"}, {"state": "s"}, {"code": "", "state": "s"}, {"code": 12, "state": "s"}],
)
def test_malformed_callback(broker, spy, fields):
    outcome = broker.handle_callback(ORIGIN, fields)
    assert outcome.failure_kind == "MalformedRequest"
    assert outcome.origin_allowed
    spy.exchange_code.assert_not_called()


def test_parse_callback_realm_alias():
    assert parse_callback({"code": "c", "state": "s", "realm_id": "42"}).realm_id == "42"
    assert parse_callback({"code": "c", "state": "s"}).realm_id is None
    with pytest.raises(MalformedRequest):
        parse_callback({"code": "c" * 5000, "state": "s"})


def test_failures_and_successes_audited(broker, spy):
    broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker), "realmId": "9130"}, client_ip="10.0.0.1")
    broker.handle_callback("https://evil.example", {"code": "c2", "state": "x"}, client_ip="10.0.0.2")
    events = audit_events(broker)
    assert [e.event_type for e in events] == ["callback_fail", "callback_ok"]
    assert events[0].error_kind == "InvalidOrigin"
    assert events[1].realm_id == "9130"
    assert events[1].ip == "10.0.0.1"


def test_persist_stores_token_set(broker, spy):
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker), "realmId": "9130"})
    assert broker.persist(outcome) is True
    stored = broker.token_store.get("9130")
    assert stored.access_token == "A"
    assert stored.refresh_token == "R"


def test_persist_failure_does_not_raise(broker, spy, monkeypatch):
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker), "realmId": "9130"})

    def boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    monkeypatch.setattr(broker.token_store, "save", boom)
    assert broker.persist(outcome) is False
    assert outcome.ok
    assert audit_events(broker, "persist_fail")[0].error_kind == "PersistenceError"


def test_persist_skips_failed_outcome(broker, spy):
    outcome = broker.handle_callback("https://evil.example", {"code": "c1", "state": "s"})
    assert broker.persist(outcome) is False


def _connect(broker, realm_id="9130"):
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker), "realmId": realm_id})
    broker.persist(outcome)
    return outcome


def test_callback_hands_out_realm_bound_ticket(broker, spy):
    outcome = _connect(broker)
    assert outcome.refresh_ticket
    assert broker.state_signer.verify_ticket(outcome.refresh_ticket) == "9130"
    assert outcome.refresh_ticket not in repr(outcome)


def test_browser_delivery_has_no_ticket(config, spy):
    broker = Broker.from_config(dataclasses.replace(config, token_delivery="browser"))
    broker.exchange_client = spy
    assert broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)}).refresh_ticket is None


def test_refresh_uses_stored_refresh_token(broker, spy):
    ticket = _connect(broker).refresh_ticket
    refreshed = broker.handle_refresh(ORIGIN, {"refresh_ticket": ticket, "realmId": "9130"})
    assert refreshed.ok
    assert refreshed.success_status == "refreshed"
    assert refreshed.realm_id == "9130"
    assert refreshed.refresh_ticket
    spy.refresh.assert_called_once_with("R")


def test_refresh_with_origin_alone_never_reaches_provider(broker, spy):
    _connect(broker)
    outcome = broker.handle_refresh(ORIGIN, {"realmId": "9130"})
    assert outcome.failure_kind == "MalformedRequest"
    spy.refresh.assert_not_called()


@pytest.mark.parametrize("ticket", ["forged", "a.b.c"])
def test_refresh_rejects_forged_ticket(broker, spy, ticket):
    _connect(broker)
    outcome = broker.handle_refresh(ORIGIN, {"refresh_ticket": ticket})
    assert outcome.failure_kind == "InvalidState"
    spy.refresh.assert_not_called()


def test_refresh_rejects_state_token_as_ticket(broker, spy):
    _connect(broker)
    outcome = broker.handle_refresh(ORIGIN, {"refresh_ticket": _state(broker)})
    assert outcome.failure_kind == "InvalidState"
    spy.refresh.assert_not_called()


def test_refresh_ticket_for_other_realm_rejected(broker, spy):
    _connect(broker, "9130")
    other = broker.state_signer.issue_ticket("4242")
    outcome = broker.handle_refresh(ORIGIN, {"refresh_ticket": other, "realmId": "9130"})
    assert outcome.failure_kind == "InvalidState"
    spy.refresh.assert_not_called()


def test_refresh_expired_ticket_rejected(broker, spy):
    _connect(broker)
    ticket = broker.state_signer.issue_ticket("9130", now=time.time() - broker.state_signer.ticket_ttl_seconds - 1)
    assert broker.handle_refresh(ORIGIN, {"refresh_ticket": ticket}).failure_kind == "InvalidState"
    spy.refresh.assert_not_called()


def test_refresh_valid_ticket_without_stored_tokens(broker, spy):
    outcome = broker.handle_refresh(ORIGIN, {"refresh_ticket": broker.state_signer.issue_ticket("nope")})
    assert outcome.failure_kind == "NotConnected"
    spy.refresh.assert_not_called()


def test_refresh_rejects_bad_origin(broker, spy):
    ticket = _connect(broker).refresh_ticket
    outcome = broker.handle_refresh("https://evil.example", {"refresh_ticket": ticket})
    assert outcome.failure_kind == "InvalidOrigin"
    spy.refresh.assert_not_called()


def test_disconnect_forgets_tokens(broker, spy):
    ticket = _connect(broker).refresh_ticket
    outcome = broker.handle_disconnect(ORIGIN, {"refresh_ticket": ticket})
    assert outcome.ok
    assert outcome.success_status == "disconnected"
    assert broker.token_store.get("9130") is None
    assert broker.handle_disconnect(ORIGIN, {"refresh_ticket": ticket}).failure_kind == "NotConnected"
    assert [e.event_type for e in audit_events(broker)][:2] == ["disconnect_fail", "disconnect_ok"]


def test_disconnect_requires_ticket(broker, spy):
    _connect(broker)
    assert broker.handle_disconnect(ORIGIN, {"realmId": "9130"}).failure_kind == "MalformedRequest"
    assert broker.token_store.get("9130") is not None


def test_rate_limited_outcome_keeps_origin(broker, spy):
    broker.rate_limiter = RateLimiter(limit=1)
    broker.handle_callback(ORIGIN, {}, client_ip="10.0.0.9")
    outcome = broker.handle_callback(ORIGIN, {}, client_ip="10.0.0.9")
    assert outcome.failure_kind == "RateLimited"
    assert outcome.origin_allowed


def test_replay_store_failure_is_internal_error(broker, spy, monkeypatch):
    def boom(key):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(broker.replay_guard, "check_and_reserve", boom)
    outcome = broker.handle_callback(ORIGIN, {"code": "c1", "state": _state(broker)}, client_ip="10.0.0.3")
    assert outcome.failure_kind == "InternalError"
    assert outcome.origin_allowed
    spy.exchange_code.assert_not_called()
    assert audit_events(broker, "callback_fail")[0].error_kind == "InternalError"


def test_start_binds_pkce_verifier_to_state(broker):
    result = broker.start(ORIGIN, {"next": "/home"})
    claims = broker.state_signer.verify(result["state"])
    assert claims.metadata == {"next": "/home"}
    assert claims.code_verifier
    assert "code_challenge=" in result["authorize_url"]


@pytest.mark.parametrize("metadata", [None, ["x"], {"blob": "x" * 2000}])
def test_start_rejects_bad_metadata(broker, metadata):
    with pytest.raises(MalformedRequest):
        broker.start(ORIGIN, metadata)
