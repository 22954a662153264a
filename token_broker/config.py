"""
Token broker configuration. Secrets (client secret, state signing key) come from a
Secret Source, never from literals in code. Resolved once into a frozen BrokerConfig
and passed explicitly to every component.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol
from urllib.parse import urlsplit

from token_broker.errors import ConfigError

TOKEN_AUTH_METHODS = {"client_secret_basic", "client_secret_post"}
REPLAY_BACKENDS = {"database", "memory"}
TOKEN_DELIVERY_MODES = {"server", "browser"}

# HS256 key should be at least as long as the hash output
MIN_SIGNING_KEY_LENGTH = 32
# Authorization codes live for minutes; a slower exchange is treated as failed
MAX_EXCHANGE_TIMEOUT_SECONDS = 10


class SecretSource(Protocol):
    def get(self, name: str) -> str | None: ...


class EnvSecretSource:
    """
    Read BROKER_<NAME> from the environment. BROKER_<NAME>_FILE points at a file holding
    the value (mounted secrets); the direct variable wins when both are set.
    """

    def __init__(self, prefix: str = "BROKER_", environ: Mapping[str, str] | None = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> str | None:
        key = f"{self.prefix}{name.upper()}"
        value = self._environ.get(key)
        if value is not None:
            return value
        path = self._environ.get(f"{key}_FILE")
        if path:
            try:
                return Path(path).read_text(encoding="utf-8").strip()
            except OSError as e:
                raise ConfigError(f"Cannot read {key}_FILE: {e.strerror}") from e
        return None


class MappingSecretSource:
    """Secret Source over a plain dict (tests, embedding)."""

    def __init__(self, values: Mapping[str, str]):
        self._values = {k.lower(): v for k, v in values.items()}

    def get(self, name: str) -> str | None:
        return self._values.get(name.lower())


@dataclass(frozen=True)
class BrokerConfig:
    client_id: str
    client_secret: str = field(repr=False)
    state_signing_key: str = field(repr=False)
    allowed_origin: str
    redirect_uri: str
    token_endpoint: str
    authorize_endpoint: str = ""
    scope: str = ""
    use_pkce: bool = True
    token_auth_method: str = "client_secret_basic"
    # Name of the tenant hint sent to the token endpoint; empty = not sent
    tenant_param: str = "realmId"
    state_ttl_seconds: int = 300
    # Must cover the provider's authorization code lifetime
    replay_ttl_seconds: int = 600
    # Lifetime of the refresh ticket returned with a server-held connection
    refresh_ticket_ttl_seconds: int = 8640000
    exchange_timeout_seconds: float = 5.0
    replay_backend: str = "database"
    database_url: str = "sqlite:///./token_broker.db"
    token_delivery: str = "server"
    rate_limit_per_minute: int = 30

    def __post_init__(self):
        if len(self.state_signing_key) < MIN_SIGNING_KEY_LENGTH:
            raise ConfigError(f"state_signing_key must be at least {MIN_SIGNING_KEY_LENGTH} characters")
        if self.allowed_origin.strip() == "*" or "*" in self.allowed_origin:
            raise ConfigError("allowed_origin must be a single explicit origin; wildcards are not permitted")
        parts = urlsplit(self.allowed_origin)
        if parts.scheme not in ("http", "https") or not parts.hostname or parts.path not in ("", "/"):
            raise ConfigError("allowed_origin must look like scheme://host[:port]")
        if self.token_auth_method not in TOKEN_AUTH_METHODS:
            raise ConfigError(f"token_auth_method must be one of {sorted(TOKEN_AUTH_METHODS)}")
        if self.replay_backend not in REPLAY_BACKENDS:
            raise ConfigError(f"replay_backend must be one of {sorted(REPLAY_BACKENDS)}")
        if self.token_delivery not in TOKEN_DELIVERY_MODES:
            raise ConfigError(f"token_delivery must be one of {sorted(TOKEN_DELIVERY_MODES)}")
        if self.state_ttl_seconds <= 0 or self.replay_ttl_seconds <= 0 or self.refresh_ticket_ttl_seconds <= 0:
            raise ConfigError("TTL values must be positive")
        # A nonce record must outlive every state that can still carry it
        if self.replay_ttl_seconds < self.state_ttl_seconds:
            raise ConfigError("replay_ttl_seconds must be at least state_ttl_seconds")
        if not 0 < self.exchange_timeout_seconds < MAX_EXCHANGE_TIMEOUT_SECONDS:
            raise ConfigError(f"exchange_timeout_seconds must be between 0 and {MAX_EXCHANGE_TIMEOUT_SECONDS}")

    @property
    def deliver_tokens_to_browser(self) -> bool:
        return self.token_delivery == "browser"


_REQUIRED = (
    "client_id",
    "client_secret",
    "state_signing_key",
    "allowed_origin",
    "redirect_uri",
    "token_endpoint",
)


def _as_bool(name: str, value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_number(name: str, value: str, kind=int):
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def load_config(source: SecretSource | None = None) -> BrokerConfig:
    """Resolve a BrokerConfig from the Secret Source (environment by default)."""
    source = source if source is not None else EnvSecretSource()
    values: dict = {}
    missing = []
    for name in _REQUIRED:
        v = source.get(name)
        if not v:
            missing.append(name)
        else:
            values[name] = v
    if missing:
        raise ConfigError("Missing required configuration: " + ", ".join(missing))

    values["allowed_origin"] = values["allowed_origin"].rstrip("/")

    for name in ("authorize_endpoint", "scope", "token_auth_method", "replay_backend", "database_url", "token_delivery"):
        v = source.get(name)
        if v is not None:
            values[name] = v.strip()
    tenant_param = source.get("tenant_param")
    if tenant_param is not None:
        values["tenant_param"] = tenant_param.strip()

    use_pkce = source.get("use_pkce")
    if use_pkce is not None:
        values["use_pkce"] = _as_bool("use_pkce", use_pkce)
    for name in ("state_ttl_seconds", "replay_ttl_seconds", "refresh_ticket_ttl_seconds", "rate_limit_per_minute"):
        v = source.get(name)
        if v is not None:
            values[name] = _as_number(name, v)
    timeout = source.get("exchange_timeout_seconds")
    if timeout is not None:
        values["exchange_timeout_seconds"] = _as_number("exchange_timeout_seconds", timeout, float)

    return BrokerConfig(**values)
