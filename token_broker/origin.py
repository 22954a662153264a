"""
Origin Guard: allow-lists the single front-end origin and produces CORS headers.
Origin is client-supplied; this is a fast-path filter, not proof of legitimacy.
"""
from enum import Enum
from urllib.parse import urlsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}
PREFLIGHT_MAX_AGE = 600


class OriginDecision(str, Enum):
    ALLOWED = "allowed"
    REJECTED = "rejected"


def normalize_origin(value: str | None) -> str | None:
    """scheme://host[:port] lowercased, default port dropped. None if not an origin."""
    if not value:
        return None
    value = value.strip().rstrip("/")
    if value.lower() == "null":
        return None
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    if parts.path or parts.query or parts.fragment or parts.username or parts.password:
        return None
    host = parts.hostname.lower()
    if port is None or port == _DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class OriginGuard:
    def __init__(self, allowed_origin: str):
        normalized = normalize_origin(allowed_origin)
        if normalized is None:
            raise ValueError("allowed_origin is not a valid origin")
        # Browsers compare Access-Control-Allow-Origin byte for byte with the serialized origin
        self.allowed_origin = normalized

    def authorize(self, request_origin: str | None) -> OriginDecision:
        if normalize_origin(request_origin) == self.allowed_origin:
            return OriginDecision.ALLOWED
        return OriginDecision.REJECTED

    def cors_headers(self) -> dict[str, str]:
        """Headers for actual responses to the allowed origin. Never a wildcard."""
        return {
            "Access-Control-Allow-Origin": self.allowed_origin,
            "Access-Control-Allow-Methods": "POST",
            "Vary": "Origin",
        }

    def preflight_headers(self) -> dict[str, str]:
        headers = self.cors_headers()
        headers["Access-Control-Allow-Headers"] = "Content-Type"
        headers["Access-Control-Max-Age"] = str(PREFLIGHT_MAX_AGE)
        return headers
