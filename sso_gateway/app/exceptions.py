"""
Exception taxonomy for the SSO Gateway.

- ConfigurationError: missing signing secret or IdP config, fatal at startup
- StateError: missing/expired pending login, reused or expired handoff ticket
- UpstreamError: IdP or product endpoint unreachable, timed out or non-2xx
- TokenError: internal token missing, malformed, expired or badly signed
"""

from enum import Enum
from typing import Optional


class BrokerError(Exception):
    """Base exception for gateway errors"""
    pass


class ConfigurationError(BrokerError):
    """Raised when the gateway cannot start with the given settings"""
    pass


class StateError(BrokerError):
    """Raised when one-time or session-bound state is missing, expired or reused"""
    pass


class UpstreamError(BrokerError):
    """
    Raised when a call across a process boundary fails.

    Attributes:
        upstream: Name of the failing peer ("idp", "product:<id>")
        status_code: HTTP status returned by the peer, if any
    """

    def __init__(self, message: str, upstream: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.upstream = upstream
        self.status_code = status_code


class TokenErrorKind(str, Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    SIGNATURE_INVALID = "signature_invalid"
    CLAIMS_INVALID = "claims_invalid"


class TokenError(BrokerError):
    """Raised by the token validator; always surfaced as a 401"""

    def __init__(self, kind: TokenErrorKind, message: Optional[str] = None):
        super().__init__(message or kind.value)
        self.kind = kind


__all__ = [
    "BrokerError",
    "ConfigurationError",
    "StateError",
    "UpstreamError",
    "TokenErrorKind",
    "TokenError",
]
