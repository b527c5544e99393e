"""
Sentinel Gate Error Taxonomy

Every failure class maps to a degradation, never to a harder failure than
"treat the missing signal as absent".
"""


class GateError(Exception):
    """Base class for gate errors."""
    pass


class ConfigurationMissingError(GateError):
    """Raised when an optional dependency (store endpoint, secret) is not configured."""
    pass


class TokenInvalidError(GateError):
    """
    Raised for any token rejection.

    The message is always the same so callers cannot be used as an
    oracle for forgery attempts.
    """

    def __init__(self) -> None:
        super().__init__("invalid token")


class UpstreamTimeoutError(GateError):
    """Raised when a remote lookup exceeds its time budget."""
    pass


class MalformedInputError(GateError):
    """Raised when a request body or client address cannot be parsed."""
    pass
