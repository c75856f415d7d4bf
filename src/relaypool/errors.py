class RelayPoolError(Exception):
    """Base class for every error raised by relaypool."""


class ConfigurationError(RelayPoolError):
    """No usable keys (or an unusable setting) at load or reload time."""


class NoAvailableKeysError(RelayPoolError):
    """Every key in the pool is cooling down."""

    def __init__(self, message: str = "No active API keys available"):
        super().__init__(message)


class UpstreamTransportError(RelayPoolError):
    """The upstream could not be reached or the connection broke mid-request."""


class RateLimitedError(RelayPoolError):
    """Raised inside the forwarder when the upstream answers 429 for a key.

    Carries the offending entry and the still-open reply so the caller can
    either retry on another key or hand the 429 back unchanged.
    """

    def __init__(self, entry, reply):
        super().__init__("upstream returned 429")
        self.entry = entry
        self.reply = reply


class BalanceCheckError(RelayPoolError):
    def __init__(self, message: str, index: int | None = None):
        super().__init__(message)
        self.index = index
