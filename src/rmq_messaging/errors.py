"""Exception hierarchy for the messaging layer.

Only configuration mistakes and an unreachable broker surface as exceptions.
Publish failures are reported through return values, see ``sender``.
"""


class MessagingError(Exception):
    """Base exception for messaging errors."""

    pass


class ConfigurationError(MessagingError):
    """Raised at construction time when connection details are unusable."""

    pass


class BrokerConnectionError(MessagingError):
    """Raised when no configured broker host accepts a connection."""

    def __init__(self, message: str, hostname: str | None = None):
        self.hostname = hostname
        super().__init__(message)
