"""Error and warning types raised across the chat engine."""


class ChatLoomError(Exception):
    """Base class for every ChatLoom error"""


class ChunkOverflow(UserWarning):
    """A single unit of input could not fit the token budget and was emitted oversized."""

    def __init__(self, tokens: int, budget: int):
        self.tokens = tokens
        self.budget = budget
        super().__init__(
            f"Chunk of {tokens} tokens exceeds the budget of {budget} tokens."
        )


class StreamProtocolViolation(UserWarning):
    """A stream fragment arrived after its transaction was already closed."""


class ModelUnavailable(ChatLoomError):
    def __init__(self, default: str, fallback: str):
        self.attempted = (default, fallback)
        super().__init__(
            f"Neither the default model '{default}' nor the fallback model "
            f"'{fallback}' is accessible with this account."
        )


class CatalogFetchFailed(ChatLoomError):
    """The model catalog could not be fetched, or came back empty."""


class TransportError(ChatLoomError):
    """
    Raised when a dispatch fails.\n
    Carries the HTTP status (if any), the number of attempts and the elapsed retry time.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        attempts: int = 1,
        elapsed: float = 0.0,
    ):
        self.status = status
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(message)

    def __str__(self) -> str:
        details = [f"attempts: {self.attempts}", f"elapsed: {self.elapsed:.1f}s"]
        if self.status is not None:
            details.insert(0, f"status: {self.status}")
        return f"{self.args[0]} ({', '.join(details)})"


class TransportTransient(TransportError):
    """Timeouts, connection drops, 5xx and rate limits. Retried until the ceiling."""


class TransportFatal(TransportError):
    """Auth, quota and malformed-request failures. Never retried."""


class DispatchCancelled(ChatLoomError):
    """The cancellation token was set before the dispatch completed."""


class DispatchInFlight(ChatLoomError):
    """A session already has a dispatch running."""


class PersistenceCorrupt(ChatLoomError):
    """A session file exists but cannot be decoded into a session."""
