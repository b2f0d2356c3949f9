"""Custom exception types for mailpilot.

Error messages should say what failed, where, why, and how to fix it
when there is an actionable fix (e.g. a config field to change).

Categories used by the triage loop and the chat handler:
- Transient provider errors (MailProviderError, ChatTransportError,
  CompletionError, EmbeddingError): abandon the current step, keep running
- Data integrity errors (InteractionStateError): discard the interaction
- Configuration errors: fatal at startup, non-fatal on hot-reload
"""


class MailpilotError(Exception):
    """Base exception for all mailpilot errors."""

    pass


class ConfigValidationError(MailpilotError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailpilotError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailpilotError):
    """Raised when MSAL device code flow fails or tokens cannot be acquired."""

    pass


class MailProviderError(MailpilotError):
    """Raised when the mailbox provider rejects or fails a request.

    Attributes:
        status_code: HTTP status code from the provider (if any)
        error_code: Provider-specific error code (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ChatTransportError(MailpilotError):
    """Raised when a chat message cannot be delivered to the operator."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CompletionError(MailpilotError):
    """Raised when a language model call fails after all retries.

    Attributes:
        attempts: Number of attempts made (first call + retries)
        last_seed: Seed used on the final attempt
    """

    def __init__(self, message: str, attempts: int = 0, last_seed: int | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_seed = last_seed


class EmbeddingError(MailpilotError):
    """Raised when an embedding cannot be computed for a single email.

    The similarity engine treats this as "no match" for that candidate.
    """

    pass


class InteractionStateError(MailpilotError):
    """Raised when a pending interaction is missing data it needs to proceed.

    Attributes:
        operator_id: Operator whose interaction is corrupt
    """

    def __init__(self, message: str, operator_id: str | None = None):
        super().__init__(message)
        self.operator_id = operator_id


class DatabaseError(MailpilotError):
    """Raised when SQLite operations fail."""

    pass


class NormalizationError(MailpilotError):
    """Raised when quoted-reply stripping fails for a message body.

    Never escapes the normalizer: the original body is kept instead.

    Attributes:
        email_id: Message whose body could not be cleaned
    """

    def __init__(self, message: str, email_id: str | None = None):
        super().__init__(message)
        self.email_id = email_id
