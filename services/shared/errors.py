"""Exception hierarchy shared by the pipeline and the answer engine."""

from typing import Optional


class DocSageError(Exception):
    """Base class for all DocSage errors."""
    pass


class TransientExternalError(DocSageError):
    """An external service (embedding, generation, vector index, web) failed.

    Never retried automatically; callers record the failure and move on.
    """

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.service = service


class ExternalTimeoutError(TransientExternalError):
    """An external call exceeded its timeout."""
    pass


class FetchError(TransientExternalError):
    """A page could not be fetched by any available method."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Failed to fetch {url}: {message}", service="fetcher")
        self.url = url


class ValidationError(DocSageError):
    """Caller supplied invalid input (empty query, malformed URL, bad parameter)."""
    pass


class DimensionMismatchError(DocSageError):
    """An embedding vector does not have the index dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected embedding of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class NotFoundError(DocSageError):
    """A referenced document, chunk, conversation or message does not exist."""

    def __init__(self, kind: str, identifier):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class DuplicateDocumentError(DocSageError):
    """A document with the same URL is already stored."""

    def __init__(self, url: str):
        super().__init__(f"Document already exists for URL: {url}")
        self.url = url


class ConfigurationError(DocSageError):
    """A component was selected without the settings it needs."""
    pass


SAFE_ERROR_MESSAGE = (
    "I apologize, but I encountered an error processing your question. Please try again."
)


class AnswerError(DocSageError):
    """The answer engine could not produce an answer.

    ``user_message`` is safe to show to end users; the exception message and
    its ``__cause__`` carry the details for logs.
    """

    def __init__(self, message: str, user_message: str = SAFE_ERROR_MESSAGE):
        super().__init__(message)
        self.user_message = user_message
