"""Error taxonomy for the completion pipeline.

Every failure the pipeline can produce is a ``QuenchError`` subclass. The
completion service converts them into a uniform ``CompletionFailure`` so
callers only ever see a message and an ``auto_retry`` flag (always False).
Only the router's single host-unreachable failover happens automatically.
"""

import errno
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class QuenchError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(QuenchError):
    """Unknown model or a model without inference endpoints."""


class NoEndpointsError(ConfigurationError):
    """Dispatch was attempted with an empty endpoint set."""

    def __init__(self, message: str = "No inference urls are available for this model"):
        super().__init__(message)


class UnsupportedRequestError(QuenchError):
    """The request asks for something the pipeline does not do (n>1, streaming)."""


class TemplatingError(QuenchError):
    """The prompt could not be built from the request messages."""


class NetworkError(QuenchError):
    """The inference endpoint could not be reached.

    The original exception is kept on ``cause`` for logging; it is never part
    of ``message``.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class MalformedResponseError(QuenchError):
    """The backend answered with a payload of an unexpected shape."""

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.payload = payload


class SplitConfigurationError(QuenchError):
    """Existing split counts are inconsistent with the training ratio."""


class DatasetImportError(QuenchError):
    """Rows to import could not be read."""


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""

    FAILOVER = "failover"  # Host unreachable - switch endpoint once
    TRANSIENT = "transient"  # Network, timeout - caller may retry later
    FATAL = "fatal"  # Configuration, request shape - never retried


@dataclass
class ClassifiedError:
    """A classified error with handling metadata."""

    category: ErrorCategory
    message: str
    suggestion: Optional[str] = None
    original_exception: Optional[BaseException] = None

    def __str__(self) -> str:
        parts = [self.message]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


# Suggestions for common error patterns
ERROR_SUGGESTIONS = {
    "does not exist": "Check the model slug with: quench finetune list",
    "not set up for inference": "Add an endpoint with: quench finetune add-url",
    "no inference urls": "Add an endpoint with: quench finetune add-url",
    "multiple completions": "Send one request per completion (n=1)",
    "streaming": "Send the request with stream disabled",
    "failed to query": "Check that the inference servers are running",
    "unexpected response format": "Check the inference server version",
    "training ratio": "Check the dataset training ratio",
}


def is_host_unreachable(error: BaseException) -> bool:
    """Check whether an error was caused by an unreachable host.

    Walks the ``__cause__``/``__context__`` chain (and exception groups, which
    anyio raises when several addresses were tried) looking for an ``OSError``
    with ``errno.EHOSTUNREACH``.

    Args:
        error: The exception raised by the transport

    Returns:
        True if the host-unreachable errno is found anywhere in the chain
    """
    seen: set[int] = set()
    pending: list[BaseException] = [error]

    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))

        if isinstance(current, OSError) and current.errno == errno.EHOSTUNREACH:
            return True

        nested = getattr(current, "exceptions", None)
        if isinstance(nested, (list, tuple)):
            pending.extend(e for e in nested if isinstance(e, BaseException))

        if current.__cause__ is not None:
            pending.append(current.__cause__)
        if current.__context__ is not None:
            pending.append(current.__context__)

    return False


def classify_error(error: BaseException) -> ClassifiedError:
    """Classify an exception for logging and display.

    Args:
        error: The exception to classify

    Returns:
        ClassifiedError with category and suggestion
    """
    message = error.message if isinstance(error, QuenchError) else str(error)

    if is_host_unreachable(error):
        category = ErrorCategory.FAILOVER
    elif isinstance(error, (NetworkError, ConnectionError, TimeoutError)):
        category = ErrorCategory.TRANSIENT
    else:
        category = ErrorCategory.FATAL

    return ClassifiedError(
        category=category,
        message=message,
        suggestion=_get_suggestion(message.lower()),
        original_exception=error,
    )


def _get_suggestion(error_msg: str) -> Optional[str]:
    """Get a suggestion for a lowercase error message."""
    for pattern, suggestion in ERROR_SUGGESTIONS.items():
        if pattern in error_msg:
            return suggestion
    return None
