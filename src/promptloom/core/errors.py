"""Exception taxonomy for promptloom.

Every error raised by the engine derives from :class:`PromptLoomError` so
callers can catch the whole family in one place.

=============================  ==============================================
Exception                      Raised when
=============================  ==============================================
``BadURLError``                A backend base URL cannot be parsed (construction)
``RequestError``               Any non-200 HTTP response
``NoImagesError``              A 200 image response without an ``images`` key
``StreamDecodeError``          One streamed line fails to decode (logged, skipped)
``PersistenceError``           Blob or history database I/O fails
``GenerationInProgressError``  The single-flight guard rejects a second job
``GenerationFailedError``      A generation failed after its entry was persisted
=============================  ==============================================
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from promptloom.core.models import HistoryEntry

# Response bodies can be large HTML error pages; keep only the start.
BODY_SNIPPET_LIMIT = 500


class PromptLoomError(Exception):
    """Base class for all promptloom errors."""


class BadURLError(PromptLoomError):
    """A backend URL is missing, relative, or not http(s)."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"bad backend URL: {url!r}")


class RequestError(PromptLoomError):
    """The backend answered with a non-200 status code.

    Attributes:
        status_code: HTTP status returned by the backend.
        body: First ``BODY_SNIPPET_LIMIT`` characters of the response body.
    """

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = (body or "")[:BODY_SNIPPET_LIMIT]
        message = f"status code: {status_code}"
        if self.body:
            message = f"{message}\n{self.body}"
        super().__init__(message)


class NoImagesError(PromptLoomError):
    """The backend returned 200 but the payload had no ``images`` array."""

    def __init__(self) -> None:
        super().__init__("no images")


class StreamDecodeError(PromptLoomError):
    """A single streamed line could not be decoded."""

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        super().__init__(f"could not decode stream line ({reason}): {line[:80]!r}")


class PersistenceError(PromptLoomError):
    """Writing or reading a blob file or history row failed."""


class GenerationInProgressError(PromptLoomError):
    """Another image job already holds the single-flight guard."""

    def __init__(self, current: str | None) -> None:
        self.current = current
        super().__init__(f"a generation is already in progress ({current})")


class GenerationFailedError(PromptLoomError):
    """A generation attempt failed; the failed attempt is still in history.

    Attributes:
        entry: The persisted :class:`HistoryEntry` with ``error_description`` set.
    """

    def __init__(self, entry: HistoryEntry, cause: BaseException) -> None:
        self.entry = entry
        self.cause = cause
        super().__init__(entry.error_description or str(cause))
