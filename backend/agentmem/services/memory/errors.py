"""
Exceptions raised by the memory search services.
"""

from typing import Optional


class MemorySearchError(Exception):
    """Base error for the memory search subsystem."""


class MemoryUnavailableError(MemorySearchError):
    """Memory search is disabled or no embedding provider could be configured."""


class EmbeddingError(MemorySearchError):
    """An embedding request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingTimeoutError(EmbeddingError):
    pass


class BatchEmbeddingError(MemorySearchError):
    """An asynchronous batch embedding job failed.

    ``attempts`` is how many job submissions this failure represents (a timed
    out job is retried once). ``unsupported`` marks providers or accounts that
    cannot run batch jobs at all.
    """

    def __init__(
        self,
        message: str,
        attempts: int = 1,
        unsupported: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.attempts = max(1, attempts)
        self.unsupported = unsupported
        self.status_code = status_code

    @property
    def timed_out(self) -> bool:
        message = str(self).lower()
        return "timed out" in message or "timeout" in message


class MemoryFileNotFoundError(MemorySearchError):
    pass


class InvalidMemoryPathError(MemorySearchError, ValueError):
    """The path is empty or not an indexable memory path."""
