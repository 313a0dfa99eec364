from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH = "AuthError"
    QUOTA_EXCEEDED = "QuotaExceededError"
    TRANSIENT_NETWORK = "TransientNetworkError"
    SERVER_UNAVAILABLE = "ServerUnavailableError"
    CONFIG = "ConfigError"
    BAD_REQUEST = "BadRequestError"
    EXTRACTION = "ExtractionError"
    GENERATION_FAILED = "GenerationFailedError"
    TIMEOUT = "Timeout"
    STORAGE = "StorageError"
    INTERNAL = "InternalError"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.TRANSIENT_NETWORK,
        ErrorKind.SERVER_UNAVAILABLE,
        ErrorKind.TIMEOUT,
        ErrorKind.STORAGE,
    }
)

_HINTS = {
    ErrorKind.AUTH: "check the GEMINI_API_KEY credential",
    ErrorKind.QUOTA_EXCEEDED: "generation quota or rate limit exceeded; wait and resume",
    ErrorKind.TRANSIENT_NETWORK: "network fault",
    ErrorKind.SERVER_UNAVAILABLE: "reconstruction backend not ready",
    ErrorKind.CONFIG: "fix the configuration and rerun",
    ErrorKind.BAD_REQUEST: "the request was rejected; fix the input and resume",
    ErrorKind.EXTRACTION: "the video is too short for the requested sampling",
    ErrorKind.GENERATION_FAILED: "the generation service rejected or failed the job",
    ErrorKind.TIMEOUT: "the operation timed out",
    ErrorKind.STORAGE: "local disk I/O failed",
    ErrorKind.INTERNAL: "unexpected error; see the log for the traceback",
}


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def hint_for(kind: ErrorKind) -> str:
    return _HINTS.get(kind, "")


class StageError(Exception):
    """Typed failure raised by stage functions and collaborator clients.

    The kind decides the retry policy; ``retryable`` only needs to be passed
    to override the default for that kind.
    """

    def __init__(self, kind: ErrorKind, message: str, *, retryable: Optional[bool] = None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.retryable = is_retryable(self.kind) if retryable is None else bool(retryable)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    @property
    def hint(self) -> str:
        return hint_for(self.kind)
