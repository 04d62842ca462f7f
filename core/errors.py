# =============================================================================
# core/errors.py  —  Error Taxonomy
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Defines the closed set of failures the repository can raise.  Every
#   repository method catches at its own boundary and re-raises ONE of
#   these, scoped to the operation name ("get record", "add records", ...).
#
# THE FOUR KINDS:
#   CONFIGURATION       — a required KINTONE_* value is missing (fatal at startup)
#   UPSTREAM_REJECTION  — kintone answered with a non-2xx status
#   CONFLICT            — a rejection caused by a revision mismatch (409)
#   TRANSPORT           — the request never got an answer (DNS, connect, timeout)
#
#   Callers branch on `error.kind` (or the subclass) instead of parsing
#   the message text.  The message itself keeps the familiar
#   "Failed to <operation>: <detail>" shape for humans and agents.
# =============================================================================

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Which class of failure a KintoneError represents."""

    CONFIGURATION = "configuration"
    UPSTREAM_REJECTION = "upstream_rejection"
    CONFLICT = "conflict"
    TRANSPORT = "transport"


class KintoneError(Exception):
    """Base class for every failure raised from core/.

    Attributes:
        kind: The ErrorKind of this failure.
        operation: Human-readable operation name, e.g. "get record".
        status_code: Upstream HTTP status, when kintone answered.
        body: Upstream response body (decoded JSON if possible, else text).
        error_code: kintone's own error code (e.g. "GAIA_CO02"), if present.
        completed: Results of the batch chunks that succeeded before the
            failing one.  Empty for single-request operations.
    """

    kind: ErrorKind = ErrorKind.UPSTREAM_REJECTION

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        status_code: int | None = None,
        body: Any = None,
        error_code: str | None = None,
        completed: list | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.error_code = error_code
        self.completed = list(completed or [])


class ConfigurationError(KintoneError):
    """A required setting is missing.  Raised before any HTTP call."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(
            "Missing required environment variables: " + ", ".join(self.missing)
        )


class UpstreamRejection(KintoneError):
    """kintone answered with a non-2xx status."""

    kind = ErrorKind.UPSTREAM_REJECTION


class ConflictError(UpstreamRejection):
    """kintone rejected an update because the stored revision differs."""

    kind = ErrorKind.CONFLICT


class TransportError(KintoneError):
    """The request failed before kintone could answer."""

    kind = ErrorKind.TRANSPORT
