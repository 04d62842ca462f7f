# =============================================================================
# core/models.py  —  Data Models (the "nouns" of the system)
# =============================================================================
#
# These dataclasses define the shape of everything that crosses the
# repository boundary.  They carry almost no behavior.
#
# FROZEN:
#   A KintoneRecord is a snapshot of what kintone returned.  Updating a
#   record creates a new revision on the server and leaves the local
#   object as it was.  Credentials are computed once and shared read-only
#   by every call for the lifetime of the process.
# =============================================================================

import base64
from dataclasses import dataclass, field
from typing import Any

from core.errors import ConfigurationError


# -----------------------------------------------------------------------------
# KintoneCredentials — who we are and where we talk to
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class KintoneCredentials:
    """Tenant domain plus a password-auth login pair.

    The X-Cybozu-Authorization token is base64("username:password").  It
    is derived once in __post_init__ and never recomputed.
    """

    domain: str
    username: str
    password: str = field(repr=False)
    auth: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        missing = [
            name
            for name, value in (
                ("domain", self.domain),
                ("username", self.username),
                ("password", self.password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(missing)
        token = base64.b64encode(
            f"{self.username}:{self.password}".encode("utf-8")
        ).decode("ascii")
        # frozen dataclass: bypass __setattr__ for the derived field
        object.__setattr__(self, "auth", token)

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"

    @property
    def headers(self) -> dict[str, str]:
        """Headers required on every kintone call."""
        return {
            "X-Cybozu-Authorization": self.auth,
            "Content-Type": "application/json",
        }


# -----------------------------------------------------------------------------
# KintoneRecord — one row of one app
# -----------------------------------------------------------------------------
# record_id is None when kintone's response did not carry the reserved
# "$id" field (e.g. a search restricted with `fields` that omits it).
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class KintoneRecord:
    """A single kintone record as returned by a read."""

    app_id: int
    record_id: int | str | None
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def display_id(self) -> str:
        """The record id as text, or "unknown" when kintone did not send one."""
        return "unknown" if self.record_id is None else str(self.record_id)


# -----------------------------------------------------------------------------
# SearchResult — one page of a records search
# -----------------------------------------------------------------------------
@dataclass
class SearchResult:
    """One page of records plus paging bookkeeping.

    total_count is the number of records matching the query across ALL
    pages; next_offset is where the following page would start.
    """

    records: list[KintoneRecord]
    total_count: int
    next_offset: int
