"""Error taxonomy for the SenseLink protocol engine.

Every failure a handler can report shares the same shape::

    {"success": false, "error": "<ERROR_CODE>", "message": "<human-readable>"}

Usage
-----
Raise a ``ProtocolError`` subclass anywhere inside a handler; the dispatcher
converts it into a response envelope of the request's response type::

    from senselink.errors import NotFoundError

    raise NotFoundError("PAIRING_NOT_FOUND", "No pairing for that token")

Remote fetches (media download, reverse geocoding) do not raise. They return a
:class:`Lookup` so call sites branch on an explicit tri-state instead of
matching error text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ProtocolError(Exception):
    """Base class for errors reported back to the protocol peer."""

    default_code = "PROTOCOL_ERROR"

    def __init__(self, code: Optional[str] = None, message: str = ""):
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)

    def to_content(self) -> Dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message}


class ValidationError(ProtocolError):
    """Malformed payload. Reported, no state change."""

    default_code = "INVALID_REQUEST"


class AuthorizationError(ProtocolError):
    """Sender is not entitled to perform an explicit admin action."""

    default_code = "UNAUTHORIZED_SENDER"


class NotFoundError(ProtocolError):
    """Token, pairing or geofence is absent."""

    default_code = "NOT_FOUND"


class TransientIOError(ProtocolError):
    """Network or file hiccup. Skipped at low-stakes call sites."""

    default_code = "TRANSIENT_IO_ERROR"


class CriticalRecoveryFailure(ProtocolError):
    """Config rollback itself failed; a human operator must intervene."""

    default_code = "CRITICAL_RECOVERY_FAILURE"


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class Lookup:
    """Result of a remote fetch: the value, or why there is none."""

    status: LookupStatus
    value: Any = None
    detail: str = ""

    @classmethod
    def found(cls, value: Any) -> Lookup:
        return cls(LookupStatus.FOUND, value)

    @classmethod
    def not_found(cls, detail: str = "") -> Lookup:
        return cls(LookupStatus.NOT_FOUND, detail=detail)

    @classmethod
    def transient(cls, detail: str = "") -> Lookup:
        return cls(LookupStatus.TRANSIENT_ERROR, detail=detail)

    @property
    def ok(self) -> bool:
        return self.status is LookupStatus.FOUND
