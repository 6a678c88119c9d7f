from __future__ import annotations

import datetime as _dt
from typing import Any, Dict, Optional


class FederationError(Exception):
    """Base structured error for the database user federation bridge."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        subcode: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        is_transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.details = details or {}
        self.is_transient = is_transient
        self.timestamp = _dt.datetime.now(_dt.timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "subcode": self.subcode,
            "details": self.details,
            "is_transient": self.is_transient,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"{self.__class__.__name__}(code={self.code!r}, subcode={self.subcode!r}, message={self.message!r})"


class ConfigurationError(FederationError):
    """Bad connection target, malformed template or unsupported algorithm/dialect.

    Raised at configure time; the instance stays unusable until it is
    successfully reconfigured.
    """

    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="configuration_error", subcode=subcode, details=details)


class DataSourceConnectionError(FederationError):
    """Pool exhausted, backend unreachable or provider already closed. Transient."""

    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="connection_error", subcode=subcode, details=details, is_transient=True)


class QueryExecutionError(FederationError):
    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="query_error", subcode=subcode, details=details)


class RowMappingError(FederationError):
    """A returned row lacks a required column; the whole call is aborted."""

    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="row_mapping_error", subcode=subcode, details=details)


class SyncItemError(FederationError):
    """One external record could not be reconciled. Counted, never raised out of a run."""

    def __init__(
        self,
        message: str,
        *,
        username: Optional[str] = None,
        subcode: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        d = dict(details or {})
        if username is not None:
            d["username"] = username
        super().__init__(message, code="sync_item_error", subcode=subcode, details=d)
        self.username = username


class SyncAlreadyRunningError(FederationError, RuntimeError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="sync_already_running", details=details)


class UnlinkError(FederationError):
    def __init__(self, message: str, *, subcode: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="unlink_error", subcode=subcode, details=details)


__all__ = [
    "FederationError",
    "ConfigurationError",
    "DataSourceConnectionError",
    "QueryExecutionError",
    "RowMappingError",
    "SyncItemError",
    "SyncAlreadyRunningError",
    "UnlinkError",
]
