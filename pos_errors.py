"""
Error taxonomy shared by the offline POS core.

Load/fetch paths raise these exceptions and let them bubble to the caller.
Order sync and session transitions capture them into result values instead,
so a batch never aborts on a single failure.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    AUTHORIZATION = "authorization"
    SCHEMA_DRIFT = "schema_drift"
    MALFORMED = "malformed"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    REMOTE = "remote"


class CoreError(Exception):
    kind = ErrorKind.REMOTE


class TransportError(CoreError):
    """Network failure, timeout or an HTTP status the server should not send."""
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthorizationError(TransportError):
    """HTTP 401/403 or a JSON-RPC session error (code 100)."""
    kind = ErrorKind.AUTHORIZATION


class RemoteError(CoreError):
    """JSON-RPC `error` object that is not an authorization failure."""
    kind = ErrorKind.REMOTE

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class SchemaDriftError(CoreError):
    """The local store was deleted by a destructive reset; reinitialize once."""
    kind = ErrorKind.SCHEMA_DRIFT


class OrderNotFound(CoreError, KeyError):
    kind = ErrorKind.NOT_FOUND

    def __str__(self) -> str:
        return self.args[0] if self.args else "order not found"


class InvalidTransition(CoreError, ValueError):
    kind = ErrorKind.INVALID_STATE
