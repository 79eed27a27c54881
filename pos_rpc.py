"""
JSON-RPC client for the POS backend.

Requests are `{jsonrpc: "2.0", method: "call", params: {...}}` POSTs; replies
carry either `result` or `error`. HTTP 401/403, JSON-RPC error code 100 and
session-expired messages are reported as AuthorizationError so the owner of
the server session can re-authenticate; everything else is a TransportError
(network, timeout, HTTP status) or a RemoteError (application error).
"""
from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from pos_errors import AuthorizationError, RemoteError, TransportError

log = logging.getLogger(__name__)

SESSION_EXPIRED_CODE = 100


def _error_message(error: Dict[str, Any]) -> str:
    data = error.get("data") if isinstance(error.get("data"), dict) else {}
    return (data or {}).get("message") or error.get("message") or "Unknown server error"


def _is_auth_error(error: Dict[str, Any]) -> bool:
    if error.get("code") == SESSION_EXPIRED_CODE:
        return True
    data = error.get("data") if isinstance(error.get("data"), dict) else {}
    for text in (error.get("message"), (data or {}).get("message"), (data or {}).get("name")):
        if isinstance(text, str) and "session" in text.lower() and "expired" in text.lower():
            return True
    return False


class RpcClient:
    def __init__(self, base_url: str, database: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: float = 30,
                 context: Optional[Dict[str, Any]] = None,
                 on_unauthorized: Optional[Callable[[AuthorizationError], None]] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.database = database
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
        })
        self.timeout = timeout
        self.context = dict(context or {})
        self.on_unauthorized = on_unauthorized
        self.uid: Optional[int] = None
        self._ids = itertools.count(1)

    def _post(self, path: str, params: Dict[str, Any]) -> Any:
        if not self.base_url:
            raise TransportError("POS API URL is not configured")
        body = {"jsonrpc": "2.0", "method": "call", "params": params, "id": next(self._ids)}
        url = self.base_url + path
        try:
            resp = self.session.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"Request to {path} failed: {exc}") from exc

        if resp.status_code in (401, 403):
            self._unauthorized(AuthorizationError(f"HTTP {resp.status_code} from {path}", resp.status_code))
        if resp.status_code >= 400:
            raise TransportError(f"HTTP {resp.status_code} from {path}: {resp.text[:200]}", resp.status_code)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TransportError(f"Bad JSON response from {path}: {resp.text[:200]}", resp.status_code) from exc
        if not isinstance(payload, dict):
            raise TransportError(f"Unexpected response from {path}", resp.status_code)

        error = payload.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            message = _error_message(error)
            if _is_auth_error(error):
                self._unauthorized(AuthorizationError(message, resp.status_code))
            raise RemoteError(message, code=error.get("code"), data=error.get("data"))
        return payload.get("result")

    def _unauthorized(self, exc: AuthorizationError) -> None:
        log.warning("Backend rejected the request for authorization: %s", exc)
        if self.on_unauthorized:
            try:
                self.on_unauthorized(exc)
            except Exception:
                log.exception("on_unauthorized callback failed")
        raise exc

    def call_kw(self, model: str, method: str, args: Optional[List[Any]] = None,
                kwargs: Optional[Dict[str, Any]] = None) -> Any:
        kwargs = dict(kwargs or {})
        if self.context and "context" not in kwargs:
            kwargs["context"] = dict(self.context)
        params = {"model": model, "method": method, "args": list(args or []), "kwargs": kwargs}
        log.debug("call_kw %s.%s", model, method)
        return self._post(f"/web/dataset/call_kw/{model}/{method}", params)

    def authenticate(self, login: str, password: str) -> Optional[int]:
        result = self._post("/web/session/authenticate", {
            "db": self.database, "login": login, "password": password,
        })
        uid = result.get("uid") if isinstance(result, dict) else None
        if not uid:
            self._unauthorized(AuthorizationError("Login rejected"))
        self.uid = uid
        return uid

    def check_connection(self) -> bool:
        """Cheap reachability probe; never raises."""
        try:
            self._post("/web/webclient/version_info", {})
            return True
        except (AuthorizationError, RemoteError):
            # The server answered; it is reachable.
            return True
        except TransportError as exc:
            log.info("Backend unreachable: %s", exc)
            return False
