"""
Configuration and the CoreContext that wires the components together.

Settings come from the environment, optionally seeded from a `.env` file.
A CoreContext is built once per process and handed to every entry point;
nothing in the core reaches for module-level database handles.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv

from pos_cache import DataCache
from pos_errors import AuthorizationError
from pos_orders import OfflineOrderQueue
from pos_rpc import RpcClient
from pos_schema import open_store
from pos_session import SessionLifecycle
from pos_store import Store
from pos_sync import SyncCoordinator

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to the default."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    clean = raw.strip()
    return clean if clean else default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default


@dataclass(frozen=True)
class CoreConfig:
    api_url: Optional[str] = None
    database: Optional[str] = None
    db_path: str = "pos_cache.db"
    user_id: Optional[int] = None
    company_id: int = 1
    login: Optional[str] = None
    password: Optional[str] = None
    lang: str = "en_US"
    tz: str = "UTC"
    rpc_timeout: float = 30.0
    config_id: Optional[int] = None
    log_level: str = "INFO"
    sync_interval: float = 10.0
    agent_host: str = "127.0.0.1"
    agent_port: int = 5000

    def rpc_context(self) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {"lang": self.lang, "tz": self.tz,
                               "allowed_company_ids": [self.company_id]}
        if self.user_id is not None:
            ctx["uid"] = self.user_id
        return ctx


def load_config(env_file: Optional[str] = None) -> CoreConfig:
    load_dotenv(env_file)
    return CoreConfig(
        api_url=_env_string("POS_API_URL"),
        database=_env_string("POS_DATABASE"),
        db_path=_env_string("POS_DB_PATH", "pos_cache.db"),
        user_id=_env_int("POS_USER_ID", None),
        company_id=_env_int("POS_COMPANY_ID", 1),
        login=_env_string("POS_LOGIN"),
        password=_env_string("POS_PASSWORD"),
        lang=_env_string("POS_LANG", "en_US"),
        tz=_env_string("POS_TZ", "UTC"),
        rpc_timeout=_env_float("POS_RPC_TIMEOUT", 30.0),
        config_id=_env_int("POS_CONFIG_ID", None),
        log_level=(_env_string("POS_LOG_LEVEL", "INFO") or "INFO").upper(),
        sync_interval=_env_float("SYNC_INTERVAL", 10.0),
        agent_host=_env_string("POS_AGENT_HOST", "127.0.0.1"),
        agent_port=_env_int("POS_AGENT_PORT", 5000),
    )


def configure_logging(level_name: str) -> None:
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)


class CoreContext:
    """Store, transport and components for one local database."""

    def __init__(self, config: CoreConfig, store: Optional[Store] = None, transport: Any = None,
                 on_unauthorized: Optional[Callable[[AuthorizationError], None]] = None):
        self.config = config
        self.store = store if store is not None else open_store(config.db_path)
        self.transport = transport if transport is not None else RpcClient(
            config.api_url or "",
            database=config.database,
            timeout=config.rpc_timeout,
            context=config.rpc_context(),
            on_unauthorized=on_unauthorized or self._log_unauthorized,
        )
        self.cache = DataCache(self.store, self.transport)
        self.orders = OfflineOrderQueue(self.store)
        self.sync = SyncCoordinator(self.orders, self.transport)
        self.sessions = SessionLifecycle(self.transport, user_id=config.user_id)

    @staticmethod
    def _log_unauthorized(exc: AuthorizationError) -> None:
        log.warning("Backend session rejected (%s); re-authentication required", exc)

    def authenticate(self) -> Optional[int]:
        """Log in with the configured credentials, if any."""
        if not (self.config.login and self.config.password):
            return None
        uid = self.transport.authenticate(self.config.login, self.config.password)
        if self.sessions.user_id is None:
            self.sessions.user_id = uid
        log.info("Authenticated as user %s", uid)
        return uid

    def close(self) -> None:
        self.store.close()
