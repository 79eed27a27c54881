#!/usr/bin/env python3
"""
Offline order sync worker.

Every SYNC_INTERVAL seconds: if orders are waiting and the backend answers,
drain the offline queue; otherwise sleep and try again.

Env vars:
  POS_DB_PATH      SQLite store path (default: pos_cache.db)
  POS_API_URL      backend base URL
  SYNC_INTERVAL    seconds between loops (default: 10)
  POS_LOG_LEVEL    logging level (default: INFO)

Run:
  python sync_worker.py
"""
import logging
import time
from typing import Any, Dict

from pos_context import CoreContext, configure_logging, load_config
from pos_errors import AuthorizationError, SchemaDriftError

log = logging.getLogger('sync_worker')


def run_once(ctx: CoreContext) -> Dict[str, Any]:
    result = ctx.sync.check_and_sync_if_online()
    if result.get('did_sync'):
        log.info("synced %d/%d orders (%d failed)", result['synced'], result['total'], result['failed'])
    elif result.get('reason') == 'offline':
        log.info("backend offline; %d orders waiting", result.get('pending_count', 0))
    return result


def main():
    config = load_config()
    configure_logging(config.log_level)
    log.info("starting worker, interval=%ss, db=%s", config.sync_interval, config.db_path)
    ctx = CoreContext(config)
    try:
        try:
            ctx.authenticate()
        except AuthorizationError as exc:
            log.error("login failed: %s", exc)
        while True:
            try:
                run_once(ctx)
            except SchemaDriftError as exc:
                log.error("local store was reset (%s); reopening", exc)
                ctx.close()
                ctx = CoreContext(config, transport=ctx.transport)
            time.sleep(config.sync_interval)
    except KeyboardInterrupt:
        log.info("exiting on Ctrl+C")
    finally:
        ctx.close()


if __name__ == '__main__':
    main()
