#!/usr/bin/env python3
"""
Operator CLI for the offline POS core.

Examples:
  python pos_cli.py --load 12            # load (or reuse) reference data for session 12
  python pos_cli.py --load 12 --force --model product.product
  python pos_cli.py --pending            # list queued orders awaiting sync
  python pos_cli.py --sync               # drain the queue if the backend is reachable
  python pos_cli.py --ensure-session 3   # find or open the caller's session for config 3
"""
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from typing import List, Optional

from pos_context import CoreContext, configure_logging, load_config
from pos_errors import CoreError


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Offline POS cache and order sync")
    ap.add_argument("--db", default=None, help="Path to the local SQLite store (overrides POS_DB_PATH)")
    ap.add_argument("--load", metavar="SESSION", type=int, default=None, help="Load reference data for a POS session")
    ap.add_argument("--force", action="store_true", help="Refetch even when the cache is fresh")
    ap.add_argument("--model", default=None, help="Limit --load to one model")
    ap.add_argument("--sync", action="store_true", help="Sync pending orders if the backend is reachable")
    ap.add_argument("--resync", metavar="ORDER", default=None, help="Force resubmission of one order")
    ap.add_argument("--pending", action="store_true", help="List orders awaiting sync")
    ap.add_argument("--status", action="store_true", help="Show cache and queue status")
    ap.add_argument("--ensure-session", metavar="CONFIG", type=int, default=None,
                    help="Find or open a POS session for a configuration")
    ap.add_argument("--clear-cache", action="store_true", help="Delete all cached reference data")
    ap.add_argument("--serve", action="store_true", help="Run the local HTTP agent")
    args = ap.parse_args(argv)

    config = load_config()
    configure_logging(config.log_level)
    if args.db:
        config = replace(config, db_path=args.db)
    ctx = CoreContext(config)

    try:
        ctx.authenticate()

        if args.clear_cache:
            ctx.cache.clear_all()
            print("Cache cleared")

        if args.load is not None:
            loaded = ctx.cache.load(args.load, force=args.force, specific_model=args.model)
            _print({model: len(rs) for model, rs in loaded.items()})

        if args.ensure_session is not None:
            _print(ctx.sessions.ensure_open(args.ensure_session).to_dict())

        if args.resync:
            _print(ctx.sync.force_resync(args.resync).to_dict())

        if args.sync:
            _print(ctx.sync.check_and_sync_if_online())

        if args.pending:
            _print([
                {"local_id": o.local_id, "order_id": o.order_id, "status": o.status.value,
                 "attempts": o.attempts, "last_error": o.last_error}
                for o in ctx.orders.pending()
            ])

        if args.status:
            meta = ctx.cache.metadata()
            _print({
                "db_path": config.db_path,
                "schema_version": ctx.store.version,
                "cache": meta.to_blob() if meta else None,
                "complete": ctx.cache.check_data_exists(),
                "orders": {s: len(ctx.orders.by_status(s)) for s in ("pending", "synced", "failed")},
            })

        if args.serve:
            from pos_agent import create_app
            create_app(ctx).run(host=config.agent_host, port=config.agent_port)
    except CoreError as exc:
        print(f"Error ({exc.kind.value}): {exc}", file=sys.stderr)
        return 1
    finally:
        ctx.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
