import logging
import os
import threading

from pos_agent import create_app
from pos_context import CoreContext, configure_logging, load_config
from pos_errors import CoreError
from sync_worker import run_once


def start_sync_loop(ctx: CoreContext):
    """Background drain alongside the agent, enabled with POS_AGENT_SYNC=1."""
    if os.getenv('POS_AGENT_SYNC', '0') != '1':
        return None
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    stop = threading.Event()

    def loop():
        while not stop.wait(ctx.config.sync_interval):
            try:
                run_once(ctx)
            except CoreError as exc:
                logging.warning("sync pass failed: %s", exc)

    threading.Thread(target=loop, name='pos-sync', daemon=True).start()
    return stop


if __name__ == '__main__':
    config = load_config()
    configure_logging(config.log_level)
    ctx = CoreContext(config)
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    stop = start_sync_loop(ctx)
    try:
        create_app(ctx).run(host=config.agent_host, port=config.agent_port, debug=debug)
    finally:
        if stop:
            stop.set()
        ctx.close()
