from __future__ import annotations

import logging
import os
import sys
import time

from ooilo_shared import setup_json_logging

log = logging.getLogger("ooilo.pos.reconcile_worker")


def main() -> int:
    """
    Blocking loop that drains the offline queue every
    POS_RECONCILE_INTERVAL_SECS. Runs beside a client whose API process has
    the in-app timer disabled (POS_RECONCILE_INTERVAL_SECS=0 there).
    """
    setup_json_logging()
    try:
        interval = float(os.getenv("POS_RECONCILE_WORKER_INTERVAL_SECS") or os.getenv("POS_RECONCILE_INTERVAL_SECS") or 30)
    except ValueError:
        log.error("invalid reconcile interval")
        return 1
    if interval <= 0:
        log.error("reconcile interval must be positive")
        return 1

    from .main import coordinator, queue

    queue.init_schema()
    log.info("reconcile worker started, interval %.1fs", interval)
    try:
        while True:
            try:
                coordinator.drain()
            except Exception:
                log.exception("drain failed")
            time.sleep(interval)
    except KeyboardInterrupt:
        log.info("reconcile worker interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
