from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

import redis

_log = logging.getLogger("ooilo.pos.alerts")

CHANNEL = "alerts:pos"


class AlertPublisher:
    """
    Operator alerts (corrupted settlements, queue items that will never
    replay). Published as JSON to Redis Pub/Sub when EVENTS_ENABLED=true;
    otherwise, or when Redis is unreachable, written as ERROR log lines so a
    log collector still sees them.
    """

    def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
        self._url = url or os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        if enabled is None:
            enabled = os.getenv("EVENTS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._client = None
        if self._enabled:
            try:
                self._client = redis.from_url(self._url)
            except (redis.RedisError, ValueError) as e:
                _log.warning("alerts: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        data = {"kind": kind, "ts_ms": int(time.time() * 1000), "payload": payload}
        if self._enabled and self._client is not None:
            try:
                self._client.publish(CHANNEL, json.dumps(data, default=str))
                return
            except redis.RedisError as e:
                _log.warning("alerts: redis publish failed: %s", e)
        _log.error("alert %s", kind, extra={"alert": data})


_publisher = AlertPublisher()

# Most recent alerts of this process, newest last; read by /sync/status.
_recent: List[Dict[str, Any]] = []
_RECENT_MAX = 50


def emit_alert(kind: str, payload: Dict[str, Any]) -> None:
    """Best-effort: an alert must never break the settlement path."""
    _recent.append({"kind": kind, **payload})
    del _recent[:-_RECENT_MAX]
    try:
        _publisher.publish(kind, payload)
    except Exception:
        _log.exception("alerts: publish raised")


def recent_alerts() -> List[Dict[str, Any]]:
    return list(_recent)
