"""
Notifications about Registries: Kubernetes Events (through kopf), mirrored
to a Redis Stream for dashboards when REDIS_URL is set.
"""

import json as _json
import logging
from datetime import datetime, timezone
from typing import Optional

import kopf
import redis

from registries_operator.config import settings
from registries_operator.models import Registry

logger = logging.getLogger("registries-operator.events")

NORMAL = "Normal"
WARNING = "Warning"

# Cap stream at this number of entries per registry
STREAM_MAX_LEN = 100


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Recorder:
    """Sink for human-visible events: fire-and-forget."""

    def event(self, registry: Registry, event_type: str, reason: str, message: str) -> None:
        raise NotImplementedError


class KopfEventRecorder(Recorder):
    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = settings.REDIS_URL if redis_url is None else redis_url
        self._redis_client = None

    def _get_redis(self):
        """Lazy-init Redis client. Returns None if unavailable."""
        if self._redis_client is not None:
            return self._redis_client
        if not self.redis_url:
            return None
        try:
            r = redis.Redis.from_url(self.redis_url, decode_responses=True)
            r.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable (non-fatal): {e}")
            return None
        logger.info(f"Redis connected: {self.redis_url}")
        self._redis_client = r
        return r

    def event(self, registry: Registry, event_type: str, reason: str, message: str) -> None:
        logger.info(f"[{registry.metadata.name}] {event_type}/{reason}: {message}")
        kopf.event(registry.owner_body(), type=event_type, reason=reason, message=message)
        self._publish(registry, event_type, reason, message)

    def _publish(self, registry: Registry, event_type: str, reason: str, message: str):
        r = self._get_redis()
        if not r:
            return
        entry = {
            "registry": registry.metadata.name,
            "hostPort": registry.spec.hostPort,
            "type": event_type,
            "reason": reason,
            "message": message,
            "timestamp": _now(),
        }
        try:
            r.xadd(f"registry:events:{registry.metadata.name}", entry, maxlen=STREAM_MAX_LEN)
            r.publish("registry:events", _json.dumps(entry))
        except redis.RedisError as e:
            logger.debug(f"Redis publish failed (non-fatal): {e}")
