"""
Ledger snapshot cache.

The availability classifier reads whole-questionnaire counter snapshots
many times per second; they are kept here for a few seconds
(LEDGER_SNAPSHOT_TTL) and dropped by the ledger on every mutation.
Classification results are user-specific and are never cached.

Backend is Redis when REDIS_URL points at a server, otherwise an
in-process TTL dict (``memory://``, or Redis unreachable at first use).
"""

import json
import logging
import os
import threading
import time

import redis
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

SNAPSHOT_TTL = 5  # seconds
KEY_PREFIX = "ledger:"


class _MemoryBackend:
    """Process-local stand-in exposing the few Redis calls used below."""

    def __init__(self):
        self._entries = {}  # key -> (payload, expires_at)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            payload, expires_at = self._entries.get(key, (None, 0.0))
            if payload is not None and time.monotonic() >= expires_at:
                del self._entries[key]
                return None
            return payload

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def flushdb(self):
        with self._lock:
            self._entries.clear()

    def ping(self):
        return True


_backend = None


def _connect():
    url = current_app.config.get("REDIS_URL") if has_app_context() else os.getenv("REDIS_URL")
    if not url or url.startswith("memory://"):
        return _MemoryBackend()
    client = redis.from_url(url, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Snapshot cache: Redis unreachable (%s), using memory backend", exc)
        return _MemoryBackend()
    logger.info("Snapshot cache: Redis at %s", url.rsplit("@", 1)[-1])
    return client


def _get_backend():
    global _backend
    if _backend is None:
        _backend = _connect()
    return _backend


def get_cached_snapshot(questionnaire_id):
    """Cached ``{route_id: counter fields}`` for a questionnaire, None on miss."""
    raw = _get_backend().get(KEY_PREFIX + questionnaire_id)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Snapshot cache: discarding unreadable entry for %s", questionnaire_id)
        return None


def set_cached_snapshot(questionnaire_id, snapshot, ttl=SNAPSHOT_TTL):
    if ttl > 0:
        _get_backend().setex(KEY_PREFIX + questionnaire_id, ttl, json.dumps(snapshot))


def invalidate_snapshot(questionnaire_id):
    _get_backend().delete(KEY_PREFIX + questionnaire_id)


def clear_all():
    """Flush the whole backend (tests only)."""
    _get_backend().flushdb()


def health_check():
    backend = _get_backend()
    try:
        backend.ping()
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}
    kind = "memory" if isinstance(backend, _MemoryBackend) else "redis"
    return {"status": "ok", "backend": kind}
