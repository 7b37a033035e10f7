"""
OIDC handshake state store.

Maps an opaque ``state`` to ``{code_verifier, tenant_id}`` for the lifetime of
one login redirect. ``consume`` is single-use: it reads and deletes in one
atomic step, so two racing callbacks for the same state see exactly one hit.
"""
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis

from app.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "sso:pkce:"


@dataclass(frozen=True)
class HandshakeState:
    code_verifier: str
    tenant_id: str

    def to_json(self) -> str:
        return json.dumps({"code_verifier": self.code_verifier, "tenant_id": self.tenant_id})

    @classmethod
    def from_json(cls, raw) -> Optional["HandshakeState"]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
            return cls(code_verifier=data["code_verifier"], tenant_id=data["tenant_id"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable OIDC handshake state")
            return None


class HandshakeStore(Protocol):
    def save(self, state: str, value: HandshakeState, ttl_seconds: int) -> None: ...

    def consume(self, state: str) -> Optional[HandshakeState]: ...


class RedisHandshakeStore:
    """Shared store for multi-instance deployments."""

    def __init__(self, client: redis.Redis, prefix: str = KEY_PREFIX):
        self._redis = client
        self._prefix = prefix

    def _key(self, state: str) -> str:
        return f"{self._prefix}{state}"

    def save(self, state: str, value: HandshakeState, ttl_seconds: int) -> None:
        self._redis.setex(self._key(state), ttl_seconds, value.to_json())

    def consume(self, state: str) -> Optional[HandshakeState]:
        key = self._key(state)
        # MULTI/EXEC: GET and DEL run back to back with no interleaving
        pipe = self._redis.pipeline(transaction=True)
        pipe.get(key)
        pipe.delete(key)
        raw, deleted = pipe.execute()
        if raw is None or not deleted:
            return None
        return HandshakeState.from_json(raw)


class InMemoryHandshakeStore:
    """Process-local store for development and tests. Clock is injectable."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[HandshakeState, float]] = {}
        self._lock = threading.Lock()

    def save(self, state: str, value: HandshakeState, ttl_seconds: int) -> None:
        with self._lock:
            self._purge_expired()
            self._entries[state] = (value, self._clock() + ttl_seconds)

    def consume(self, state: str) -> Optional[HandshakeState]:
        with self._lock:
            entry = self._entries.pop(state, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (_, exp) in self._entries.items() if now >= exp]:
            del self._entries[key]


_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.REDIS_DSN,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _redis_client
