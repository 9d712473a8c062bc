"""
Server-Side Session Storage
===========================

Sessions correlate a browser to its pending login and, after authentication,
to the user claims and IdP logout linkage. The browser only holds an opaque
random session id; the data lives in a SessionStore.

Stores:
    - InMemorySessionStore: single instance / development only. Loses pending
      logins and handoff tickets on restart.
    - RedisSessionStore: shared, durable backend for multi-instance deployments.
"""

import asyncio
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


# =============================================================================
# Stores
# =============================================================================

class SessionStore(ABC):
    """Key-value persistence with TTL. Values are JSON-compatible dicts."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete. Used for single-use values."""
        ...

    async def close(self) -> None:
        pass


class InMemorySessionStore(SessionStore):
    """
    In-memory TTL store.

    Thread-safe implementation using asyncio.Lock. Expired entries are
    evicted on access, and writes sweep the whole map at most once per
    ``sweep_interval`` seconds so keys that are never read again (abandoned
    logins, unredeemed handoff tickets) still go away.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 60.0,
    ):
        self._data: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._data.items() if now >= expires_at]
        for key in expired:
            del self._data[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug(f"Evicted {len(expired)} expired session entries")

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = self._live(key)
            return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        # Round-trip through JSON so stored data matches what Redis would hold
        snapshot = json.loads(json.dumps(value))
        async with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            self._data[key] = (now + ttl_seconds, snapshot)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    def __len__(self) -> int:
        return len(self._data)


class RedisSessionStore(SessionStore):
    """Redis-backed store using SET EX and GETDEL."""

    def __init__(self, client: Any, prefix: str = "sso-gateway:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "sso-gateway:") -> "RedisSessionStore":
        import redis.asyncio as redis_asyncio

        return cls(redis_asyncio.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _decode(raw: Any) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self._client.get(self._key(key)))

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def pop(self, key: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self._client.getdel(self._key(key)))

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# Session Object and Middleware
# =============================================================================

class ServerSession(dict):
    """Session dict that tracks modification, id rotation and destruction."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        super().__init__(data or {})
        self.modified = False
        self.destroyed = False
        self.regenerated = False

    def __setitem__(self, key, value):
        self.modified = True
        super().__setitem__(key, value)

    def __delitem__(self, key):
        self.modified = True
        super().__delitem__(key)

    def pop(self, key, *args):
        if key in self:
            self.modified = True
        return super().pop(key, *args)

    def update(self, *args, **kwargs):
        self.modified = True
        super().update(*args, **kwargs)

    def setdefault(self, key, default=None):
        if key not in self:
            self.modified = True
        return super().setdefault(key, default)

    def clear(self):
        self.modified = True
        super().clear()

    def destroy(self) -> None:
        """Drop all data and delete the session from the store."""
        self.clear()
        self.destroyed = True

    def regenerate(self) -> None:
        """Keep the data but move it to a fresh session id at the end of the request."""
        self.modified = True
        self.regenerated = True


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class ServerSessionMiddleware(BaseHTTPMiddleware):
    """
    Loads the server-side session into ``request.session``.

    The session is persisted (rolling TTL) whenever it holds data. Sessions
    destroyed during the request are deleted from the store and their cookie
    cleared with the same attributes used to set it. A regenerated session
    has its old store entry deleted and is saved under a new id.
    """

    def __init__(
        self,
        app,
        store: SessionStore,
        cookie_name: str,
        ttl_seconds: int,
        secure: bool,
        same_site: str = "lax",
    ):
        super().__init__(app)
        self.store = store
        self.cookie_name = cookie_name
        self.ttl_seconds = ttl_seconds
        self.cookie_attributes = {
            "path": "/",
            "domain": None,
            "secure": secure,
            "httponly": True,
            "samesite": same_site,
        }

    async def dispatch(self, request: Request, call_next) -> Response:
        session_id = request.cookies.get(self.cookie_name)
        data = None
        if session_id:
            data = await self.store.get(SESSION_KEY_PREFIX + session_id)
        if data is None:
            session_id = None

        session = ServerSession(data)
        request.scope["session"] = session

        response = await call_next(request)

        if session.regenerated and session_id:
            await self.store.delete(SESSION_KEY_PREFIX + session_id)
            session_id = None

        if session.destroyed:
            if session_id:
                await self.store.delete(SESSION_KEY_PREFIX + session_id)
            response.set_cookie(
                self.cookie_name, "", max_age=0, expires=0, **self.cookie_attributes
            )
            # A destroyed session may be refilled later in the same request
            if not session:
                return response
            session_id = None

        if session:
            if session_id is None:
                session_id = new_session_id()
            await self.store.set(SESSION_KEY_PREFIX + session_id, dict(session), self.ttl_seconds)
            response.set_cookie(
                self.cookie_name,
                session_id,
                max_age=self.ttl_seconds,
                **self.cookie_attributes,
            )
        elif session_id and session.modified:
            await self.store.delete(SESSION_KEY_PREFIX + session_id)

        return response
