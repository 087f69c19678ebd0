"""Persistence of the identity server config and pending binding sessions"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, List, Optional

from redis.exceptions import RedisError

from core.config import settings
from services.redis import get_redis
from .errors import Unreachable
from .models import BindingSession, IdentityServerConfig

logger = logging.getLogger(__name__)

# Redis key patterns
KEY_SERVER = "identity:server"
KEY_BINDING = "identity:binding:{medium}:{address}"


def _binding_key(threepid) -> str:
    return KEY_BINDING.format(medium=threepid.medium, address=threepid.value)


@contextmanager
def _redis_errors(action: str):
    try:
        yield
    except RedisError as e:
        logger.error(f"Redis error while trying to {action}: {e}")
        raise Unreachable(f"Binding store unavailable: {e}") from e


class BindingStore(ABC):
    """What must survive a restart: the server config and non-terminal sessions"""

    @abstractmethod
    async def load_server_config(self) -> Optional[IdentityServerConfig]:
        ...

    @abstractmethod
    async def save_server_config(self, config: IdentityServerConfig) -> None:
        ...

    @abstractmethod
    async def save_session(self, session: BindingSession) -> None:
        ...

    @abstractmethod
    async def delete_session(self, threepid) -> None:
        ...

    @abstractmethod
    async def load_sessions(self) -> List[BindingSession]:
        ...


class InMemoryBindingStore(BindingStore):
    """Process-local store, used in tests and when no Redis is configured"""

    def __init__(self):
        self.server_config: Optional[IdentityServerConfig] = None
        self.sessions: Dict[str, str] = {}

    async def load_server_config(self) -> Optional[IdentityServerConfig]:
        return self.server_config

    async def save_server_config(self, config: IdentityServerConfig) -> None:
        self.server_config = config

    async def save_session(self, session: BindingSession) -> None:
        # Stored serialized so later mutations of the live session don't leak in
        self.sessions[_binding_key(session.threepid)] = session.model_dump_json()

    async def delete_session(self, threepid) -> None:
        self.sessions.pop(_binding_key(threepid), None)

    async def load_sessions(self) -> List[BindingSession]:
        return [BindingSession.model_validate_json(data) for data in self.sessions.values()]


class RedisBindingStore(BindingStore):
    """Redis-backed store. Sessions expire with IDENTITY_BINDING_TTL."""

    def __init__(self, redis_client=None, ttl: Optional[int] = None):
        self._client = redis_client
        self.ttl = ttl or settings.IDENTITY_BINDING_TTL

    async def _redis(self):
        if self._client is None:
            self._client = await get_redis()
        return self._client

    async def load_server_config(self) -> Optional[IdentityServerConfig]:
        redis = await self._redis()
        with _redis_errors("load the identity server config"):
            data = await redis.get(KEY_SERVER)
        if data:
            return IdentityServerConfig.model_validate_json(data)
        return None

    async def save_server_config(self, config: IdentityServerConfig) -> None:
        redis = await self._redis()
        with _redis_errors("save the identity server config"):
            await redis.set(KEY_SERVER, config.model_dump_json())

    async def save_session(self, session: BindingSession) -> None:
        redis = await self._redis()
        with _redis_errors("save a binding session"):
            await redis.setex(_binding_key(session.threepid), self.ttl, session.model_dump_json())

    async def delete_session(self, threepid) -> None:
        redis = await self._redis()
        with _redis_errors("delete a binding session"):
            await redis.delete(_binding_key(threepid))

    async def load_sessions(self) -> List[BindingSession]:
        redis = await self._redis()
        sessions = []
        with _redis_errors("load binding sessions"):
            async for key in redis.scan_iter(match="identity:binding:*"):
                data = await redis.get(key)
                if not data:
                    continue
                try:
                    sessions.append(BindingSession.model_validate_json(data))
                except ValueError as e:
                    logger.warning(f"Dropping unreadable binding session {key}: {e}")
                    await redis.delete(key)
        return sessions
