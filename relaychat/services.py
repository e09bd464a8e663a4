import uuid
import redis.asyncio as redis
from redis.exceptions import WatchError
from fastapi import WebSocket
from typing import Any, Dict, Optional, Set
from .settings import settings
from .logging_config import get_logger

logger = get_logger(__name__)

SESSIONS_KEY = "presence:sessions"
ONLINE_KEY = "presence:online"


def user_channel(user_id: int) -> str:
    return f"user_{user_id}"


def room_channel(room_id: int) -> str:
    return f"room_{room_id}"


class ConnectionManager:
    """Sockets held by this process, and the channels each one has joined."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.channels: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        sid = uuid.uuid4().hex
        self.active_connections[sid] = websocket
        return sid

    def disconnect(self, sid: str):
        self.active_connections.pop(sid, None)
        for channel in list(self.channels):
            self.leave(sid, channel)

    def join(self, sid: str, channel: str):
        if sid in self.active_connections:
            self.channels.setdefault(channel, set()).add(sid)

    def leave(self, sid: str, channel: str):
        members = self.channels.get(channel)
        if members is None:
            return
        members.discard(sid)
        if not members:
            del self.channels[channel]

    def in_channel(self, sid: str, channel: str) -> bool:
        return sid in self.channels.get(channel, ())

    async def send(self, sid: str, event: str, data: Any) -> bool:
        websocket = self.active_connections.get(sid)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception as e:
            # the peer went away mid-send; its receive loop will clean up
            logger.debug(f"Dropping {event} for socket {sid}: {e}")
            return False
        return True

    async def emit(self, channel: str, event: str, data: Any, skip_sid: Optional[str] = None) -> int:
        delivered = 0
        for sid in sorted(self.channels.get(channel, ())):
            if sid != skip_sid and await self.send(sid, event, data):
                delivered += 1
        return delivered

    async def broadcast(self, event: str, data: Any) -> int:
        delivered = 0
        for sid in list(self.active_connections):
            if await self.send(sid, event, data):
                delivered += 1
        return delivered


class RedisManager:
    """Shared userId -> socketId registry; last connection wins."""

    def __init__(self):
        self.redis_conn = redis.from_url(settings.REDIS_URL, decode_responses=True)

    async def bind_session(self, user_id: int, sid: str) -> Optional[str]:
        """Point user_id at sid and return the socket id it replaced, if any."""
        async with self.redis_conn.pipeline(transaction=True) as pipe:
            pipe.hget(SESSIONS_KEY, user_id)
            pipe.hset(SESSIONS_KEY, user_id, sid)
            pipe.sadd(ONLINE_KEY, user_id)
            previous, _, _ = await pipe.execute()
        if previous and previous != sid:
            logger.info(f"User {user_id} reconnected; socket {previous} replaced by {sid}")
        return previous

    async def release_session(self, user_id: int, sid: str) -> bool:
        """Remove the binding only if it still points at sid."""
        async with self.redis_conn.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(SESSIONS_KEY)
                    current = await pipe.hget(SESSIONS_KEY, user_id)
                    if current != sid:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.hdel(SESSIONS_KEY, user_id)
                    pipe.srem(ONLINE_KEY, user_id)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def get_session(self, user_id: int) -> Optional[str]:
        return await self.redis_conn.hget(SESSIONS_KEY, user_id)

    async def is_online(self, user_id: int) -> bool:
        return bool(await self.redis_conn.sismember(ONLINE_KEY, user_id))

    async def get_online_users(self) -> Set[int]:
        return {int(user_id) for user_id in await self.redis_conn.smembers(ONLINE_KEY)}

    async def ping(self) -> bool:
        return await self.redis_conn.ping()

    async def close(self):
        await self.redis_conn.aclose()


connection_manager = ConnectionManager()
redis_manager = RedisManager()
