"""Real-time side of the chat: presence, message fan-out and unread tracking.

Every connected socket joins its user's channel (``user_<id>``) and the
channels of the rooms the user belongs to (``room_<id>``). Unread counters
are keyed by chat key, which uses the same ``room_<id>`` / ``user_<id>``
naming: a room message counts under the room's key, a direct message under
the sender's key.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from fastapi import WebSocket, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, models, schemas, security
from .database import AsyncSessionLocal
from .errors import BadRequest, ChatError, Forbidden, NotFound
from .logging_config import get_logger
from .services import ConnectionManager, RedisManager, connection_manager, redis_manager, room_channel, user_channel
from .storage import FileStorage, file_storage, prepare_attachments

logger = get_logger(__name__)

Handler = Callable[[AsyncSession, str, models.User, dict], Awaitable[dict]]


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Invalid payload")
    return f"{location}: {message}" if location else message


class ChatGateway:
    def __init__(
        self,
        connections: ConnectionManager,
        presence: RedisManager,
        session_factory=AsyncSessionLocal,
        storage: FileStorage = file_storage,
    ):
        self.connections = connections
        self.presence = presence
        self.session_factory = session_factory
        self.storage = storage
        self.socket_users: Dict[str, int] = {}
        self.handlers: Dict[str, Handler] = {
            "join_room": self.handle_join_room,
            "leave_room": self.handle_leave_room,
            "send_message": self.handle_send_message,
            "typing": self.handle_typing,
            "mark_read": self.handle_mark_read,
            "get_unread_messages": self.handle_get_unread_messages,
            "mark_messages_read": self.handle_mark_messages_read,
        }

    # --- Connection lifecycle ---
    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Optional[str]:
        """Authenticate and register a socket; returns its id, or None if refused."""
        if not token:
            logger.warning("Rejected websocket without a token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return None

        sid = None
        try:
            user_id = security.verify_access_token(token)
            async with self.session_factory() as db:
                user = await crud.get_user(db, user_id) if user_id is not None else None
                if not user:
                    logger.warning("Rejected websocket with an invalid token")
                    await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                    return None

                sid = await self.connections.connect(websocket)
                self.socket_users[sid] = user.id
                await self.presence.bind_session(user.id, sid)
                self.connections.join(sid, user_channel(user.id))
                for room in await crud.get_user_rooms(db, user.id):
                    self.connections.join(sid, room_channel(room.id))

                await crud.set_online_status(db, user.id, True)
                await self.connections.broadcast("user_status_change", {"userId": user.id, "isOnline": True})
                await self.connections.send(sid, "unread_messages_count", await crud.get_unread_counts(db, user.id))
        except asyncio.CancelledError:
            # cancelled mid-handshake; undo the binding before giving up
            if sid is not None:
                await asyncio.shield(self.disconnect(sid))
            raise
        except Exception as e:
            logger.error(f"Websocket connection failed: {e}", exc_info=True)
            if sid is None:
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            else:
                await self.disconnect(sid)
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return None

        logger.info(f"User {user.id} connected on socket {sid}")
        return sid

    async def disconnect(self, sid: str):
        user_id = self.socket_users.pop(sid, None)
        self.connections.disconnect(sid)
        if user_id is None:
            return

        # A socket replaced by a newer connection leaves the user online
        if not await self.presence.release_session(user_id, sid):
            logger.info(f"Stale socket {sid} of user {user_id} closed; newer connection kept")
            return

        async with self.session_factory() as db:
            user = await crud.set_online_status(db, user_id, False)
            # a new socket may have bound while the offline write was in flight
            if await self.presence.get_session(user_id) is not None:
                await crud.set_online_status(db, user_id, True)
                logger.info(f"User {user_id} reconnected while socket {sid} was closing")
                return
        payload = {"userId": user_id, "isOnline": False}
        if user and user.last_active:
            payload["lastActive"] = user.last_active.isoformat()
        await self.connections.broadcast("user_status_change", payload)
        logger.info(f"User {user_id} disconnected from socket {sid}")

    async def dispatch(self, sid: str, event: str, data: Any) -> dict:
        handler = self.handlers.get(event)
        if handler is None:
            return {"success": False, "error": f"Unknown event: {event}"}
        user_id = self.socket_users.get(sid)
        if user_id is None:
            return {"success": False, "error": "Unauthorized"}
        if not isinstance(data, dict):
            return {"success": False, "error": "Event data must be an object"}

        try:
            async with self.session_factory() as db:
                user = await crud.get_user(db, user_id)
                if not user:
                    return {"success": False, "error": "Unauthorized"}
                return await handler(db, sid, user, data)
        except ValidationError as e:
            return {"success": False, "error": _validation_message(e)}
        except ChatError as e:
            return {"success": False, "error": e.detail}
        except Exception as e:
            logger.error(f"Error handling {event} from socket {sid}: {e}", exc_info=True)
            return {"success": False, "error": "Internal server error"}

    # --- Event handlers ---
    async def handle_join_room(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        ref = schemas.RoomRef.model_validate(data)
        room = await crud.get_room(db, ref.room_id)
        if not room:
            raise NotFound("Room not found")
        if room.is_private and not await crud.is_room_member(db, room.id, user.id):
            raise Forbidden("Not a member of this room")
        self.connections.join(sid, room_channel(room.id))
        return {"success": True}

    async def handle_leave_room(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        ref = schemas.RoomRef.model_validate(data)
        self.connections.leave(sid, room_channel(ref.room_id))
        return {"success": True}

    async def handle_send_message(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        payload = schemas.MessageCreate.model_validate(data)
        message = await self.send_message(db, user, payload)
        return {"success": True, "message": message.to_wire()}

    async def handle_typing(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        typing = schemas.TypingEvent.model_validate(data)
        payload = {"userId": user.id, "userName": user.name, "isTyping": typing.is_typing}
        if typing.room_id is not None:
            await self.connections.emit(
                room_channel(typing.room_id), "typing_indicator",
                {**payload, "roomId": typing.room_id}, skip_sid=sid,
            )
        elif typing.recipient_id is not None:
            await self.connections.emit(
                user_channel(typing.recipient_id), "typing_indicator",
                {**payload, "senderId": user.id},
            )
        else:
            raise BadRequest("typing needs a roomId or a recipientId")
        return {"success": True}

    async def handle_mark_read(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        ref = schemas.MarkRead.model_validate(data)
        message = await crud.get_message(db, ref.message_id)
        if not message:
            raise NotFound("Message not found")
        await self.ensure_participant(db, message, user.id)
        message = await crud.mark_message_read(db, message.id)
        await self.message_read(message)
        return {"success": True}

    async def handle_get_unread_messages(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        counts = await crud.get_unread_counts(db, user.id)
        await self.connections.send(sid, "unread_messages_count", counts)
        return {"success": True, "unreadCounts": counts}

    async def handle_mark_messages_read(self, db: AsyncSession, sid: str, user: models.User, data: dict) -> dict:
        chat = schemas.MarkChatRead.model_validate(data)
        chat_key = user_channel(chat.chat_id) if chat.chat_type == "private" else room_channel(chat.chat_id)
        await crud.clear_unread(db, user.id, chat_key)
        await self.connections.send(sid, "unread_messages_count", await crud.get_unread_counts(db, user.id))
        return {"success": True}

    # --- Fan-out ---
    async def send_message(self, db: AsyncSession, sender: models.User, payload: schemas.MessageCreate) -> schemas.Message:
        """Validate, store and deliver a message. Shared by the socket and REST paths."""
        if payload.room_id is not None:
            room = await crud.get_room(db, payload.room_id)
            if not room:
                raise NotFound("Room not found")
            if not await crud.is_room_member(db, room.id, sender.id):
                raise Forbidden("Not a member of this room")
        elif not await crud.get_user(db, payload.recipient_id):
            raise NotFound("Recipient not found")

        if payload.client_id:
            existing = await crud.get_message_by_client_id(db, sender.id, payload.client_id)
            if existing:
                logger.info(f"Duplicate message {payload.client_id} from user {sender.id}; not re-applied")
                return schemas.Message.model_validate(existing)

        attachments = await prepare_attachments(db, payload.attachments, sender.id, self.storage)
        # files offloaded by this send; references to earlier uploads are left alone
        offloaded = [
            prepared["file_id"]
            for prepared, incoming in zip(attachments, payload.attachments)
            if prepared.get("file_id") is not None and not (incoming.is_large_file and incoming.file_id is not None)
        ]
        try:
            db_message, created = await crud.create_message(db, payload, sender.id, attachments)
        except Exception:
            await db.rollback()
            await self.storage.release(db, offloaded)
            raise
        if not created:
            await self.storage.release(db, offloaded)
        message = schemas.Message.model_validate(db_message)
        if created:
            await self.fan_out(db, message)
        return message

    async def fan_out(self, db: AsyncSession, message: schemas.Message):
        data = message.to_wire()
        sender_id = message.sender.id

        if message.room_id is not None:
            chat_key = room_channel(message.room_id)
            delivered = await self.connections.emit(room_channel(message.room_id), "new_message", data)
            for member_id in await crud.get_room_member_ids(db, message.room_id):
                if member_id == sender_id:
                    continue
                await crud.increment_unread(db, member_id, chat_key)
                await self.push_unread_counts(db, member_id)
            logger.debug(f"Message {message.id} delivered to {delivered} sockets in room {message.room_id}")
            return

        recipient_id = message.recipient_id
        await self.connections.emit(user_channel(recipient_id), "new_message", data)
        if sender_id != recipient_id:
            await self.connections.emit(user_channel(sender_id), "new_message", data)
            await crud.increment_unread(db, recipient_id, user_channel(sender_id))
            await self.push_unread_counts(db, recipient_id)

    async def push_unread_counts(self, db: AsyncSession, user_id: int) -> bool:
        sid = await self.presence.get_session(user_id)
        if sid is None:
            return False
        counts = await crud.get_unread_counts(db, user_id)
        return await self.connections.send(sid, "unread_messages_count", counts)

    async def ensure_participant(self, db: AsyncSession, message: models.Message, user_id: int):
        if message.room_id is not None:
            allowed = user_id == message.sender_id or await crud.is_room_member(db, message.room_id, user_id)
        else:
            allowed = user_id in (message.sender_id, message.recipient_id)
        if not allowed:
            raise Forbidden("Not a participant in this conversation")

    def _conversation_channels(self, room_id: Optional[int], *user_ids: Optional[int]) -> Iterable[str]:
        if room_id is not None:
            return [room_channel(room_id)]
        return [user_channel(user_id) for user_id in dict.fromkeys(user_ids) if user_id is not None]

    async def message_read(self, message: models.Message):
        for channel in self._conversation_channels(message.room_id, message.sender_id, message.recipient_id):
            await self.connections.emit(channel, "message_read", {"messageId": message.id})

    async def message_deleted(self, deleted: schemas.MessageDeleted, sender_id: int, deleted_by: int):
        data = deleted.to_wire()
        if not deleted.deleted_for_everyone:
            await self.connections.emit(user_channel(deleted_by), "message_deleted", data)
            return
        for channel in self._conversation_channels(deleted.room_id, sender_id, deleted.recipient_id):
            await self.connections.emit(channel, "message_deleted", data)

    # --- Room and presence notifications from the REST side ---
    def _user_sockets(self, user_id: int):
        return list(self.connections.channels.get(user_channel(user_id), ()))

    async def room_created(self, room: schemas.Room):
        data = room.to_wire()
        for member in room.members:
            for sid in self._user_sockets(member.id):
                self.connections.join(sid, room_channel(room.id))
            if member.id != room.creator_id:
                await self.connections.emit(user_channel(member.id), "new_room", data)

    async def room_updated(self, room: schemas.Room):
        data = room.to_wire()
        for member in room.members:
            await self.connections.emit(user_channel(member.id), "room_updated", data)

    async def member_added(self, room: schemas.Room, user_id: int):
        for sid in self._user_sockets(user_id):
            self.connections.join(sid, room_channel(room.id))
        await self.room_updated(room)

    async def member_removed(self, room: schemas.Room, user_id: int):
        for sid in self._user_sockets(user_id):
            self.connections.leave(sid, room_channel(room.id))
        removed = schemas.RemovedRoom(**room.model_dump())
        await self.connections.emit(user_channel(user_id), "room_updated", removed.to_wire())
        await self.room_updated(room)

    async def user_status_changed(self, user: models.User):
        payload = {"userId": user.id, "isOnline": user.is_online}
        if not user.is_online and user.last_active:
            payload["lastActive"] = user.last_active.isoformat()
        await self.connections.broadcast("user_status_change", payload)


chat_gateway = ChatGateway(connection_manager, redis_manager)
