import asyncio
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status, Response, WebSocket, WebSocketDisconnect, File, UploadFile
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote
from . import crud, schemas, models, security
from .deps import get_db, get_current_user
from .gateway import chat_gateway
from .logging_config import get_logger
from .settings import settings
from .storage import file_storage

logger = get_logger(__name__)

router = APIRouter()

# --- Auth ---
def _auth_response(user: models.User) -> schemas.AuthResponse:
    return schemas.AuthResponse(
        user=schemas.UserPublic.model_validate(user),
        access_token=security.create_access_token(user.id),
    )

@router.post("/auth/register", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED, tags=["Auth"])
async def register(user_in: schemas.UserCreate, db: AsyncSession = Depends(get_db)):
    if await crud.get_user_by_email(db, email=user_in.email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")
    user = await crud.create_user(db, user=user_in)
    logger.info(f"Registered user {user.id} ({user.email})")
    return _auth_response(user)

@router.post("/auth/login", response_model=schemas.AuthResponse, tags=["Auth"])
async def login(credentials: schemas.UserLogin, db: AsyncSession = Depends(get_db)):
    user = await crud.get_user_by_email(db, email=credentials.email)
    if not user or not security.verify_password(credentials.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return _auth_response(user)

@router.post("/auth/logout", tags=["Auth"])
async def logout(
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await crud.set_online_status(db, current_user.id, False)
    await chat_gateway.user_status_changed(user)
    return {"message": "Logged out successfully"}

@router.get("/auth/me", response_model=schemas.User, tags=["Auth"])
async def read_users_me(current_user: models.User = Depends(get_current_user)):
    return current_user

# --- Users ---
@router.get("/users", response_model=List[schemas.User], tags=["Users"])
async def list_users(
    skip: int = 0,
    limit: int = 100,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await crud.get_users(db, skip=skip, limit=limit)

@router.get("/users/me/unread", response_model=Dict[str, int], tags=["Users"])
async def read_my_unread_counts(
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await crud.get_unread_counts(db, current_user.id)

@router.put("/users/profile", response_model=schemas.User, tags=["Users"])
async def update_profile(
    changes: schemas.UserUpdate,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await crud.update_user_profile(db, current_user, changes)

@router.get("/users/{user_id}", response_model=schemas.User, tags=["Users"])
async def get_user(
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await crud.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail=f"User with ID {user_id} not found")
    return user

# --- Rooms ---
async def _get_room_or_404(db: AsyncSession, room_id: int) -> models.Room:
    room = await crud.get_room(db, room_id=room_id)
    if not room:
        raise HTTPException(status_code=404, detail=f"Room with ID {room_id} not found")
    return room

@router.post("/rooms", response_model=schemas.Room, status_code=status.HTTP_201_CREATED, tags=["Rooms"])
async def create_room(
    room: schemas.RoomCreate,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    db_room = await crud.create_room(db=db, room=room, creator_id=current_user.id)
    created = schemas.Room.model_validate(db_room)
    await chat_gateway.room_created(created)
    logger.info(f"User {current_user.id} created room {db_room.id} with {len(created.members)} members")
    return created

@router.get("/rooms", response_model=List[schemas.Room], tags=["Rooms"])
async def list_rooms(
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await crud.get_visible_rooms(db, user_id=current_user.id)

@router.get("/rooms/my", response_model=List[schemas.Room], tags=["Rooms"])
async def list_my_rooms(
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await crud.get_user_rooms(db, user_id=current_user.id)

@router.get("/rooms/{room_id}", response_model=schemas.Room, tags=["Rooms"])
async def get_room_details(
    room_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    room = await _get_room_or_404(db, room_id)
    if room.is_private and not await crud.is_room_member(db, room_id, current_user.id):
        raise HTTPException(status_code=403, detail="Not a member of this room")
    return room

@router.put("/rooms/{room_id}", response_model=schemas.Room, tags=["Rooms"])
async def update_room(
    room_id: int,
    changes: schemas.RoomUpdate,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    room = await _get_room_or_404(db, room_id)
    if room.creator_id != current_user.id:
        raise HTTPException(status_code=403, detail="You do not have permission to update this room")
    updated = schemas.Room.model_validate(await crud.update_room(db, room, changes))
    await chat_gateway.room_updated(updated)
    return updated

@router.post("/rooms/{room_id}/members/{user_id}", response_model=schemas.Room, tags=["Rooms"])
async def add_room_member(
    room_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_room_or_404(db, room_id)
    if not await crud.is_room_member(db, room_id, current_user.id):
        raise HTTPException(status_code=403, detail="Only room members can add members")
    if not await crud.get_user(db, user_id):
        raise HTTPException(status_code=404, detail=f"User with ID {user_id} not found")
    room = schemas.Room.model_validate(await crud.add_user_to_room(db, room_id=room_id, user_id=user_id))
    await chat_gateway.member_added(room, user_id)
    return room

@router.delete("/rooms/{room_id}/members/{user_id}", response_model=schemas.Room, tags=["Rooms"])
async def remove_room_member(
    room_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    room = await _get_room_or_404(db, room_id)
    if current_user.id not in (room.creator_id, user_id):
        raise HTTPException(status_code=403, detail="Only the room creator can remove other members")
    if not await crud.is_room_member(db, room_id, user_id):
        raise HTTPException(status_code=404, detail="User is not a member of this room")
    room = schemas.Room.model_validate(await crud.remove_user_from_room(db, room_id=room_id, user_id=user_id))
    await chat_gateway.member_removed(room, user_id)
    return room

# --- Chats ---
async def _get_message_for(db: AsyncSession, message_id: int, user: models.User) -> models.Message:
    message = await crud.get_message(db, message_id)
    if not message:
        raise HTTPException(status_code=404, detail=f"Message with ID {message_id} not found")
    await chat_gateway.ensure_participant(db, message, user.id)
    return message

@router.post("/chats", response_model=schemas.Message, status_code=status.HTTP_201_CREATED, tags=["Chats"])
async def send_message(
    message: schemas.MessageCreate,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await chat_gateway.send_message(db, current_user, message)

@router.get("/chats/unread", response_model=schemas.UnreadCount, tags=["Chats"])
async def get_unread_count(
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return schemas.UnreadCount(count=await crud.count_unread_direct(db, current_user.id))

@router.get("/chats/direct/{recipient_id}", response_model=List[schemas.Message], tags=["Chats"])
async def get_direct_messages(
    recipient_id: int,
    skip: int = 0,
    limit: int = 50,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await crud.get_direct_messages(db, current_user.id, recipient_id, skip=skip, limit=limit)

@router.delete("/chats/direct/{recipient_id}", response_model=schemas.ClearHistoryResult, tags=["Chats"])
async def clear_direct_messages(
    recipient_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cleared, file_ids = await crud.clear_direct_history(db, current_user.id, recipient_id)
    await file_storage.release(db, file_ids)
    logger.info(f"User {current_user.id} cleared {cleared} messages with user {recipient_id}")
    return schemas.ClearHistoryResult(deleted_count=cleared)

@router.get("/chats/room/{room_id}", response_model=List[schemas.Message], tags=["Chats"])
async def get_room_messages(
    room_id: int,
    skip: int = 0,
    limit: int = 50,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    room = await _get_room_or_404(db, room_id)
    if room.is_private and not await crud.is_room_member(db, room_id, current_user.id):
        raise HTTPException(status_code=403, detail="Not a member of this room")
    return await crud.get_messages_for_room(db, room_id=room_id, user_id=current_user.id, skip=skip, limit=limit)

@router.post("/chats/{message_id}/read", response_model=schemas.Message, tags=["Chats"])
async def mark_message_read(
    message_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_message_for(db, message_id, current_user)
    message = await crud.mark_message_read(db, message_id)
    await chat_gateway.message_read(message)
    return message

@router.delete("/chats/{message_id}", response_model=schemas.MessageDeleted, tags=["Chats"])
async def delete_message(
    message_id: int,
    for_everyone: bool = Query(False, alias="forEveryone"),
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message = await _get_message_for(db, message_id, current_user)
    if for_everyone and message.sender_id != current_user.id:
        raise HTTPException(status_code=403, detail="Only the sender can delete a message for everyone")

    deleted = schemas.MessageDeleted(
        message_id=message.id,
        deleted_for_everyone=for_everyone,
        recipient_id=message.recipient_id,
        room_id=message.room_id,
    )
    sender_id = message.sender_id
    if for_everyone:
        file_ids = await crud.delete_message_for_everyone(db, message)
    else:
        _, file_ids = await crud.soft_delete_message(db, message, current_user.id)
    await file_storage.release(db, file_ids)
    await chat_gateway.message_deleted(deleted, sender_id=sender_id, deleted_by=current_user.id)
    return deleted

# --- Files ---
@router.post("/files", response_model=schemas.StoredFile, status_code=status.HTTP_201_CREATED, tags=["Files"])
async def upload_file(
    file: UploadFile = File(...),
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if len(data) > settings.MAX_ATTACHMENT_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.MAX_ATTACHMENT_SIZE // (1024 * 1024)}MB size limit",
        )
    return await file_storage.save(
        db, data,
        original_filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
        declared_size=file.size,
        uploader_id=current_user.id,
    )

def _byte_range(range_header: str, size: int) -> Tuple[int, int]:
    """Parse a single `bytes=start-end` range; end defaults to the last byte."""
    unit, _, spec = range_header.partition("=")
    start_text, _, end_text = spec.partition("-")
    try:
        start = int(start_text)
        end = int(end_text) if end_text.strip() else size - 1
    except ValueError:
        start, end = -1, -1
    if unit.strip() != "bytes" or start < 0 or start >= size or end < start:
        raise HTTPException(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            detail="Requested Range Not Satisfiable",
            headers={"Content-Range": f"bytes */{size}"},
        )
    return start, min(end, size - 1)

@router.get("/files/{file_id}", tags=["Files"])
async def get_file(
    file_id: int,
    preview: bool = False,
    range_header: Optional[str] = Header(None, alias="Range"),
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    db_file = await crud.get_stored_file(db, file_id)
    if not db_file:
        raise HTTPException(status_code=404, detail="File not found")
    if preview:
        return schemas.StoredFile.model_validate(db_file)

    data = await file_storage.read(db_file)
    safe_filename = quote(db_file.original_filename)
    headers = {
        "Content-Disposition": f"inline; filename=\"{safe_filename}\"; filename*=UTF-8''{safe_filename}",
        "Cache-Control": "private, max-age=3600",
        "Accept-Ranges": "bytes",
    }
    # Seeking is only offered for video playback
    if range_header and db_file.content_type.startswith("video/"):
        start, end = _byte_range(range_header, len(data))
        headers["Content-Range"] = f"bytes {start}-{end}/{len(data)}"
        return Response(
            content=data[start:end + 1],
            status_code=status.HTTP_206_PARTIAL_CONTENT,
            media_type=db_file.content_type,
            headers=headers,
        )
    return Response(content=data, media_type=db_file.content_type, headers=headers)

@router.get("/files/{file_id}/thumbnail", response_model=schemas.FileThumbnail, tags=["Files"])
async def get_file_thumbnail(
    file_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    # No thumbnails are rendered; clients draw a placeholder from the media type
    db_file = await crud.get_stored_file(db, file_id)
    if not db_file:
        raise HTTPException(status_code=404, detail="File not found")
    return schemas.FileThumbnail(
        file_type=db_file.file_type,
        media_type=db_file.media_type,
        filename=db_file.original_filename,
    )

@router.delete("/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Files"])
async def delete_file(
    file_id: int,
    current_user: models.User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    db_file = await crud.get_stored_file(db, file_id)
    if not db_file:
        raise HTTPException(status_code=404, detail="File not found")
    if db_file.uploader_id != current_user.id:
        raise HTTPException(status_code=403, detail="Only the uploader can delete this file")
    if await crud.is_file_referenced(db, file_id):
        raise HTTPException(status_code=400, detail="File is still attached to a message")
    await file_storage.delete(db, db_file)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

# --- Realtime ---
def _handshake_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    scheme, _, credentials = websocket.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    sid = await chat_gateway.connect(websocket, _handshake_token(websocket))
    if sid is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = schemas.Frame.model_validate_json(raw)
            except ValidationError:
                await websocket.send_json({"event": "error", "data": {"error": "Malformed frame"}})
                continue

            result = await chat_gateway.dispatch(sid, frame.event, frame.data)
            if frame.id is not None:
                await websocket.send_json({"event": "ack", "id": frame.id, "data": result})
    except WebSocketDisconnect:
        logger.debug(f"Socket {sid} closed by peer")
    finally:
        # cleanup must finish even when the handler itself is being cancelled
        await asyncio.shield(chat_gateway.disconnect(sid))
