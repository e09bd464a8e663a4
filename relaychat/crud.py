from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from . import models, schemas, security
from .errors import BadRequest
from typing import Dict, List, Optional, Sequence, Set, Tuple

# --- User CRUD ---
async def get_user(db: AsyncSession, user_id: int) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.id == user_id))
    return result.scalars().first()

async def get_user_by_email(db: AsyncSession, email: str) -> Optional[models.User]:
    result = await db.execute(select(models.User).filter(models.User.email == email.lower()))
    return result.scalars().first()

async def get_users(db: AsyncSession, skip: int = 0, limit: int = 100) -> List[models.User]:
    result = await db.execute(select(models.User).order_by(models.User.id).offset(skip).limit(limit))
    return result.scalars().all()

async def create_user(db: AsyncSession, user: schemas.UserCreate) -> models.User:
    db_user = models.User(
        name=user.name,
        email=user.email.lower(),
        password_hash=security.hash_password(user.password),
    )
    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)
    return db_user

async def update_user_profile(db: AsyncSession, db_user: models.User, changes: schemas.UserUpdate) -> models.User:
    if changes.new_password:
        if not changes.current_password:
            raise BadRequest("Current password is required to set a new password")
        if not security.verify_password(changes.current_password, db_user.password_hash):
            raise BadRequest("Current password is incorrect")
        db_user.password_hash = security.hash_password(changes.new_password)
    if changes.name:
        db_user.name = changes.name
    if changes.avatar:
        db_user.avatar = changes.avatar
    await db.commit()
    await db.refresh(db_user)
    return db_user

async def set_online_status(db: AsyncSession, user_id: int, is_online: bool) -> Optional[models.User]:
    db_user = await get_user(db, user_id)
    if not db_user:
        return None
    db_user.is_online = is_online
    if not is_online:
        db_user.last_active = models.utcnow()
    await db.commit()
    await db.refresh(db_user)
    return db_user

# --- Room CRUD ---
def _room_query():
    # populate_existing so membership changes show up on rooms already in the session
    return select(models.Room).execution_options(populate_existing=True)

async def create_room(db: AsyncSession, room: schemas.RoomCreate, creator_id: int) -> models.Room:
    fields = room.model_dump(exclude={"members"}, exclude_none=True)
    db_room = models.Room(**fields, creator_id=creator_id)
    db.add(db_room)
    await db.flush()

    # The creator is automatically a member; unknown user ids are skipped
    member_ids = {creator_id}
    if room.members:
        result = await db.execute(select(models.User.id).filter(models.User.id.in_(room.members)))
        member_ids.update(result.scalars().all())
    for user_id in sorted(member_ids):
        db.add(models.RoomMember(room_id=db_room.id, user_id=user_id))
    await db.commit()
    return await get_room(db, db_room.id)

async def get_room(db: AsyncSession, room_id: int) -> Optional[models.Room]:
    result = await db.execute(_room_query().filter(models.Room.id == room_id))
    return result.scalars().first()

async def get_visible_rooms(db: AsyncSession, user_id: int) -> List[models.Room]:
    """Public rooms plus the private rooms the user belongs to."""
    membership = select(models.RoomMember.room_id).filter(models.RoomMember.user_id == user_id)
    query = (
        _room_query()
        .filter(or_(models.Room.is_private == False, models.Room.id.in_(membership)))
        .order_by(models.Room.id)
    )
    result = await db.execute(query)
    return result.scalars().all()

async def get_user_rooms(db: AsyncSession, user_id: int) -> List[models.Room]:
    query = (
        _room_query()
        .join(models.RoomMember, models.RoomMember.room_id == models.Room.id)
        .filter(models.RoomMember.user_id == user_id)
        .order_by(models.Room.id)
    )
    result = await db.execute(query)
    return result.scalars().all()

async def update_room(db: AsyncSession, db_room: models.Room, changes: schemas.RoomUpdate) -> models.Room:
    for field, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(db_room, field, value)
    await db.commit()
    return await get_room(db, db_room.id)

# --- Membership CRUD ---
async def get_room_member_ids(db: AsyncSession, room_id: int) -> List[int]:
    result = await db.execute(
        select(models.RoomMember.user_id).filter_by(room_id=room_id).order_by(models.RoomMember.user_id)
    )
    return result.scalars().all()

async def is_room_member(db: AsyncSession, room_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(models.RoomMember.id).filter_by(room_id=room_id, user_id=user_id)
    )
    return result.scalars().first() is not None

async def add_user_to_room(db: AsyncSession, room_id: int, user_id: int) -> Optional[models.Room]:
    # Adding an existing member is a no-op, like a set insert
    if not await is_room_member(db, room_id, user_id):
        db.add(models.RoomMember(room_id=room_id, user_id=user_id))
        await db.commit()
    return await get_room(db, room_id)

async def remove_user_from_room(db: AsyncSession, room_id: int, user_id: int) -> Optional[models.Room]:
    await db.execute(delete(models.RoomMember).filter_by(room_id=room_id, user_id=user_id))
    await db.commit()
    return await get_room(db, room_id)

# --- Message CRUD ---
async def get_message(db: AsyncSession, message_id: int) -> Optional[models.Message]:
    result = await db.execute(
        select(models.Message)
        .execution_options(populate_existing=True)
        .filter(models.Message.id == message_id)
    )
    return result.scalars().first()

async def get_message_by_client_id(db: AsyncSession, sender_id: int, client_id: str) -> Optional[models.Message]:
    result = await db.execute(
        select(models.Message).filter_by(sender_id=sender_id, client_id=client_id)
    )
    return result.scalars().first()

async def create_message(
    db: AsyncSession,
    message: schemas.MessageCreate,
    sender_id: int,
    attachments: Sequence[dict] = (),
) -> Tuple[models.Message, bool]:
    """Store a message; returns (message, created).

    A message whose client id was already used by the same sender is not
    stored again: the earlier message comes back with created=False.
    """
    if message.client_id:
        existing = await get_message_by_client_id(db, sender_id, message.client_id)
        if existing:
            return existing, False

    db_message = models.Message(
        sender_id=sender_id,
        content=message.content,
        recipient_id=message.recipient_id,
        room_id=message.room_id,
        client_id=message.client_id,
        attachments=[models.Attachment(**attachment) for attachment in attachments],
    )
    db.add(db_message)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if not message.client_id:
            raise
        # a concurrent resend with the same client id got there first
        existing = await get_message_by_client_id(db, sender_id, message.client_id)
        if existing is None:
            raise
        return existing, False
    return await get_message(db, db_message.id), True

def _visible_to(user_id: int):
    return and_(
        models.Message.deleted_for_everyone == False,
        ~models.Message.deletions.any(models.MessageDeletion.user_id == user_id),
    )

def _direct_between(user_id: int, other_id: int):
    return or_(
        and_(models.Message.sender_id == user_id, models.Message.recipient_id == other_id),
        and_(models.Message.sender_id == other_id, models.Message.recipient_id == user_id),
    )

async def _page_ascending(db: AsyncSession, query, skip: int, limit: int) -> List[models.Message]:
    # newest page first, handed back oldest to newest
    result = await db.execute(query.order_by(models.Message.id.desc()).offset(skip).limit(limit))
    return list(reversed(result.scalars().all()))

async def get_direct_messages(db: AsyncSession, user_id: int, other_id: int, skip: int = 0, limit: int = 50) -> List[models.Message]:
    query = select(models.Message).filter(_direct_between(user_id, other_id), _visible_to(user_id))
    return await _page_ascending(db, query, skip, limit)

async def get_messages_for_room(db: AsyncSession, room_id: int, user_id: int, skip: int = 0, limit: int = 50) -> List[models.Message]:
    query = select(models.Message).filter(models.Message.room_id == room_id, _visible_to(user_id))
    return await _page_ascending(db, query, skip, limit)

async def mark_message_read(db: AsyncSession, message_id: int) -> Optional[models.Message]:
    result = await db.execute(
        update(models.Message).where(models.Message.id == message_id).values(is_read=True)
    )
    await db.commit()
    if result.rowcount == 0:
        return None
    return await get_message(db, message_id)

async def count_unread_direct(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count(models.Message.id)).filter(
            models.Message.recipient_id == user_id, models.Message.is_read == False
        )
    )
    return result.scalar_one()

async def message_parties(db: AsyncSession, message: models.Message) -> Set[int]:
    """Users who must all delete a message before it is purged."""
    if message.room_id is not None:
        return {message.sender_id, *await get_room_member_ids(db, message.room_id)}
    return {message.sender_id, message.recipient_id}

def _large_file_ids(message: models.Message) -> List[int]:
    return [a.file_id for a in message.attachments if a.is_large_file and a.file_id is not None]

async def soft_delete_message(db: AsyncSession, message: models.Message, user_id: int) -> Tuple[bool, List[int]]:
    """Hide a message from one user.

    Returns (purged, file_ids): purged is True when every party has now
    deleted the message and the row is gone; file_ids are the stored files
    its attachments referenced.
    """
    if user_id not in message.deleted_for:
        message.deletions.append(models.MessageDeletion(user_id=user_id))
        await db.flush()

    if not await message_parties(db, message) <= message.deleted_for:
        await db.commit()
        return False, []

    file_ids = _large_file_ids(message)
    await db.delete(message)
    await db.commit()
    return True, file_ids

async def delete_message_for_everyone(db: AsyncSession, message: models.Message) -> List[int]:
    file_ids = _large_file_ids(message)
    message.deleted_for_everyone = True
    message.content = None
    message.attachments.clear()
    await db.commit()
    return file_ids

async def clear_direct_history(db: AsyncSession, user_id: int, other_id: int) -> Tuple[int, List[int]]:
    """Soft-delete the whole conversation for user_id.

    Returns (cleared, file_ids): how many messages were newly hidden, and the
    stored files of messages both sides have now deleted (those rows are purged).
    """
    result = await db.execute(
        select(models.Message).filter(
            _direct_between(user_id, other_id),
            ~models.Message.deletions.any(models.MessageDeletion.user_id == user_id),
        )
    )
    messages = result.scalars().all()
    for message in messages:
        message.deletions.append(models.MessageDeletion(user_id=user_id))
    await db.flush()

    both_deleted = (
        select(models.Message)
        .execution_options(populate_existing=True)
        .filter(
            _direct_between(user_id, other_id),
            models.Message.deletions.any(models.MessageDeletion.user_id == user_id),
            models.Message.deletions.any(models.MessageDeletion.user_id == other_id),
        )
    )
    file_ids: List[int] = []
    for message in (await db.execute(both_deleted)).scalars().all():
        file_ids.extend(_large_file_ids(message))
        await db.delete(message)
    await db.commit()
    return len(messages), file_ids

# --- Unread counter CRUD ---
async def increment_unread(db: AsyncSession, user_id: int, chat_key: str) -> None:
    """Add one to a user's counter in place; no read-modify-write."""
    for _ in range(2):
        result = await db.execute(
            update(models.UnreadCounter)
            .where(models.UnreadCounter.user_id == user_id, models.UnreadCounter.chat_key == chat_key)
            .values(count=models.UnreadCounter.count + 1)
        )
        if result.rowcount:
            await db.commit()
            return
        db.add(models.UnreadCounter(user_id=user_id, chat_key=chat_key, count=1))
        try:
            await db.commit()
            return
        except IntegrityError:
            # another writer created the row between our update and insert
            await db.rollback()
    raise RuntimeError(f"Could not increment unread counter {chat_key} for user {user_id}")

async def get_unread_counts(db: AsyncSession, user_id: int) -> Dict[str, int]:
    result = await db.execute(
        select(models.UnreadCounter.chat_key, models.UnreadCounter.count)
        .filter(models.UnreadCounter.user_id == user_id, models.UnreadCounter.count > 0)
    )
    return {chat_key: count for chat_key, count in result.all()}

async def clear_unread(db: AsyncSession, user_id: int, chat_key: str) -> bool:
    result = await db.execute(
        delete(models.UnreadCounter).where(
            models.UnreadCounter.user_id == user_id, models.UnreadCounter.chat_key == chat_key
        )
    )
    await db.commit()
    return result.rowcount > 0

# --- Stored file CRUD ---
async def get_stored_file(db: AsyncSession, file_id: int) -> Optional[models.StoredFile]:
    result = await db.execute(select(models.StoredFile).filter(models.StoredFile.id == file_id))
    return result.scalars().first()

async def is_file_referenced(db: AsyncSession, file_id: int) -> bool:
    result = await db.execute(
        select(models.Attachment.id).filter(models.Attachment.file_id == file_id).limit(1)
    )
    return result.scalars().first() is not None
