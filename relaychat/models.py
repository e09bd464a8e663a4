import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, LargeBinary, UniqueConstraint
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    avatar = Column(String, default="https://via.placeholder.com/150")
    is_online = Column(Boolean, default=False, nullable=False)
    last_active = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    unread_counters = relationship("UnreadCounter", back_populates="user", cascade="all, delete-orphan")


class Room(Base):
    __tablename__ = "rooms"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, index=True, nullable=False)
    description = Column(String, default="")
    image = Column(String, default="https://via.placeholder.com/150?text=Room")
    is_private = Column(Boolean, default=False, nullable=False)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    creator = relationship("User", lazy="selectin")
    members = relationship("User", secondary="room_members", lazy="selectin", order_by="User.id", viewonly=True)


class RoomMember(Base):
    __tablename__ = "room_members"
    __table_args__ = (UniqueConstraint("room_id", "user_id"),)
    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("sender_id", "client_id"),)
    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True, index=True)
    content = Column(Text, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    deleted_for_everyone = Column(Boolean, default=False, nullable=False)
    # Sender-chosen key; a resend with the same key is not applied twice
    client_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    sender = relationship("User", foreign_keys=[sender_id], lazy="selectin")
    attachments = relationship(
        "Attachment", back_populates="message", cascade="all, delete-orphan",
        lazy="selectin", order_by="Attachment.id",
    )
    deletions = relationship("MessageDeletion", cascade="all, delete-orphan", lazy="selectin")

    @property
    def deleted_for(self):
        return {deletion.user_id for deletion in self.deletions}


class MessageDeletion(Base):
    __tablename__ = "message_deletions"
    __table_args__ = (UniqueConstraint("message_id", "user_id"),)
    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)


class Attachment(Base):
    __tablename__ = "attachments"
    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    file_type = Column(String, nullable=True)
    size = Column(Integer, nullable=False)
    # base64 payload for inline attachments, empty when offloaded to file storage
    data = Column(Text, nullable=True)
    file_id = Column(Integer, ForeignKey("stored_files.id"), nullable=True)
    is_large_file = Column(Boolean, default=False, nullable=False)

    message = relationship("Message", back_populates="attachments")


class StoredFile(Base):
    __tablename__ = "stored_files"
    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String, nullable=False)
    original_filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    media_type = Column(String, nullable=False)
    file_type = Column(String, nullable=False)
    uploader_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    data = Column(LargeBinary, nullable=True)
    stored_in_filesystem = Column(Boolean, default=False, nullable=False)
    file_path = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class UnreadCounter(Base):
    __tablename__ = "unread_counters"
    __table_args__ = (UniqueConstraint("user_id", "chat_key"),)
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    chat_key = Column(String, nullable=False)
    count = Column(Integer, default=0, nullable=False)

    user = relationship("User", back_populates="unread_counters")
