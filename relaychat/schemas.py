from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel
from typing import List, Literal, Optional, Union
import datetime

# Wire names are camelCase; python attributes stay snake_case
class Schema(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

# User Schemas
class UserBase(Schema):
    name: str = Field(min_length=1)
    email: EmailStr

class UserCreate(UserBase):
    password: str = Field(min_length=6)

class UserLogin(Schema):
    email: EmailStr
    password: str

class UserUpdate(Schema):
    name: Optional[str] = Field(default=None, min_length=1)
    avatar: Optional[str] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = Field(default=None, min_length=6)

class UserPublic(Schema):
    id: int
    name: str
    email: str
    avatar: Optional[str] = None

class User(UserPublic):
    is_online: bool
    last_active: Optional[datetime.datetime] = None

class AuthResponse(Schema):
    user: UserPublic
    access_token: str

# Room Schemas
class RoomBase(Schema):
    name: str = Field(min_length=1)
    description: str = ""
    image: Optional[str] = None
    is_private: bool = False

class RoomCreate(RoomBase):
    members: List[int] = []

class RoomUpdate(Schema):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None
    is_private: Optional[bool] = None

class Room(RoomBase):
    id: int
    creator_id: int
    creator: UserPublic
    members: List[User]
    created_at: datetime.datetime

class RemovedRoom(Room):
    removed: bool = True

# Message Schemas
class AttachmentIn(Schema):
    filename: str
    content_type: str
    file_type: Optional[str] = None
    size: Optional[int] = None
    data: Optional[str] = None
    file_id: Optional[int] = None
    is_large_file: bool = False

class Attachment(Schema):
    id: int
    filename: str
    content_type: str
    file_type: Optional[str] = None
    size: int
    data: Optional[str] = None
    file_id: Optional[int] = None
    is_large_file: bool

class MessageCreate(Schema):
    content: Optional[str] = None
    recipient_id: Optional[int] = None
    room_id: Optional[int] = None
    attachments: List[AttachmentIn] = []
    client_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def check_target_and_body(self):
        if (self.recipient_id is None) == (self.room_id is None):
            raise ValueError("Message must be addressed to exactly one of recipientId or roomId")
        if not (self.content and self.content.strip()) and not self.attachments:
            raise ValueError("Message must contain either text content or attachments")
        return self

class Message(Schema):
    id: int
    sender: UserPublic
    content: Optional[str] = None
    recipient_id: Optional[int] = None
    room_id: Optional[int] = None
    attachments: List[Attachment] = []
    is_read: bool
    deleted_for_everyone: bool = False
    client_id: Optional[str] = None
    created_at: datetime.datetime

class MessageDeleted(Schema):
    message_id: int
    deleted_for_everyone: bool
    recipient_id: Optional[int] = None
    room_id: Optional[int] = None

class ClearHistoryResult(Schema):
    success: bool = True
    deleted_count: int

class UnreadCount(Schema):
    count: int

# File Schemas
class StoredFile(Schema):
    id: int
    original_filename: str
    content_type: str
    size: int
    media_type: str
    file_type: str
    stored_in_filesystem: bool
    created_at: datetime.datetime

class FileThumbnail(Schema):
    file_type: str
    media_type: str
    filename: str

# WebSocket event payloads
class RoomRef(Schema):
    room_id: int

class TypingEvent(Schema):
    recipient_id: Optional[int] = None
    room_id: Optional[int] = None
    is_typing: bool

class MarkRead(Schema):
    message_id: int

class MarkChatRead(Schema):
    chat_id: int
    chat_type: Literal["private", "room"]

class Frame(BaseModel):
    event: str
    data: dict = {}
    id: Optional[Union[int, str]] = None
