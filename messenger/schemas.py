from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class UserStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class ChatType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Snapshot(BaseModel):
    # everything handed out of the store is read-only
    model_config = ConfigDict(frozen=True, from_attributes=True)


class User(Snapshot):
    id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: UserStatus = UserStatus.OFFLINE
    last_seen: Optional[datetime] = None
    theme: str = "light"
    notifications_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserProfile(Snapshot):
    id: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class ChatParticipant(Snapshot):
    chat_id: str
    user_id: str
    is_admin: bool = False
    joined_at: Optional[datetime] = None
    user: Optional[User] = None


class ReplyPreview(Snapshot):
    id: str
    text: Optional[str] = None
    sender: Optional[UserProfile] = None


class MessageReaction(Snapshot):
    emoji: str
    user_id: str
    user: Optional[UserProfile] = None


class Message(Snapshot):
    id: str
    chat_id: str
    sender_id: str
    text: Optional[str] = None
    type: MessageType = MessageType.TEXT
    attachments: Optional[Any] = None
    reply_to: Optional[str] = None
    edited: bool = False
    deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    sender: Optional[UserProfile] = None
    reply_message: Optional[ReplyPreview] = None
    reactions: Tuple[MessageReaction, ...] = ()
    # local-only copy shown until the data service confirms the insert
    pending: bool = False


class Chat(Snapshot):
    id: str
    type: ChatType
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    participants: Tuple[ChatParticipant, ...] = ()
    last_message: Optional[Message] = None

    @property
    def participant_ids(self) -> List[str]:
        return [p.user_id for p in self.participants]


class Reaction(Snapshot):
    message_id: str
    emoji: str
    user_id: str
    created_at: Optional[datetime] = None


class PinnedMessage(Snapshot):
    chat_id: str
    message_id: str
    pinned_by: str
    pinned_at: Optional[datetime] = None
    message: Optional[Message] = None


class TypingIndicator(Snapshot):
    chat_id: str
    user_id: str


class ChangeEvent(Snapshot):
    table: str
    type: ChangeType
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)


class StoreSnapshot(Snapshot):
    chats: Tuple[Chat, ...] = ()
    messages: Dict[str, Tuple[Message, ...]] = Field(default_factory=dict)
    typing_users: Tuple[TypingIndicator, ...] = ()
    active_chat_id: Optional[str] = None
    loading: bool = False
    error: Optional[str] = None

    def messages_for(self, chat_id: str) -> Tuple[Message, ...]:
        return self.messages.get(chat_id, ())


# Request/response bodies for the HTTP API


class UserCreate(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = None


class Credentials(BaseModel):
    email: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str


class DirectChatCreate(BaseModel):
    user_id: str


class GroupChatCreate(BaseModel):
    name: str
    participants: List[str]


class ChatCreated(BaseModel):
    chat_id: str


class MessageIn(BaseModel):
    text: str
    reply_to: Optional[str] = None
