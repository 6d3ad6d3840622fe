import uuid
from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, Enum, ForeignKey,
                        String, Text)
from sqlalchemy.orm import relationship

from messenger.db import Base


def gen_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=gen_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    status = Column(Enum("online", "away", "offline", name="user_status"), default="offline")
    last_seen = Column(DateTime(timezone=True), default=utcnow)
    theme = Column(String, default="light")
    notifications_enabled = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class Chat(Base):
    __tablename__ = "chats"
    id = Column(String, primary_key=True, default=gen_uuid)
    type = Column(Enum("direct", "group", name="chat_type"), nullable=False)
    name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    participants = relationship("ChatParticipant", cascade="all, delete-orphan",
                                passive_deletes=True)


class ChatParticipant(Base):
    __tablename__ = "chat_participants"
    chat_id = Column(String, ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    is_admin = Column(Boolean, default=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")


class Message(Base):
    __tablename__ = "messages"
    id = Column(String, primary_key=True, default=gen_uuid)
    chat_id = Column(String, ForeignKey("chats.id", ondelete="CASCADE"), index=True)
    sender_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"))
    text = Column(Text, nullable=True)
    type = Column(Enum("text", "image", "file", "voice", name="message_type"), default="text")
    attachments = Column(JSON, nullable=True)
    reply_to = Column(String, ForeignKey("messages.id"), nullable=True)
    edited = Column(Boolean, default=False)
    deleted = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    sender = relationship("User")
    reply_message = relationship("Message", remote_side=[id])
    reactions = relationship("Reaction", cascade="all, delete-orphan", passive_deletes=True)


class Reaction(Base):
    __tablename__ = "reactions"
    message_id = Column(String, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    emoji = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")


class PinnedMessage(Base):
    __tablename__ = "pinned_messages"
    chat_id = Column(String, ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    message_id = Column(String, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    pinned_by = Column(String, ForeignKey("users.id", ondelete="CASCADE"))
    pinned_at = Column(DateTime(timezone=True), default=utcnow)

    message = relationship("Message")
