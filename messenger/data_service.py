"""Data service over the chat tables.

Reads return enriched, immutable schema objects (participants with their
users, messages with sender, reply preview and reactions). Every
successful write is announced on the attached update feed with the raw
row, the way the hosted platform's change capture does it.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from messenger import models, schemas
from messenger.errors import RemoteError
from messenger.feed import UpdateFeed

logger = logging.getLogger(__name__)

USER_FIELDS = {"display_name", "avatar_url", "status", "last_seen", "theme",
               "notifications_enabled"}


def _describe(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


def _row(obj) -> Dict[str, Any]:
    return {c.key: getattr(obj, c.key) for c in obj.__table__.columns
            if c.key != "password_hash"}


def _message_options():
    return (
        selectinload(models.Message.sender),
        selectinload(models.Message.reply_message).selectinload(models.Message.sender),
        selectinload(models.Message.reactions).selectinload(models.Reaction.user),
    )


def _chat_options():
    return (
        selectinload(models.Chat.participants).selectinload(models.ChatParticipant.user),
    )


class DataService:
    def __init__(self, session_factory: async_sessionmaker, feed: Optional[UpdateFeed] = None):
        self.session_factory = session_factory
        self.feed = feed

    @asynccontextmanager
    async def _session(self, write: bool = False):
        try:
            async with self.session_factory() as session:
                if write:
                    async with session.begin():
                        yield session
                else:
                    yield session
        except SQLAlchemyError as e:
            raise RemoteError(_describe(e)) from e

    async def _emit(self, table: str, change: schemas.ChangeType,
                    new: Dict[str, Any] = None, old: Dict[str, Any] = None):
        if self.feed is None:
            return
        event = schemas.ChangeEvent(table=table, type=change, new=new or {}, old=old or {})
        try:
            await self.feed.publish(event)
        except RemoteError as e:
            # the write is committed already
            logger.warning("Could not publish %s on %s: %s", change.value, table, e.message)

    # Users

    async def insert_user(self, email: str, password_hash: Optional[str] = None,
                          display_name: Optional[str] = None) -> schemas.User:
        async with self._session(write=True) as session:
            user = models.User(email=email, password_hash=password_hash,
                               display_name=display_name)
            session.add(user)
            await session.flush()
            result = schemas.User.model_validate(user)
            row = _row(user)
        await self._emit("users", schemas.ChangeType.INSERT, new=row)
        return result

    async def get_user(self, user_id: str) -> Optional[schemas.User]:
        async with self._session() as session:
            user = await session.get(models.User, user_id)
            return schemas.User.model_validate(user) if user else None

    async def get_credentials(self, email: str) -> Optional[Tuple[schemas.User, Optional[str]]]:
        async with self._session() as session:
            result = await session.execute(select(models.User).where(models.User.email == email))
            user = result.scalar_one_or_none()
            if user is None:
                return None
            return schemas.User.model_validate(user), user.password_hash

    async def update_user(self, user_id: str, **values) -> schemas.User:
        unknown = set(values) - USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {', '.join(sorted(unknown))}")
        async with self._session(write=True) as session:
            user = await session.get(models.User, user_id)
            if user is None:
                raise RemoteError(f"User {user_id} not found")
            old = _row(user)
            for key, value in values.items():
                setattr(user, key, value.value if hasattr(value, "value") else value)
            user.updated_at = datetime.now(timezone.utc)
            await session.flush()
            result = schemas.User.model_validate(user)
            row = _row(user)
        await self._emit("users", schemas.ChangeType.UPDATE, new=row, old=old)
        return result

    # Chats

    async def list_chats(self, user_id: str) -> List[schemas.Chat]:
        member_of = select(models.ChatParticipant.chat_id).where(
            models.ChatParticipant.user_id == user_id)
        stmt = (select(models.Chat)
                .where(models.Chat.id.in_(member_of))
                .options(*_chat_options())
                .order_by(models.Chat.updated_at.desc()))
        async with self._session() as session:
            result = await session.execute(stmt)
            chats = result.scalars().all()
            latest = await self._latest_messages(session, [c.id for c in chats])
            return [schemas.Chat.model_validate(c).model_copy(update={"last_message": latest.get(c.id)})
                    for c in chats]

    async def _latest_messages(self, session, chat_ids: List[str]) -> Dict[str, schemas.Message]:
        if not chat_ids:
            return {}
        newest = (select(models.Message.chat_id, func.max(models.Message.created_at).label("at"))
                  .where(models.Message.chat_id.in_(chat_ids))
                  .where(models.Message.deleted.is_(False))
                  .group_by(models.Message.chat_id)
                  .subquery())
        stmt = (select(models.Message)
                .join(newest, and_(models.Message.chat_id == newest.c.chat_id,
                                   models.Message.created_at == newest.c.at))
                .where(models.Message.deleted.is_(False))
                .options(*_message_options()))
        result = await session.execute(stmt)
        return {m.chat_id: schemas.Message.model_validate(m) for m in result.scalars().all()}

    async def list_direct_chats(self, user_id: str) -> List[schemas.Chat]:
        member_of = select(models.ChatParticipant.chat_id).where(
            models.ChatParticipant.user_id == user_id)
        stmt = (select(models.Chat)
                .where(models.Chat.type == schemas.ChatType.DIRECT.value)
                .where(models.Chat.id.in_(member_of))
                .options(*_chat_options()))
        async with self._session() as session:
            result = await session.execute(stmt)
            return [schemas.Chat.model_validate(c) for c in result.scalars().all()]

    async def insert_chat(self, type: schemas.ChatType, created_by: str,
                          name: Optional[str] = None,
                          avatar_url: Optional[str] = None) -> schemas.Chat:
        async with self._session(write=True) as session:
            chat = models.Chat(type=schemas.ChatType(type).value, name=name,
                               avatar_url=avatar_url, created_by=created_by)
            session.add(chat)
            await session.flush()
            row = _row(chat)
        await self._emit("chats", schemas.ChangeType.INSERT, new=row)
        return schemas.Chat(**row)

    async def insert_participants(self, rows: Iterable[Dict[str, Any]]) -> List[schemas.ChatParticipant]:
        async with self._session(write=True) as session:
            participants = [models.ChatParticipant(**r) for r in rows]
            session.add_all(participants)
            await session.flush()
            inserted = [_row(p) for p in participants]
        for row in inserted:
            await self._emit("chat_participants", schemas.ChangeType.INSERT, new=row)
        return [schemas.ChatParticipant(**r) for r in inserted]

    async def touch_chat(self, chat_id: str):
        now = datetime.now(timezone.utc)
        async with self._session(write=True) as session:
            chat = await session.get(models.Chat, chat_id)
            if chat is None:
                raise RemoteError(f"Chat {chat_id} not found")
            old = _row(chat)
            chat.updated_at = now
            await session.flush()
            row = _row(chat)
        await self._emit("chats", schemas.ChangeType.UPDATE, new=row, old=old)

    async def delete_chat(self, chat_id: str):
        async with self._session(write=True) as session:
            chat = await session.get(models.Chat, chat_id)
            if chat is None:
                return
            old = _row(chat)
            await session.execute(delete(models.ChatParticipant)
                                  .where(models.ChatParticipant.chat_id == chat_id))
            await session.delete(chat)
        await self._emit("chats", schemas.ChangeType.DELETE, old=old)

    # Messages

    async def list_messages(self, chat_id: str) -> List[schemas.Message]:
        stmt = (select(models.Message)
                .where(models.Message.chat_id == chat_id)
                .where(models.Message.deleted.is_(False))
                .options(*_message_options())
                .order_by(models.Message.created_at.asc()))
        async with self._session() as session:
            result = await session.execute(stmt)
            return [schemas.Message.model_validate(m) for m in result.scalars().all()]

    async def get_message(self, message_id: str) -> Optional[schemas.Message]:
        stmt = (select(models.Message)
                .where(models.Message.id == message_id)
                .options(*_message_options()))
        async with self._session() as session:
            result = await session.execute(stmt)
            message = result.scalar_one_or_none()
            return schemas.Message.model_validate(message) if message else None

    async def insert_message(self, chat_id: str, sender_id: str, text: Optional[str],
                             reply_to: Optional[str] = None,
                             type: schemas.MessageType = schemas.MessageType.TEXT,
                             attachments: Any = None) -> schemas.Message:
        async with self._session(write=True) as session:
            message = models.Message(chat_id=chat_id, sender_id=sender_id, text=text,
                                     reply_to=reply_to, attachments=attachments,
                                     type=schemas.MessageType(type).value)
            session.add(message)
            await session.flush()
            row = _row(message)
        await self._emit("messages", schemas.ChangeType.INSERT, new=row)
        return await self.get_message(row["id"])

    async def _update_message(self, message_id: str, **values) -> schemas.Message:
        async with self._session(write=True) as session:
            message = await session.get(models.Message, message_id)
            if message is None:
                raise RemoteError(f"Message {message_id} not found")
            old = _row(message)
            for key, value in values.items():
                setattr(message, key, value)
            message.updated_at = datetime.now(timezone.utc)
            await session.flush()
            row = _row(message)
        await self._emit("messages", schemas.ChangeType.UPDATE, new=row, old=old)
        return await self.get_message(message_id)

    async def edit_message(self, message_id: str, text: str) -> schemas.Message:
        return await self._update_message(message_id, text=text, edited=True)

    async def soft_delete_message(self, message_id: str) -> schemas.Message:
        return await self._update_message(message_id, deleted=True)

    # Reactions and pins

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> schemas.Reaction:
        async with self._session(write=True) as session:
            reaction = models.Reaction(message_id=message_id, user_id=user_id, emoji=emoji)
            session.add(reaction)
            await session.flush()
            row = _row(reaction)
        await self._emit("reactions", schemas.ChangeType.INSERT, new=row)
        return schemas.Reaction(**row)

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str):
        row = {"message_id": message_id, "user_id": user_id, "emoji": emoji}
        async with self._session(write=True) as session:
            result = await session.execute(
                delete(models.Reaction)
                .where(models.Reaction.message_id == message_id)
                .where(models.Reaction.user_id == user_id)
                .where(models.Reaction.emoji == emoji))
        if result.rowcount:
            await self._emit("reactions", schemas.ChangeType.DELETE, old=row)

    async def pin_message(self, chat_id: str, message_id: str,
                          pinned_by: str) -> schemas.PinnedMessage:
        async with self._session(write=True) as session:
            pin = models.PinnedMessage(chat_id=chat_id, message_id=message_id,
                                       pinned_by=pinned_by)
            session.add(pin)
            await session.flush()
            row = _row(pin)
        await self._emit("pinned_messages", schemas.ChangeType.INSERT, new=row)
        return schemas.PinnedMessage(**row)

    async def unpin_message(self, chat_id: str, message_id: str):
        row = {"chat_id": chat_id, "message_id": message_id}
        async with self._session(write=True) as session:
            result = await session.execute(
                delete(models.PinnedMessage)
                .where(models.PinnedMessage.chat_id == chat_id)
                .where(models.PinnedMessage.message_id == message_id))
        if result.rowcount:
            await self._emit("pinned_messages", schemas.ChangeType.DELETE, old=row)

    async def list_pinned(self, chat_id: str) -> List[schemas.PinnedMessage]:
        stmt = (select(models.PinnedMessage)
                .where(models.PinnedMessage.chat_id == chat_id)
                .options(selectinload(models.PinnedMessage.message).options(*_message_options()))
                .order_by(models.PinnedMessage.pinned_at.desc()))
        async with self._session() as session:
            result = await session.execute(stmt)
            return [schemas.PinnedMessage.model_validate(p) for p in result.scalars().all()]
