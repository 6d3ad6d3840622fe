"""Conversation and message store.

Holds the client-side view of the signed-in user's chats, the message
history of each opened chat and the typing indicators, and keeps it in step
with the data service through explicit loads (pull) and the update feed
(push).

State lives in a single immutable ``StoreSnapshot``. Every mutation swaps in
a new snapshot with whole sub-trees replaced and then notifies listeners,
so views registered through ``subscribe`` always see a consistent state.

Concurrency notes:
    Everything runs on one event loop. Loads are fenced per key (the chat
    list, or one chat's messages): a result is applied only if no newer
    load for the same key was started meanwhile.
    Feed callbacks that are still re-fetching when their subscription is
    torn down do not write their result.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from messenger import config
from messenger.auth import Session
from messenger.data_service import DataService
from messenger.errors import NotAuthenticatedError, PartialCreationError, RemoteError
from messenger.feed import Subscription, UpdateFeed
from messenger.schemas import (ChangeEvent, Chat, ChatType, Message, PinnedMessage,
                               StoreSnapshot, TypingIndicator, UserProfile)

logger = logging.getLogger(__name__)

Listener = Callable[[StoreSnapshot], None]

CHATS_KEY = "chats"
PENDING_PREFIX = "pending-"


def _messages_key(chat_id: str) -> Tuple[str, str]:
    return ("messages", chat_id)


class Unsubscribe:
    """Teardown handle for a feed subscription. Calling it twice is harmless."""

    def __init__(self, subscription: Subscription):
        self.subscription = subscription

    @property
    def closed(self) -> bool:
        return self.subscription.closed

    async def __call__(self):
        await self.subscription.unsubscribe()


class ChatStore:
    def __init__(self, data: DataService, session: Session, feed: UpdateFeed,
                 optimistic: bool = None, chats_refresh_delay: float = None):
        self.data = data
        self.session = session
        self.feed = feed
        self.optimistic = config.OPTIMISTIC_SEND if optimistic is None else optimistic
        self.chats_refresh_delay = (config.CHATS_REFRESH_DELAY if chats_refresh_delay is None
                                    else chats_refresh_delay)
        self._state = StoreSnapshot()
        self._listeners: List[Listener] = []
        self._tickets: Dict[Hashable, int] = {}
        self._refresh_scheduled = False

    # Snapshot and observers

    @property
    def snapshot(self) -> StoreSnapshot:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes):
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Store listener %r failed", listener)

    def _record(self, error: RemoteError):
        self._set(error=error.message)

    def _require_user(self):
        user = self.session.current_user()
        if user is None:
            raise NotAuthenticatedError()
        return user

    def _issue(self, key: Hashable) -> int:
        ticket = self._tickets.get(key, 0) + 1
        self._tickets[key] = ticket
        return ticket

    def _is_current(self, key: Hashable, ticket: int) -> bool:
        return self._tickets.get(key) == ticket

    # Message list helpers

    def _replace_messages(self, chat_id: str, messages):
        updated = dict(self._state.messages)
        updated[chat_id] = tuple(messages)
        self._set(messages=updated)

    def _append_message(self, chat_id: str, message: Message) -> bool:
        current = self._state.messages_for(chat_id)
        if any(m.id == message.id for m in current):
            return False
        self._replace_messages(chat_id, current + (message,))
        return True

    def _drop_message(self, chat_id: str, message_id: str):
        current = self._state.messages_for(chat_id)
        remaining = [m for m in current if m.id != message_id]
        if len(remaining) != len(current):
            self._replace_messages(chat_id, remaining)

    def _confirm(self, chat_id: str, pending_id: str, message: Message):
        current = list(self._state.messages_for(chat_id))
        ids = [m.id for m in current]
        if message.id in ids:
            # the feed got there first
            self._drop_message(chat_id, pending_id)
        elif pending_id in ids:
            current[ids.index(pending_id)] = message
            self._replace_messages(chat_id, current)
        else:
            self._append_message(chat_id, message)

    # Loading

    async def load_chats(self) -> Tuple[Chat, ...]:
        return await self._load_chats(lambda: True)

    async def _load_chats(self, still_wanted: Callable[[], bool]) -> Tuple[Chat, ...]:
        user = self._require_user()
        ticket = self._issue(CHATS_KEY)
        self._set(loading=True, error=None)
        try:
            chats = await self.data.list_chats(user.id)
        except RemoteError as e:
            if self._is_current(CHATS_KEY, ticket):
                self._set(loading=False, error=e.message)
            raise
        if not self._is_current(CHATS_KEY, ticket):
            logger.debug("Discarding stale chat list (request %d)", ticket)
            return self._state.chats
        if not still_wanted():
            self._set(loading=False)
            return self._state.chats
        self._set(chats=tuple(chats), loading=False)
        return self._state.chats

    async def load_messages(self, chat_id: str) -> Tuple[Message, ...]:
        key = _messages_key(chat_id)
        ticket = self._issue(key)
        try:
            messages = await self.data.list_messages(chat_id)
        except RemoteError as e:
            if self._is_current(key, ticket):
                self._record(e)
            raise
        if not self._is_current(key, ticket):
            logger.debug("Discarding stale messages for chat %s (request %d)", chat_id, ticket)
            return self._state.messages_for(chat_id)
        self._replace_messages(chat_id, messages)
        return self._state.messages_for(chat_id)

    async def load_pinned(self, chat_id: str) -> Tuple[PinnedMessage, ...]:
        try:
            return tuple(await self.data.list_pinned(chat_id))
        except RemoteError as e:
            self._record(e)
            raise

    # Mutations

    async def send_message(self, chat_id: str, text: str, reply_to: str = None) -> Message:
        user = self._require_user()
        pending = None
        if self.optimistic:
            pending = Message(
                id=f"{PENDING_PREFIX}{uuid.uuid4().hex}",
                chat_id=chat_id,
                sender_id=user.id,
                text=text,
                reply_to=reply_to,
                created_at=datetime.now(timezone.utc),
                sender=UserProfile(id=user.id, display_name=user.display_name,
                                   avatar_url=user.avatar_url),
                pending=True,
            )
            self._append_message(chat_id, pending)

        try:
            message = await self.data.insert_message(chat_id, user.id, text, reply_to=reply_to)
        except RemoteError as e:
            if pending is not None:
                self._drop_message(chat_id, pending.id)
            self._record(e)
            raise
        if pending is not None:
            self._confirm(chat_id, pending.id, message)

        try:
            await self.data.touch_chat(chat_id)
        except RemoteError as e:
            # the message is stored; only the chat's ordering timestamp is stale
            logger.warning("Could not bump chat %s after send: %s", chat_id, e.message)
            self._record(e)
        return message

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> Message:
        self._require_user()
        try:
            message = await self.data.edit_message(message_id, text)
        except RemoteError as e:
            self._record(e)
            raise
        current = list(self._state.messages_for(chat_id))
        for i, m in enumerate(current):
            if m.id == message_id:
                current[i] = message
                self._replace_messages(chat_id, current)
                break
        return message

    async def delete_message(self, chat_id: str, message_id: str):
        self._require_user()
        try:
            await self.data.soft_delete_message(message_id)
        except RemoteError as e:
            self._record(e)
            raise
        self._drop_message(chat_id, message_id)

    async def add_reaction(self, message_id: str, emoji: str):
        user = self._require_user()
        try:
            return await self.data.add_reaction(message_id, user.id, emoji)
        except RemoteError as e:
            self._record(e)
            raise

    async def remove_reaction(self, message_id: str, emoji: str):
        user = self._require_user()
        try:
            await self.data.remove_reaction(message_id, user.id, emoji)
        except RemoteError as e:
            self._record(e)
            raise

    async def pin_message(self, chat_id: str, message_id: str) -> PinnedMessage:
        user = self._require_user()
        try:
            return await self.data.pin_message(chat_id, message_id, user.id)
        except RemoteError as e:
            self._record(e)
            raise

    async def unpin_message(self, chat_id: str, message_id: str):
        self._require_user()
        try:
            await self.data.unpin_message(chat_id, message_id)
        except RemoteError as e:
            self._record(e)
            raise

    # Chat creation

    async def create_direct_chat(self, user_id: str) -> str:
        """Return the direct chat between the current user and ``user_id``.

        An existing two-person chat with exactly this pair is reused, so
        calling this again (from either side) creates nothing new.
        """
        user = self._require_user()
        if user_id == user.id:
            raise ValueError("Cannot start a direct chat with yourself")
        pair = {user.id, user_id}
        try:
            existing = await self.data.list_direct_chats(user.id)
            for chat in existing:
                if len(chat.participants) == 2 and set(chat.participant_ids) == pair:
                    return chat.id

            chat = await self.data.insert_chat(ChatType.DIRECT, created_by=user.id)
            await self._add_participants(chat.id, [
                {"chat_id": chat.id, "user_id": user.id},
                {"chat_id": chat.id, "user_id": user_id},
            ])
        except RemoteError as e:
            self._record(e)
            raise
        logger.info("Created direct chat %s between %s and %s", chat.id, user.id, user_id)
        return chat.id

    async def create_group_chat(self, name: str, user_ids: List[str]) -> str:
        user = self._require_user()
        if not name:
            raise ValueError("A group chat needs a name")
        try:
            chat = await self.data.insert_chat(ChatType.GROUP, created_by=user.id, name=name)
            rows = [{"chat_id": chat.id, "user_id": user.id, "is_admin": True}]
            rows += [{"chat_id": chat.id, "user_id": uid, "is_admin": False}
                     for uid in dict.fromkeys(user_ids) if uid != user.id]
            await self._add_participants(chat.id, rows)
        except RemoteError as e:
            self._record(e)
            raise
        logger.info("Created group chat %s (%s) with %d members", chat.id, name, len(rows))
        return chat.id

    async def _add_participants(self, chat_id: str, rows: List[dict]):
        try:
            return await self.data.insert_participants(rows)
        except RemoteError as e:
            try:
                await self.data.delete_chat(chat_id)
            except RemoteError as rollback_error:
                logger.error("Chat %s left without participants: %s", chat_id,
                             rollback_error.message)
                raise PartialCreationError(
                    f"{e.message} (rollback failed: {rollback_error.message})",
                    chat_id, rolled_back=False) from e
            logger.warning("Rolled back chat %s after participant insert failed", chat_id)
            raise PartialCreationError(e.message, chat_id, rolled_back=True) from e

    # Live updates

    async def subscribe_to_chat(self, chat_id: str) -> Unsubscribe:
        async def on_insert(change: ChangeEvent):
            message_id = change.new.get("id")
            if sub.closed or message_id is None:
                return
            try:
                message = await self.data.get_message(message_id)
            except RemoteError as e:
                logger.warning("Could not fetch message %s: %s", message_id, e.message)
                self._record(e)
                return
            if message is None or message.deleted or sub.closed:
                return
            self._append_message(chat_id, message)

        sub = await self.feed.subscribe(f"chat-{chat_id}", "messages", on_insert,
                                        event="INSERT", filter=f"chat_id=eq.{chat_id}")
        return Unsubscribe(sub)

    async def subscribe_to_chats(self) -> Unsubscribe:
        async def on_change(change: ChangeEvent):
            if not sub.closed:
                await self._refresh_chats(sub)

        sub = await self.feed.subscribe("chats", "chats", on_change)
        return Unsubscribe(sub)

    async def _refresh_chats(self, sub: Subscription):
        if self.chats_refresh_delay > 0:
            if self._refresh_scheduled:
                return
            self._refresh_scheduled = True
            try:
                await asyncio.sleep(self.chats_refresh_delay)
            finally:
                self._refresh_scheduled = False
        if sub.closed:
            return
        try:
            await self._load_chats(lambda: not sub.closed)
        except (RemoteError, NotAuthenticatedError) as e:
            logger.warning("Chat list refresh failed: %s", e)

    # Local-only state

    def set_active_chat(self, chat_id: Optional[str]):
        self._set(active_chat_id=chat_id)

    def add_typing_user(self, chat_id: str, user_id: str):
        others = tuple(t for t in self._state.typing_users
                       if not (t.chat_id == chat_id and t.user_id == user_id))
        self._set(typing_users=others + (TypingIndicator(chat_id=chat_id, user_id=user_id),))

    def remove_typing_user(self, chat_id: str, user_id: str):
        remaining = tuple(t for t in self._state.typing_users
                          if not (t.chat_id == chat_id and t.user_id == user_id))
        if len(remaining) != len(self._state.typing_users):
            self._set(typing_users=remaining)

    def clear_error(self):
        self._set(error=None)
