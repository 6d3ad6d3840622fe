"""Derived values for rendering the chat list."""
from typing import Iterable, List, Optional

from messenger.schemas import Chat, ChatParticipant, ChatType, StoreSnapshot, TypingIndicator

UNNAMED_GROUP = "Unnamed Group"
UNKNOWN_USER = "Unknown User"


def other_participant(chat: Chat, current_user_id: str) -> Optional[ChatParticipant]:
    for participant in chat.participants:
        if participant.user_id != current_user_id:
            return participant
    return None


def chat_display_name(chat: Chat, current_user_id: str) -> str:
    if chat.type == ChatType.GROUP:
        return chat.name or UNNAMED_GROUP
    other = other_participant(chat, current_user_id)
    if other is not None and other.user is not None and other.user.display_name:
        return other.user.display_name
    return UNKNOWN_USER


def chat_initial(chat: Chat, current_user_id: str) -> str:
    if chat.type == ChatType.GROUP:
        return chat.name[0].upper() if chat.name else "?"
    other = other_participant(chat, current_user_id)
    if other is not None and other.user is not None and other.user.display_name:
        return other.user.display_name[0].upper()
    return "?"


def filter_chats(chats: Iterable[Chat], query: str, current_user_id: str) -> List[Chat]:
    """Case-insensitive search over group names and direct-chat partners."""
    chats = list(chats)
    if not query:
        return chats
    needle = query.lower()
    matched = []
    for chat in chats:
        if chat.type == ChatType.GROUP:
            haystack = chat.name or ""
        else:
            other = other_participant(chat, current_user_id)
            haystack = (other.user.display_name or "") if other and other.user else ""
        if needle in haystack.lower():
            matched.append(chat)
    return matched


def typing_users_for(snapshot: StoreSnapshot, chat_id: str,
                     exclude_user_id: str = None) -> List[TypingIndicator]:
    return [t for t in snapshot.typing_users
            if t.chat_id == chat_id and t.user_id != exclude_user_id]
