import os


def _env(name: str, default: str) -> str:
    return os.getenv(f"MESSENGER_{name}", default)


def _flag(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").lower() in ("1", "true", "yes", "on")


DATABASE_URL = _env("DATABASE_URL", "sqlite+aiosqlite:///./chat.db")
SQL_ECHO = _flag("SQL_ECHO", False)

REDIS_URL = _env("REDIS_URL", "redis://redis:6379/0")
# "local" keeps change events in-process, "redis" shares them through REDIS_URL
FEED_BACKEND = _env("FEED_BACKEND", "local")

SECRET_KEY = _env("SECRET_KEY", "change-me-in-production")
ALGORITHM = _env("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(_env("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))

# Append a pending copy of a sent message before the insert returns.
OPTIMISTIC_SEND = _flag("OPTIMISTIC_SEND", True)
# Seconds to coalesce chat-list invalidations; 0 refreshes once per event.
CHATS_REFRESH_DELAY = float(_env("CHATS_REFRESH_DELAY", "0"))
# Change events buffered per websocket client before new ones are dropped.
WS_OUTBOX_SIZE = int(_env("WS_OUTBOX_SIZE", "1000"))
