import pytest

from messenger import db
from messenger.auth import Session
from messenger.data_service import DataService
from messenger.feed import LocalFeed
from messenger.store import ChatStore


@pytest.fixture
async def engine(tmp_path):
    engine = db.make_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}", echo=False)
    await db.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def feed():
    return LocalFeed()


@pytest.fixture
def data(engine, feed):
    return DataService(db.make_session_factory(engine), feed)


@pytest.fixture
async def users(data):
    """Three registered users keyed u1..u3."""
    return {
        key: await data.insert_user(f"{key}@example.com", display_name=name)
        for key, name in (("u1", "Alice"), ("u2", "Bob"), ("u3", "Carol"))
    }


def signed_in(data, user):
    session = Session(data)
    session.user = user
    return session


@pytest.fixture
def make_store(data, feed):
    def factory(user=None, **kwargs):
        kwargs.setdefault("optimistic", True)
        kwargs.setdefault("chats_refresh_delay", 0)
        return ChatStore(data, signed_in(data, user), feed, **kwargs)
    return factory


@pytest.fixture
def store(make_store, users):
    return make_store(users["u1"])
