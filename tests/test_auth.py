from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from messenger.auth import (Session, create_access_token, decode_token, hash_password,
                            verify_password)
from messenger.errors import NotAuthenticatedError, RemoteError
from messenger.schemas import UserStatus


def test_token_round_trip():
    token = create_access_token({"sub": "u1"})
    assert decode_token(token)["sub"] == "u1"


def test_expired_or_garbled_tokens_decode_to_none():
    assert decode_token(create_access_token({"sub": "u1"}, timedelta(seconds=-1))) is None
    assert decode_token("not-a-token") is None


def test_password_hashing():
    stored = hash_password("s3cret")
    assert verify_password("s3cret", stored)
    assert not verify_password("wrong", stored)
    assert not verify_password("s3cret", None)
    assert hash_password("s3cret") != stored
    assert stored.startswith("$2b$")
    assert not verify_password("s3cret", "salt$deadbeef")


async def test_sign_up_defaults_display_name(data):
    user = await Session(data).sign_up("dana@example.com", "pw")
    assert user.display_name == "dana"


async def test_duplicate_sign_up_fails(data):
    session = Session(data)
    await session.sign_up("dana@example.com", "pw")
    with pytest.raises(RemoteError):
        await session.sign_up("dana@example.com", "pw")
    assert session.error
    assert session.loading is False


async def test_sign_in_marks_user_online(data):
    await Session(data).sign_up("dana@example.com", "pw", display_name="Dana")
    session = Session(data)

    user = await session.sign_in("dana@example.com", "pw")

    assert session.current_user() == user
    assert user.status == UserStatus.ONLINE
    assert decode_token(session.access_token)["sub"] == user.id


async def test_sign_in_with_bad_password(data):
    await Session(data).sign_up("dana@example.com", "pw")
    session = Session(data)
    with pytest.raises(RemoteError):
        await session.sign_in("dana@example.com", "nope")
    assert session.current_user() is None
    assert session.error == "Invalid login credentials"
    session.clear_error()
    assert session.error is None


async def test_restore_from_token(data):
    signed_in = Session(data)
    await signed_in.sign_up("dana@example.com", "pw")
    await signed_in.sign_in("dana@example.com", "pw")

    restored = Session(data)
    user = await restored.restore(signed_in.access_token)
    assert user.id == signed_in.user.id

    with pytest.raises(NotAuthenticatedError):
        await Session(data).restore("bogus")


async def test_update_profile(data):
    session = Session(data)
    with pytest.raises(NotAuthenticatedError):
        await session.update_profile(display_name="X")

    await session.sign_up("dana@example.com", "pw")
    await session.sign_in("dana@example.com", "pw")
    user = await session.update_profile(display_name="Dana S.", theme="dark")
    assert (user.display_name, user.theme) == ("Dana S.", "dark")

    with pytest.raises(ValueError):
        await session.update_profile(email="other@example.com")


async def test_sign_out_marks_user_offline(data):
    session = Session(data)
    await session.sign_up("dana@example.com", "pw")
    user = await session.sign_in("dana@example.com", "pw")

    await session.sign_out()

    assert session.current_user() is None
    assert session.access_token is None
    assert (await data.get_user(user.id)).status == UserStatus.OFFLINE


async def test_sign_out_proceeds_when_presence_write_fails(data, monkeypatch):
    session = Session(data)
    await session.sign_up("dana@example.com", "pw")
    await session.sign_in("dana@example.com", "pw")
    monkeypatch.setattr(data, "update_user", AsyncMock(side_effect=RemoteError("down")))

    await session.sign_out()

    assert session.current_user() is None
    assert session.error is None
