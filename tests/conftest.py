"""Shared fixtures for idlekick tests."""

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from telegram import (
    Chat,
    ChatMemberLeft,
    ChatMemberMember,
    ChatMemberUpdated,
    Message,
    Update,
    User,
)
from telegram.constants import ChatType

from config import Config
from db_utils import ActivityStore, utc_timezone

GROUP_ID = -1001234567890
T0 = datetime(2024, 1, 10, 12, 0, 0, tzinfo=utc_timezone)

CONFIG_KEYS = ("TELEGRAM_TOKEN", "TELEGRAM_CHAT", "DURATION", "DATABASE_PATH", "SCAN_INTERVAL", "LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Strip idlekick settings from the environment for test isolation."""
    for key in CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store(tmp_path):
    """ActivityStore on a fresh SQLite file."""
    activity_store = ActivityStore(str(tmp_path / "activity.db"))
    activity_store.initialize_db()
    return activity_store


@pytest.fixture
def cfg(tmp_path):
    return Config(
        token="123456:TEST-TOKEN",
        chat_id=GROUP_ID,
        duration=timedelta(hours=24),
        database_path=str(tmp_path / "activity.db"),
        scan_interval=timedelta(hours=1),
        log_level="INFO",
    )


@pytest.fixture
def bot():
    """Stand-in for telegram.Bot: bans succeed, profiles resolve to user<id>."""
    fake = AsyncMock()
    fake.ban_chat_member.return_value = True

    async def get_chat(chat_id):
        return Chat(
            id=chat_id,
            type=ChatType.PRIVATE,
            username=f"user{chat_id}",
            first_name="First",
            last_name="Last",
        )

    fake.get_chat.side_effect = get_chat
    return fake


@pytest.fixture
def context(bot, store, cfg):
    return SimpleNamespace(bot=bot, bot_data={"store": store, "config": cfg})


def make_user(user_id, first_name="Member"):
    return User(id=user_id, first_name=first_name, is_bot=False)


def make_group(chat_type=ChatType.SUPERGROUP):
    if chat_type == ChatType.PRIVATE:
        return Chat(id=42, type=chat_type)
    return Chat(id=GROUP_ID, type=chat_type, title="Lurkers")


def message_update(sender=None, chat=None, update_id=1, **message_kwargs):
    message = Message(
        message_id=update_id,
        date=T0,
        chat=chat or make_group(),
        from_user=sender,
        **message_kwargs,
    )
    return Update(update_id=update_id, message=message)


def chat_member_update(user, old_member_cls, new_member_cls, update_id=1):
    changed = ChatMemberUpdated(
        chat=make_group(),
        from_user=user,
        date=T0,
        old_chat_member=old_member_cls(user=user),
        new_chat_member=new_member_cls(user=user),
    )
    return Update(update_id=update_id, chat_member=changed)


def join_update(user_id):
    return chat_member_update(make_user(user_id), ChatMemberLeft, ChatMemberMember)


def leave_update(user_id):
    return chat_member_update(make_user(user_id), ChatMemberMember, ChatMemberLeft)


@pytest.fixture
def env_file(tmp_path):
    """Path to a .env that does not exist, so the working directory's .env is never read."""
    return str(tmp_path / "missing.env")


@pytest.fixture
def full_env(monkeypatch, tmp_path):
    values = {
        "TELEGRAM_TOKEN": "123456:TEST-TOKEN",
        "TELEGRAM_CHAT": str(GROUP_ID),
        "DURATION": "720h",
        "DATABASE_PATH": str(tmp_path / "activity.db"),
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    return values
