import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import assistant.models  # noqa: E402,F401
from assistant.config import settings  # noqa: E402
from assistant.database import Base  # noqa: E402
from assistant.services.message_service import MessageRecord, save_message  # noqa: E402


class FakeRedis:
    """Async subset of redis.asyncio.Redis used by the services.

    Keys set with a TTL expire against a manual clock moved by `advance()`.
    """

    def __init__(self):
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.expires_at: dict[str, float] = {}
        self.lists: dict[str, list[str]] = {}
        self.clock = 0.0

    def advance(self, seconds: float) -> None:
        self.clock += seconds
        for key, deadline in list(self.expires_at.items()):
            if deadline <= self.clock:
                self.values.pop(key, None)
                self.expires_at.pop(key)

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl
        self.expires_at[key] = self.clock + ttl
        return True

    async def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start : end + 1]
        return True

    async def ping(self):
        return True


@pytest.fixture
def db_session():
    """In-memory SQLite session shared across threads (TestClient runs handlers off-thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def admin_chat(monkeypatch):
    monkeypatch.setattr(settings, "admin_chat_id", "admin@s.whatsapp.net")
    return "admin@s.whatsapp.net"


@pytest.fixture
def no_admin(monkeypatch):
    monkeypatch.setattr(settings, "admin_chat_id", None)


@pytest.fixture
def store_message(db_session):
    """Factory that inserts a message row and returns the stored ORM object."""

    def _store(
        message_id: str,
        chat_id: str = "5511999990000@s.whatsapp.net",
        content: str = "olá",
        *,
        is_group: Optional[bool] = None,
        message_type: str = "text",
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        sender_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ):
        record = MessageRecord(
            message_id=message_id,
            chat_id=chat_id,
            sender_id=sender_id or chat_id,
            sender_name="Maria",
            message_type=message_type,
            content=content,
            media_url=media_url,
            media_type=media_type,
            is_group=chat_id.endswith("@g.us") if is_group is None else is_group,
            created_at=created_at or datetime.now(timezone.utc),
            instance_id="assistant",
        )
        return save_message(db_session, record)

    return _store


@pytest.fixture
def store_group_messages(store_message):
    """Factory: `count` group messages, one minute apart, ending now."""

    def _store(chat_id: str, count: int, prefix: str = "g"):
        now = datetime.now(timezone.utc)
        return [
            store_message(
                f"{prefix}-{chat_id}-{i}",
                chat_id,
                f"mensagem {i}",
                sender_id=f"55119{i:04d}@s.whatsapp.net",
                created_at=now - timedelta(minutes=count - i),
            )
            for i in range(count)
        ]

    return _store


def make_event(
    message_id: str = "MSG1",
    remote_jid: str = "5511999990000@s.whatsapp.net",
    body: Optional[dict] = None,
    *,
    event: str = "messages.upsert",
    from_me: bool = False,
    participant: Optional[str] = None,
    timestamp: Optional[int] = 1760000000,
) -> dict:
    key = {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me}
    if participant:
        key["participant"] = participant
    return {
        "event": event,
        "instance": "assistant",
        "data": {
            "key": key,
            "pushName": "Maria",
            "messageTimestamp": timestamp,
            "message": body if body is not None else {"conversation": "olá"},
        },
    }


@pytest.fixture
def event_factory():
    return make_event
