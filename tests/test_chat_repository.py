import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.chat.entity.chat import ChatMessage, Source, TokenUsage
from app.chat.repository.chat_repository import ChatRepository
from app.core.exceptions import NotFound
from pkg.db_util.sql_alchemy.declarative_base import Base

from conftest import OTHER_USER_ID, USER_ID


class SqliteStore:
    """Same session contract as PostgresConnection, backed by a sqlite file."""

    def __init__(self, url: str):
        self.engine = create_async_engine(url)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def get_session(self):
        session = self.sessionmaker()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}"


def _run(db_url, scenario):
    async def main():
        store = SqliteStore(db_url)
        await store.create_all()
        try:
            return await scenario(ChatRepository(store))
        finally:
            await store.engine.dispose()

    return asyncio.run(main())


def test_create_find_is_owner_scoped(db_url):
    async def scenario(repo):
        created = await repo.create_session(USER_ID, "First chat")
        mine = await repo.find_session(created.id, USER_ID)
        theirs = await repo.find_session(created.id, OTHER_USER_ID)
        return created, mine, theirs

    created, mine, theirs = _run(db_url, scenario)
    assert mine.id == created.id
    assert mine.title == "First chat"
    assert mine.messages == []
    assert theirs is None


def test_save_replaces_embedded_messages(db_url):
    async def scenario(repo):
        session = await repo.create_session(USER_ID, "Sources")
        session.messages = [
            ChatMessage(role="user", content="q"),
            ChatMessage(
                role="assistant",
                content="a",
                usage=TokenUsage(input_tokens=1, output_tokens=2, total_tokens=3),
                duration_ms=77,
                source_count=1,
                sources=[Source(url="https://example.com", title="Example")],
                api_key_type="custom",
            ),
        ]
        session.title = "Renamed by commit"
        await repo.save_session(session)
        return await repo.find_session(session.id, USER_ID)

    loaded = _run(db_url, scenario)
    assert loaded.title == "Renamed by commit"
    assert [m.role for m in loaded.messages] == ["user", "assistant"]
    assistant = loaded.messages[1]
    assert assistant.usage.total_tokens == 3
    assert assistant.duration_ms == 77
    assert assistant.sources == [Source(url="https://example.com", title="Example")]
    assert assistant.api_key_type == "custom"


def test_save_of_missing_or_foreign_session_fails(db_url):
    async def scenario(repo):
        session = await repo.create_session(USER_ID, "Mine")
        session.user_id = OTHER_USER_ID
        with pytest.raises(NotFound):
            await repo.save_session(session)

    _run(db_url, scenario)


def test_update_title_and_delete(db_url):
    async def scenario(repo):
        session = await repo.create_session(USER_ID, "Old")
        foreign = await repo.update_title(session.id, OTHER_USER_ID, "Stolen")
        renamed = await repo.update_title(session.id, USER_ID, "New")
        not_deleted = await repo.delete_session(session.id, OTHER_USER_ID)
        deleted = await repo.delete_session(session.id, USER_ID)
        again = await repo.delete_session(session.id, USER_ID)
        gone = await repo.find_session(session.id, USER_ID)
        return foreign, renamed, not_deleted, deleted, again, gone

    foreign, renamed, not_deleted, deleted, again, gone = _run(db_url, scenario)
    assert foreign is None
    assert renamed.title == "New"
    assert not_deleted is False
    assert deleted is True
    assert again is False
    assert gone is None


def test_list_is_most_recently_updated_first(db_url):
    async def scenario(repo):
        older = await repo.create_session(USER_ID, "Older")
        await asyncio.sleep(0.01)
        newer = await repo.create_session(USER_ID, "Newer")
        await repo.create_session(OTHER_USER_ID, "Someone else")
        before = [s.id for s in await repo.list_sessions(USER_ID)]
        await asyncio.sleep(0.01)
        await repo.update_title(older.id, USER_ID, "Older, touched")
        after = [s.id for s in await repo.list_sessions(USER_ID)]
        return older, newer, before, after

    older, newer, before, after = _run(db_url, scenario)
    assert before == [newer.id, older.id]
    assert after == [older.id, newer.id]
