"""Create the chat_sessions table, or print its DDL.

Usage (from the project root):

    python scripts/create_tables.py          # uses POSTGRES_* from the environment / .env
    python scripts/create_tables.py --sql    # print CREATE TABLE statements only

Notes:
- Tables are created with ``create_all``, so existing tables are left untouched.
- The ``--sql`` output can be pasted into a hosted Postgres console.
"""

import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateIndex, CreateTable

# Add project root to Python path so we can import pkg and app modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

load_dotenv()

from app.core.config import settings  # noqa: E402
from app.chat.repository.sql_schema import chat_session as _chat_session  # noqa: E402,F401
from pkg.db_util.postgres_conn import PostgresConnection, close_all_engines  # noqa: E402
from pkg.db_util.sql_alchemy.declarative_base import Base  # noqa: E402
from pkg.db_util.types import PostgresConfig  # noqa: E402
from pkg.log.logger import get_logger  # noqa: E402

logger = get_logger("create_tables")


def print_sql() -> None:
    dialect = postgresql.dialect()
    print("-- Chat session tables")
    for table in Base.metadata.sorted_tables:
        print(f"{str(CreateTable(table).compile(dialect=dialect)).strip()};\n")
        for index in table.indexes:
            print(f"{str(CreateIndex(index).compile(dialect=dialect)).strip()};")
        print()


async def create_tables() -> None:
    if not (settings.POSTGRES_HOST and settings.POSTGRES_USER):
        print("❌ ERROR: set POSTGRES_HOST, POSTGRES_USER, POSTGRES_PASSWORD and POSTGRES_DB and re-run.")
        sys.exit(2)

    config = PostgresConfig(
        host=settings.POSTGRES_HOST,
        port=settings.POSTGRES_PORT,
        username=settings.POSTGRES_USER,
        password=settings.POSTGRES_PASSWORD,
        database=settings.POSTGRES_DB,
    )
    conn = PostgresConnection(config, logger)
    print(f"🔗 Using database {settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}/{settings.POSTGRES_DB}")

    try:
        engine = await conn.get_engine()
        async with engine.begin() as connection:
            version = (await connection.execute(text("SELECT version()"))).scalar()
            print(f"✅ Connected to: {version[:80]}...")
            await connection.run_sync(Base.metadata.create_all)
        print(f"✅ Tables ready: {', '.join(Base.metadata.tables)}")
    except SQLAlchemyError as e:
        print(f"\n❌ SQLAlchemy error: {e}")
        raise
    finally:
        await close_all_engines()


if __name__ == "__main__":
    if "--sql" in sys.argv[1:]:
        print_sql()
    else:
        asyncio.run(create_tables())
