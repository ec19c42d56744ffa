"""
Single async engine and session factory for the SOP rule service.

The API (get_db) and the maintenance scripts share one connection pool. One
session = one connection from the pool; sessions are closed after each request
so connections return to the pool. The rule engine itself never touches the
database.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sop_engine.config import DATABASE_URL

# Connection timeout (seconds) so startup doesn't hang waiting for the DB
_connect_args = {"timeout": 15} if "asyncpg" in DATABASE_URL else {}
engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args=_connect_args,
    pool_size=2,
    max_overflow=2,
    pool_pre_ping=True,
    pool_recycle=300,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
