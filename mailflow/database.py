from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from mailflow.config import settings


def async_database_url(url: str) -> str:
    """Rewrite sync driver URLs so they use the async drivers."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


SQLALCHEMY_DATABASE_URL = async_database_url(settings.database_url)

engine = create_async_engine(SQLALCHEMY_DATABASE_URL, echo=False)

# Async session factory shared by the API and the dispatcher
AsyncSessionLocal = make_session_factory(engine)

Base = declarative_base()


async def create_all(bind: AsyncEngine = engine) -> None:
    # Register every table on Base.metadata before creating
    import mailflow.models.email  # noqa: F401
    import mailflow.models.user  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with AsyncSessionLocal() as db:
        try:
            yield db
        finally:
            await db.close()
