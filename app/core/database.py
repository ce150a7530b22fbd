from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Sessions keep their attributes after commit, records are handed back to callers
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


# The runner opens one short session per write, so routes get the factory
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass
