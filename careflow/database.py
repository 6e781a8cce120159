import ssl
import logging
from urllib.parse import urlparse, urlunparse

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import NullPool

from careflow.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
if not DATABASE_URL:
    raise Exception("DATABASE_URL not found")


def normalize_database_url(url: str) -> str:
    """Rewrite a plain postgres URL for asyncpg and drop unsupported query params."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if url.startswith("postgresql+asyncpg://"):
        # asyncpg rejects sslmode / channel_binding, SSL goes through connect_args
        parsed = urlparse(url)
        url = urlunparse(parsed._replace(query=""))
    return url


def build_engine(url: str, echo: bool = False):
    url = normalize_database_url(url)

    if url.startswith("sqlite"):
        # One connection per checkout so sessions opened on different event
        # loops never share an aiosqlite connection.
        return create_async_engine(url, echo=echo, poolclass=NullPool)

    ssl_ctx = ssl.create_default_context()
    ssl_ctx.check_hostname = False
    ssl_ctx.verify_mode = ssl.CERT_NONE

    return create_async_engine(
        url,
        echo=echo,
        connect_args={"ssl": ssl_ctx},
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_size=10,
        max_overflow=20,
    )


engine = build_engine(DATABASE_URL, echo=settings.DATABASE_ECHO)

AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()
metadata = Base.metadata


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


async def create_tables():
    """Create any missing tables for the registered models."""
    # models must be imported so every table is on the metadata
    from careflow import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/verified")


__all__ = [
    'engine',
    'Base',
    'AsyncSessionLocal',
    'get_db',
    'create_tables',
    'build_engine',
]
