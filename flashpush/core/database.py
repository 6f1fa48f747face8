import ssl
from collections.abc import AsyncGenerator
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flashpush.config import get_settings
from flashpush.core.logging import get_logger

logger = get_logger(__name__)

settings = get_settings()


def _fix_postgres_url(url: str) -> tuple[str, dict]:
    """
    Fix a hosted Postgres connection URL for asyncpg compatibility.

    Hosted providers include params like sslmode and channel_binding that
    asyncpg doesn't accept. We strip them and handle SSL via connect_args.
    Local hosts and SQLite URLs get no SSL.
    """
    parsed = urlparse(url)
    if not parsed.scheme.startswith("postgresql"):
        return url, {}

    params = parse_qs(parsed.query)
    for param in ["sslmode", "channel_binding", "options"]:
        params.pop(param, None)

    new_query = urlencode(params, doseq=True)
    clean_url = urlunparse(parsed._replace(query=new_query))

    hostname = parsed.hostname or ""
    if hostname in ("localhost", "127.0.0.1", "db"):
        return clean_url, {}
    return clean_url, {"ssl": ssl.create_default_context()}


clean_url, connect_args = _fix_postgres_url(settings.database_url)

_pool_args = (
    {"pool_size": 5, "max_overflow": 10, "pool_recycle": 280}
    if clean_url.startswith("postgresql")
    else {}
)

engine = create_async_engine(
    clean_url,
    echo=settings.debug,
    pool_pre_ping=True,
    connect_args=connect_args,
    **_pool_args,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.bind(error=str(e)).error("database_transaction_rollback")
            await session.rollback()
            raise
