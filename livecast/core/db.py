from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
import ssl
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

from livecast.core.config import configs
from livecast.models.orm.base import Base


def prepare_database_url(url: str) -> tuple[str, dict]:
    """
    Prepare database URL for asyncpg compatibility.
    asyncpg doesn't support 'sslmode' parameter, need to convert to 'ssl' context.
    """
    if not url:
        return url, {}

    parsed = urlparse(url)
    query_params = parse_qs(parsed.query)

    connect_args = {}

    if 'sslmode' in query_params:
        sslmode = query_params['sslmode'][0]
        del query_params['sslmode']

        if sslmode == 'require':
            # require SSL but don't verify certificates
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            connect_args['ssl'] = ssl_context
        elif sslmode == 'verify-ca' or sslmode == 'verify-full':
            connect_args['ssl'] = ssl.create_default_context()
        elif sslmode == 'disable':
            connect_args['ssl'] = False

    new_query = urlencode(query_params, doseq=True)

    cleaned_url = urlunparse((
        parsed.scheme,
        parsed.netloc,
        parsed.path,
        parsed.params,
        new_query,
        parsed.fragment
    ))

    return cleaned_url, connect_args


def create_engine_for(url: str) -> AsyncEngine:
    cleaned_url, connect_args = prepare_database_url(url)
    kwargs = {"connect_args": connect_args}
    if not cleaned_url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(cleaned_url, **kwargs)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_tables(bind: AsyncEngine) -> None:
    """Create all tables directly (tests and local sqlite runs; production uses alembic)."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = create_engine_for(configs.DATABASE_URI)

AsyncSessionLocal = create_session_factory(engine)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
