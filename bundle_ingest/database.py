from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from bundle_ingest.config import Settings, settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )


def create_engine_from_settings(cfg: Settings = settings) -> Optional[AsyncEngine]:
    """Build the process engine, or None when DATABASE_URL is not configured.

    A missing datastore is a supported mode: persistence and run tracking
    degrade to no-ops and ingestion still runs end to end.
    """
    if not cfg.database_url:
        return None
    return build_engine(cfg.database_url, echo=cfg.database_echo)
