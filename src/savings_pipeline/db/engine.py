from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine as sa_create_async_engine

from savings_pipeline.config.settings import get_settings

_engine: AsyncEngine | None = None


def get_engine(echo: bool = False) -> AsyncEngine:
    """Return a cached async engine for the configured pipeline database."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = sa_create_async_engine(settings.database_url, echo=echo)
    return _engine


async def dispose_engine() -> None:
    """Dispose the cached engine so CLI runs exit without dangling connections."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
