import ssl
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for scripts/workers that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    settings: Any
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def resolve_effective_url(settings_obj: Any) -> str:
    """
    Return the URL the engine will actually connect to.

    Tests run against in-memory SQLite unless ALLOW_TEST_DATABASE_URL opts a
    non-SQLite database in explicitly.
    """
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if not getattr(settings_obj, "TESTING", False):
        return db_url
    if not db_url:
        return "sqlite+aiosqlite:///:memory:"
    if "sqlite" not in db_url and not getattr(
        settings_obj, "ALLOW_TEST_DATABASE_URL", False
    ):
        # Protect tests from accidental writes to real databases.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_connect_args(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    if "postgresql" not in effective_url:
        return {}

    # Required when running behind a transaction pooler.
    connect_args: dict[str, Any] = {"statement_cache_size": 0}
    ssl_mode = str(getattr(settings_obj, "DB_SSL_MODE", "require")).lower()
    ca_cert = getattr(settings_obj, "DB_SSL_CA_CERT_PATH", None)

    if ssl_mode == "disable":
        logger.warning("database_ssl_disabled")
        connect_args["ssl"] = False
    elif ssl_mode == "require":
        ssl_context = ssl.create_default_context(cafile=ca_cert)
        if not ca_cert:
            if getattr(settings_obj, "is_production", False):
                raise ValueError(
                    "DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE=require in production."
                )
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning("database_ssl_require_insecure")
        connect_args["ssl"] = ssl_context
    elif ssl_mode in {"verify-ca", "verify-full"}:
        if not ca_cert:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=ca_cert)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        ssl_context.check_hostname = ssl_mode == "verify-full"
        connect_args["ssl"] = ssl_context
    else:
        raise ValueError(
            f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full"
        )
    return connect_args


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
    elif getattr(settings_obj, "DB_USE_NULL_POOL", False):
        pool_config["poolclass"] = NullPool
    else:
        pool_config.update(
            {
                "pool_size": int(settings_obj.DB_POOL_SIZE),
                "max_overflow": int(settings_obj.DB_MAX_OVERFLOW),
                "pool_timeout": int(settings_obj.DB_POOL_TIMEOUT),
                "pool_recycle": int(settings_obj.DB_POOL_RECYCLE),
            }
        )
    return pool_config


def register_query_timing(engine: AsyncEngine) -> None:
    """Attach the slow-query listeners to an engine's sync core."""
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    effective_url = resolve_effective_url(settings_obj)
    if not effective_url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    engine = create_async_engine(
        effective_url,
        **_build_pool_config(settings_obj, effective_url),
        connect_args=_build_connect_args(settings_obj, effective_url),
    )
    register_query_timing(engine)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    logger.info("db_runtime_initialized", backend=engine.dialect.name)
    return _DBRuntime(
        settings=settings_obj,
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None

    if runtime is None:
        return

    try:
        # Sync disposal so reset can be called from non-async fixtures.
        runtime.engine.sync_engine.dispose()
    except Exception as exc:
        logger.debug("db_runtime_dispose_skipped", error=str(exc))


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return _get_db_runtime().session_maker


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


def session_backend(session: AsyncSession) -> str:
    """Dialect name of the engine behind a session (`postgresql`, `sqlite`, ...)."""
    bind = session.bind
    if bind is None:
        bind = get_engine()
    return str(bind.dialect.name).lower()


def _slow_query_threshold_seconds() -> float:
    try:
        threshold = float(get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS)
    except (TypeError, ValueError):
        threshold = 0.2
    return threshold if threshold > 0 else 0.2


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries. Bound parameters are never logged."""
    started = conn.info.get("query_start_time")
    if not started:
        return
    total = time.perf_counter() - started.pop(-1)
    threshold = _slow_query_threshold_seconds()
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=threshold,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


async def health_check() -> Dict[str, Any]:
    """Database health check for monitoring."""
    start_time = time.perf_counter()
    try:
        db_engine = get_engine()
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))

        latency = (time.perf_counter() - start_time) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency, 2),
            "engine": db_engine.dialect.name,
        }
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {
            "status": "down",
            "error": str(e),
            "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
        }
