import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeout
from sqlalchemy.orm import sessionmaker, declarative_base

from settlement.config import DATABASE_URL, LOCK_TIMEOUT_MS
from settlement.errors import LockTimeout, StoreUnavailable

logger = logging.getLogger(__name__)

LOCK_ERROR_MARKERS = ("database is locked", "lock timeout", "lock_timeout", "lock wait timeout")


def build_engine(url: str, lock_timeout_ms: int = LOCK_TIMEOUT_MS):
    """Create an engine whose transactions take row locks up front.

    SQLite has no SELECT ... FOR UPDATE, so every transaction is opened
    with BEGIN IMMEDIATE and waits on the busy timeout instead.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": lock_timeout_ms / 1000},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()


def translate_store_error(exc: Exception):
    message = str(getattr(exc, "orig", exc)).lower()
    if isinstance(exc, OperationalError) and any(m in message for m in LOCK_ERROR_MARKERS):
        return LockTimeout("Timed out waiting for a ledger row lock")
    return StoreUnavailable("Ledger store unavailable")


@contextmanager
def atomic(lock_timeout_ms: int = LOCK_TIMEOUT_MS):
    """One ledger transaction: commit on success, roll back on any error.

    Lock waits and connection failures surface as the transient
    LockTimeout / StoreUnavailable errors.
    """
    db = SessionLocal()
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout_ms)}ms'"))
        yield db
        db.commit()
    except (OperationalError, PoolTimeout) as exc:
        db.rollback()
        error = translate_store_error(exc)
        logger.error("Ledger transaction rolled back: %s (%s)", error.kind.value, exc)
        raise error from exc
    except DBAPIError as exc:
        db.rollback()
        if not exc.connection_invalidated:
            raise
        logger.error("Ledger connection lost, transaction rolled back: %s", exc)
        raise StoreUnavailable("Ledger store connection lost") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
