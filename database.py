from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import StoreUnavailable


def build_engine(database_url: str, *, timeout_secs: float) -> Engine:
    """Engine with a per-backend store timeout; sqlite also gets WAL and FKs."""
    connect_args: dict[str, object] = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_secs
    elif database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(timeout_secs * 1000)}"

    eng = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
    if is_sqlite:
        busy_ms = int(timeout_secs * 1000)

        @event.listens_for(eng, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.execute(f"PRAGMA busy_timeout={busy_ms};")
            cursor.close()

    return eng


_settings = get_settings()
engine = build_engine(
    _settings.database_url, timeout_secs=_settings.store_timeout_secs
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(
    factory: Optional[Callable[[], Session]] = None,
) -> Iterator[Session]:
    """Commit on success, roll back on error; driver failures become retryable."""
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        raise StoreUnavailable(f"Store operation failed: {exc.orig}") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping(session: Session) -> None:
    try:
        session.execute(text("SELECT 1"))
    except OperationalError as exc:
        raise StoreUnavailable("Store is not reachable") from exc
