import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import StorageFailure


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

# Every mutation of the ledger, the category tree and the recurring rules runs
# under this lock, across all sessions and threads of the process.
write_lock = threading.RLock()

_DEPTH_KEY = "atomic_depth"


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run the enclosed block as one serialized unit of work.

    The outermost block takes the write lock, discards identity-map state that
    another writer may have made stale, and commits when the block completes.
    Nested blocks join the enclosing unit of work. Any exception rolls the whole
    unit back; database errors surface as ``StorageFailure``.
    """
    with write_lock:
        depth = session.info.get(_DEPTH_KEY, 0)
        if depth == 0:
            session.expire_all()
        session.info[_DEPTH_KEY] = depth + 1
        try:
            yield session
            if depth == 0:
                session.commit()
        except SQLAlchemyError as exc:
            if depth == 0:
                session.rollback()
            raise StorageFailure(str(exc)) from exc
        except Exception:
            if depth == 0:
                session.rollback()
            raise
        finally:
            session.info[_DEPTH_KEY] = depth
