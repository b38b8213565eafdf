from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def _engine_kwargs() -> dict:
    kwargs: dict = {"pool_pre_ping": True, "future": True}
    if settings.is_sqlite:
        # Request handlers run in a threadpool; sqlite3 waits up to `timeout` on a locked file
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": settings.DB_POOL_TIMEOUT_SECS}
    else:
        kwargs["pool_timeout"] = settings.DB_POOL_TIMEOUT_SECS
        if settings.DB_URL.startswith("postgresql"):
            kwargs["connect_args"] = {"options": f"-c statement_timeout={int(settings.DB_STATEMENT_TIMEOUT_MS)}"}
    return kwargs


engine = create_engine(settings.DB_URL, **_engine_kwargs())
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
