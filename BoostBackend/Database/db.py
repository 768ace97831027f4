# SQLAlchemy engine + session factory using DATABASE_URL

import os
from contextlib import contextmanager
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

load_dotenv()  # loads .env locally; in production env vars are provided

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set")


def make_engine(url: str):
    """Engine with pre-ping; SQLite connections may be shared across worker threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(bind) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)

def get_db():
    """FastAPI dependency that yields a DB session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory=None, db: Optional[Session] = None):
    """
    Transaction helper. With an outer `db` the caller owns commit/rollback;
    otherwise a short-lived session is committed on success and rolled back on error.
    """
    if db is not None:
        yield db
        return
    s = (factory or SessionLocal)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
