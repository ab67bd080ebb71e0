# control-plane/database/session.py
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config import settings
from .models import Base

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(settings.DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Create tables that do not exist yet"""
    Base.metadata.create_all(bind=engine)


def get_db():
    """FastAPI dependency: one session per request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_session() -> Session:
    """Session for jobs and event handlers; caller closes it"""
    return SessionLocal()
