from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from activation_portal.config import settings


def build_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or settings.database_url_normalized
    if url.startswith('sqlite'):
        kwargs.setdefault('connect_args', {'check_same_thread': False})
    return create_engine(url, pool_pre_ping=not url.startswith('sqlite'), **kwargs)


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    from activation_portal.models import Base

    Base.metadata.create_all(bind=bind or engine)
