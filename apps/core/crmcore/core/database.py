from __future__ import annotations

from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from crmcore.core.config import get_settings


class Base(DeclarativeBase):
    pass


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return create_engine(settings.database_url, echo=settings.database_echo, pool_pre_ping=True)


SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def new_session() -> Session:
    return SessionLocal(bind=get_engine())
