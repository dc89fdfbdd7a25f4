"""
Order Pipeline — Async SQLAlchemy engine and declarative base
"""
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import DeclarativeBase

from orderflow.core.config import get_settings

settings = get_settings()

engine = create_async_engine(settings.database_url, pool_pre_ping=True)


class Base(DeclarativeBase):
    pass
