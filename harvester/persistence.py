"""Database persistence for harvested article records."""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import create_engine, delete, insert, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from models import Article, Base

from .records import ArticleRecord

LOGGER = logging.getLogger(__name__)


class ArticlePersistenceError(RuntimeError):
    """Raised when reading or writing article rows fails."""


def build_engine(db_url: str) -> Engine:
    kwargs: dict[str, object] = {"pool_pre_ping": True}
    if db_url.startswith("sqlite"):
        # Worker threads share the engine when ingestion runs in parallel.
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(db_url, **kwargs)


def prepare_schema(engine: Engine) -> sessionmaker:
    try:
        Base.metadata.create_all(engine)  # ensure the Article table exists before the sweep
    except SQLAlchemyError as exc:
        raise ArticlePersistenceError(f"Failed to prepare schema: {exc}") from exc
    return sessionmaker(bind=engine)


class ArticlePersistence:
    """Sweep and insert article rows, one statement per operation."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def check_connection(self) -> None:
        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise ArticlePersistenceError(f"Database unavailable: {exc}") from exc

    def sweep(self, resource: str) -> int:
        """Delete every stored article tagged with ``resource``."""

        if not resource:
            raise ValueError("resource is required when sweeping articles")
        try:
            with self._session_factory() as session:
                result = session.execute(delete(Article).where(Article.resource == resource))
                removed = result.rowcount or 0
                session.commit()
        except SQLAlchemyError as exc:
            raise ArticlePersistenceError(str(exc)) from exc

        LOGGER.info("Removed %d existing articles for resource %r", removed, resource)
        return removed

    def insert(self, record: ArticleRecord) -> None:
        try:
            with self._session_factory() as session:
                session.execute(insert(Article).values(**record.to_row()))
                session.commit()
        except SQLAlchemyError as exc:
            raise ArticlePersistenceError(str(exc)) from exc
