# marketplace/database.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, List

from flask import current_app, g
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from marketplace.config import Config

engine_kwargs = {
    "echo": Config.SQL_ECHO,
    "future": True,
    "pool_pre_ping": True,
}

if not Config.DATABASE_URL.startswith("sqlite"):
    engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
    engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


def init_database(bind: Engine | None = None) -> None:
    """Create every table registered on ``Base``."""
    # Importing models registers them on Base.metadata
    from marketplace import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


class UnitOfWork:
    """
    Explicit transaction scope handed to every core operation.

    ``atomic()`` commits on success and rolls back on any exception. Nested
    ``atomic()`` blocks join the outermost one, so only the outermost block
    commits. Callbacks registered with ``on_commit`` run after the outermost
    commit succeeds and are discarded on rollback.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._depth = 0
        self._after_commit: List[Callable[[], None]] = []

    @classmethod
    @contextmanager
    def open(cls, session_factory: Callable[[], Session] = SessionLocal) -> Iterator["UnitOfWork"]:
        session = session_factory()
        try:
            yield cls(session)
        finally:
            session.close()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        if self._depth:
            self._depth += 1
            try:
                yield self.session
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            self._after_commit.clear()
            raise
        finally:
            self._depth = 0

        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the current transaction commits (immediately if none is open)."""
        if not self._depth:
            callback()
            return
        self._after_commit.append(callback)

    def close(self) -> None:
        self.session.close()


def get_db() -> Session:
    return get_uow().session


def get_uow() -> UnitOfWork:
    if "uow" not in g:
        factory = current_app.extensions.get("marketplace_session_factory", SessionLocal)
        g.uow = UnitOfWork(factory())
    return g.uow


def close_db(e=None):
    uow = g.pop("uow", None)
    if uow is not None:
        uow.close()
