"""Persistence for SQL agent sessions.

Graph state lives in a LangGraph checkpointer keyed by ``thread_id`` (the
session id). Alongside it, ``SessionStore`` keeps one row per session with the
single-run lease and the database the session is bound to.
"""
from __future__ import annotations
import logging
import os
import socket
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sqlagent.db import Base, make_engine, make_session_factory
from sqlagent.graph.errors import SessionBusyError, SessionStoreError
from sqlagent.models import SessionRecord

logger = logging.getLogger(__name__)

# Opens a checkpointer for the duration of one run
SaverFactory = Callable[[], AsyncContextManager[BaseCheckpointSaver]]


def memory_saver(saver: Optional[MemorySaver] = None) -> SaverFactory:
    """Process-local checkpoints; every run shares the same saver."""
    saver = saver or MemorySaver()

    @asynccontextmanager
    async def _open():
        yield saver

    return _open


def default_saver(db_path: Optional[str] = None) -> SaverFactory:
    """Sqlite-backed checkpoints that survive a restart (``.run/graph.db`` by default)."""
    if db_path is None:
        from sqlagent.config import get_settings
        db_path = get_settings().CHECKPOINT_DB_PATH
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    logger.info("Using sqlite checkpoints at %s", db_path)

    def _open():
        return AsyncSqliteSaver.from_conn_string(db_path)

    return _open


def _owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SessionStore:
    """Lease and database binding per session, in the ``agent_sessions`` table.

    A lease is owned by one store instance (``owner``) and stamped with
    ``claimed_at``. Leases older than ``lease_ttl_seconds`` are considered
    abandoned and may be taken over, so a crashed worker cannot lock a
    session forever.
    """

    def __init__(
        self,
        url: str,
        lease_ttl_seconds: float = 600,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        create_tables: bool = True,
    ):
        self.url = url
        self.lease_ttl_seconds = lease_ttl_seconds
        self.owner = owner or _owner_token()
        self._clock = clock
        self.engine = make_engine(url)
        self._session = make_session_factory(self.engine)
        if create_tables:
            Base.metadata.create_all(self.engine, tables=[SessionRecord.__table__])

    def claim(self, session_id: str) -> None:
        """Take the session's lease. Raises SessionBusyError while another live owner holds it."""
        now = self._clock()
        stale_before = now - self.lease_ttl_seconds
        try:
            with self._session.begin() as s:
                rec = s.get(SessionRecord, session_id)
                if rec is None:
                    s.add(SessionRecord(session_id=session_id, owner=self.owner, claimed_at=now))
                    return
                held_by, held_since = rec.owner, rec.claimed_at
                if held_by is not None and held_since is not None and held_since >= stale_before:
                    raise SessionBusyError(session_id)
                # Compare-and-set on the lease we just read so two takeovers cannot both win
                res = s.execute(
                    update(SessionRecord)
                    .where(
                        SessionRecord.session_id == session_id,
                        SessionRecord.owner.is_(None) if held_by is None else SessionRecord.owner == held_by,
                        or_(SessionRecord.claimed_at.is_(None), SessionRecord.claimed_at < stale_before),
                    )
                    .values(owner=self.owner, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise SessionBusyError(session_id)
                if held_by is not None:
                    logger.warning("Session %s: took over stale lease held by %s", session_id, held_by)
        except IntegrityError as e:
            raise SessionBusyError(session_id) from e
        except SQLAlchemyError as e:
            raise SessionStoreError(f"failed to claim session {session_id!r}: {e}") from e

    def release(self, session_id: str) -> None:
        """Drop the lease if this store still owns it."""
        try:
            with self._session.begin() as s:
                s.execute(
                    update(SessionRecord)
                    .where(SessionRecord.session_id == session_id, SessionRecord.owner == self.owner)
                    .values(owner=None, claimed_at=None)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise SessionStoreError(f"failed to release session {session_id!r}: {e}") from e

    def bind(self, session_id: str, database_url: str) -> None:
        try:
            with self._session.begin() as s:
                rec = s.get(SessionRecord, session_id)
                if rec is None:
                    s.add(SessionRecord(session_id=session_id, database_url=database_url))
                else:
                    rec.database_url = database_url
        except SQLAlchemyError as e:
            raise SessionStoreError(f"failed to bind session {session_id!r}: {e}") from e

    def database_url(self, session_id: str) -> Optional[str]:
        try:
            with self._session() as s:
                rec = s.get(SessionRecord, session_id)
                return rec.database_url if rec else None
        except SQLAlchemyError as e:
            raise SessionStoreError(f"failed to read session {session_id!r}: {e}") from e


def default_session_store(url: Optional[str] = None, lease_ttl_seconds: Optional[float] = None) -> SessionStore:
    from sqlagent.config import get_settings

    settings = get_settings()
    url = url or settings.SESSION_DB_URL
    ttl = settings.SESSION_LEASE_TTL_SECONDS if lease_ttl_seconds is None else lease_ttl_seconds
    logger.info("Using session store at %s", url.split("://", 1)[0])
    return SessionStore(url, lease_ttl_seconds=ttl)
