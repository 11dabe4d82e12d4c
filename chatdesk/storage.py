"""Relational persistence for users, sessions, messages, prompts and files."""

from __future__ import annotations

import json
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatdesk.db import models as db_models
from chatdesk.errors import PersistenceError
from chatdesk.time_utils import epoch_seconds


logger = structlog.get_logger(__name__)

GLOBAL_PROMPT_DOMAIN = "global"


def _row_dict(row: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return dict(row)


def _decode_metadata(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


class ChatStore:
    """Thin data access layer over the SQLAlchemy tables in :mod:`chatdesk.db.models`.

    Every public method opens its own short-lived session so callers never
    share transactions.  Driver errors are re-raised as
    :class:`~chatdesk.errors.PersistenceError`.
    """

    def __init__(self, engine: sa.engine.Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )

    @property
    def engine(self) -> sa.engine.Engine:
        return self._engine

    def create_schema(self) -> None:
        db_models.create_tables(self._engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Context manager yielding a session that commits on success."""

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("store_operation_failed", error=str(exc))
            raise PersistenceError("Database operation failed") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(sa.text("SELECT 1"))
        except PersistenceError:
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        is_admin: bool = False,
        domain: Optional[str] = None,
        practice_area: Optional[str] = None,
    ) -> Dict[str, Any]:
        users = db_models.users
        with self.session_scope() as session:
            result = session.execute(
                sa.insert(users).values(
                    username=username,
                    password_hash=password_hash,
                    is_admin=1 if is_admin else 0,
                    created_at=time.time(),
                    domain=domain,
                    practice_area=practice_area,
                    onboarding_completed=0,
                )
            )
            user_id = int(result.inserted_primary_key[0])
            row = session.execute(sa.select(users).where(users.c.id == user_id)).mappings().first()
        return _row_dict(row) or {}

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        users = db_models.users
        with self.session_scope() as session:
            row = session.execute(sa.select(users).where(users.c.id == user_id)).mappings().first()
        return _row_dict(row)

    def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        users = db_models.users
        with self.session_scope() as session:
            row = (
                session.execute(sa.select(users).where(users.c.username == username))
                .mappings()
                .first()
            )
        return _row_dict(row)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: int,
        *,
        ttl_seconds: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        session_id = uuid.uuid4().hex
        now = time.time()
        with self.session_scope() as session:
            session.execute(
                sa.insert(db_models.sessions).values(
                    id=session_id,
                    user_id=user_id,
                    created_at=now,
                    expires_at=now + ttl_seconds,
                    last_accessed=now,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        return session_id

    def get_active_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the live session joined with its user, or ``None``."""

        sessions = db_models.sessions
        users = db_models.users
        now = time.time()
        with self.session_scope() as session:
            row = (
                session.execute(
                    sa.select(
                        sessions.c.id.label("session_id"),
                        sessions.c.expires_at,
                        users.c.id.label("user_id"),
                        users.c.username,
                        users.c.is_admin,
                    )
                    .select_from(sessions.join(users, users.c.id == sessions.c.user_id))
                    .where(sessions.c.id == session_id)
                    .where(sessions.c.expires_at > now)
                )
                .mappings()
                .first()
            )
            if row is not None:
                session.execute(
                    sa.update(sessions)
                    .where(sessions.c.id == session_id)
                    .values(last_accessed=now)
                )
        return _row_dict(row)

    def delete_session(self, session_id: str) -> None:
        with self.session_scope() as session:
            session.execute(sa.delete(db_models.sessions).where(db_models.sessions.c.id == session_id))

    def purge_expired_sessions(self) -> int:
        sessions = db_models.sessions
        with self.session_scope() as session:
            result = session.execute(sa.delete(sessions).where(sessions.c.expires_at <= time.time()))
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append_turn(
        self,
        thread_id: str,
        domain: str,
        role: str,
        content: str,
        sub_feature: Optional[str] = None,
        user_id: Optional[int] = None,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> int:
        """Persist one conversation turn and return its identifier."""

        with self.session_scope() as session:
            result = session.execute(
                sa.insert(db_models.messages).values(
                    thread_id=thread_id,
                    domain=domain,
                    role=role,
                    content=content,
                    content_type="text",
                    sub_feature_id=sub_feature,
                    metadata=json.dumps(dict(metadata)) if metadata else None,
                    timestamp=timestamp if timestamp is not None else epoch_seconds(),
                    user_id=user_id,
                )
            )
            turn_id = int(result.inserted_primary_key[0])
        logger.debug("turn_persisted", thread_id=thread_id, role=role, turn_id=turn_id)
        return turn_id

    def list_turns(self, thread_id: str, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return the turns of *thread_id* oldest first, optionally for one owner."""

        messages = db_models.messages
        query = sa.select(messages).where(messages.c.thread_id == thread_id)
        if user_id is not None:
            query = query.where(messages.c.user_id == user_id)
        query = query.order_by(messages.c.id.asc())
        with self.session_scope() as session:
            rows = session.execute(query).mappings().all()
        turns: List[Dict[str, Any]] = []
        for row in rows:
            turn = dict(row)
            turn["metadata"] = _decode_metadata(turn.get("metadata"))
            turns.append(turn)
        return turns

    def get_turn(self, turn_id: int) -> Optional[Dict[str, Any]]:
        messages = db_models.messages
        with self.session_scope() as session:
            row = session.execute(sa.select(messages).where(messages.c.id == turn_id)).mappings().first()
        turn = _row_dict(row)
        if turn is not None:
            turn["metadata"] = _decode_metadata(turn.get("metadata"))
        return turn

    # ------------------------------------------------------------------
    # System prompts
    # ------------------------------------------------------------------

    def get_prompt_override(self, domain: str, sub_feature: Optional[str] = None) -> Optional[str]:
        """Return the stored prompt for ``(domain, sub_feature)`` if one exists."""

        prompts = db_models.system_prompts
        query = (
            sa.select(prompts.c.prompt)
            .where(prompts.c.domain == domain)
            .where(prompts.c.is_global == 0)
        )
        if sub_feature:
            query = query.where(prompts.c.sub_feature_id == sub_feature)
        else:
            query = query.where(prompts.c.sub_feature_id.is_(None))
        query = query.order_by(prompts.c.updated_at.desc(), prompts.c.id.desc()).limit(1)
        with self.session_scope() as session:
            value = session.execute(query).scalar()
        return value or None

    def get_global_prompt(self) -> Optional[str]:
        prompts = db_models.system_prompts
        query = (
            sa.select(prompts.c.prompt)
            .where(prompts.c.is_global == 1)
            .order_by(prompts.c.updated_at.desc(), prompts.c.id.desc())
            .limit(1)
        )
        with self.session_scope() as session:
            value = session.execute(query).scalar()
        return value or None

    def upsert_system_prompt(
        self,
        domain: str,
        prompt: str,
        *,
        sub_feature: Optional[str] = None,
        is_global: bool = False,
    ) -> Dict[str, Any]:
        """Create or replace the prompt stored for one slot."""

        prompts = db_models.system_prompts
        if is_global:
            domain = GLOBAL_PROMPT_DOMAIN
            sub_feature = None
        now = epoch_seconds()
        with self.session_scope() as session:
            query = (
                sa.select(prompts.c.id)
                .where(prompts.c.domain == domain)
                .where(prompts.c.is_global == (1 if is_global else 0))
            )
            if sub_feature:
                query = query.where(prompts.c.sub_feature_id == sub_feature)
            else:
                query = query.where(prompts.c.sub_feature_id.is_(None))
            existing = session.execute(query.limit(1)).scalar()
            values = {
                "domain": domain,
                "prompt": prompt,
                "sub_feature_id": sub_feature,
                "is_global": 1 if is_global else 0,
                "updated_at": now,
            }
            if existing is not None:
                session.execute(sa.update(prompts).where(prompts.c.id == existing).values(**values))
                prompt_id = int(existing)
            else:
                result = session.execute(sa.insert(prompts).values(**values))
                prompt_id = int(result.inserted_primary_key[0])
            row = session.execute(sa.select(prompts).where(prompts.c.id == prompt_id)).mappings().first()
        return _row_dict(row) or {}

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def create_file(
        self,
        *,
        name: str,
        content: str,
        file_type: str,
        domain: str,
        size: int,
        uploaded_by: str,
        sub_feature: Optional[str] = None,
        is_admin_only: bool = False,
    ) -> Dict[str, Any]:
        files = db_models.files
        with self.session_scope() as session:
            result = session.execute(
                sa.insert(files).values(
                    name=name,
                    content=content,
                    file_type=file_type,
                    domain=domain,
                    sub_feature_id=sub_feature,
                    size=size,
                    is_admin_only=1 if is_admin_only else 0,
                    created_at=epoch_seconds(),
                    uploaded_by=uploaded_by,
                )
            )
            file_id = int(result.inserted_primary_key[0])
            row = session.execute(sa.select(files).where(files.c.id == file_id)).mappings().first()
        return _row_dict(row) or {}

    def list_files(self, domain: str, *, include_admin_only: bool = False) -> List[Dict[str, Any]]:
        files = db_models.files
        query = sa.select(files).where(files.c.domain == domain)
        if not include_admin_only:
            query = query.where(files.c.is_admin_only == 0)
        query = query.order_by(files.c.created_at.desc(), files.c.id.desc())
        with self.session_scope() as session:
            rows = session.execute(query).mappings().all()
        return [dict(row) for row in rows]

    def get_file(self, file_id: int) -> Optional[Dict[str, Any]]:
        files = db_models.files
        with self.session_scope() as session:
            row = session.execute(sa.select(files).where(files.c.id == file_id)).mappings().first()
        return _row_dict(row)


__all__ = ["ChatStore", "GLOBAL_PROMPT_DOMAIN"]
