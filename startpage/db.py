"""
Node store for the bookmark tree: SQLAlchemy (Postgres) and in-memory.

Both stores enforce uniqueness of (owner, parent, title). Root-level nodes
are keyed with an empty parent so the unique index covers them too.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Iterator, Optional, Protocol, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

ROOT_KEY = ""

UPDATABLE_FIELDS = ("title", "parent_id", "url")

# (store, session) of the owner_lock active in the current context.
_active_lock: ContextVar[Optional[Tuple["SqlNodeStore", Session]]] = ContextVar(
    "startpage_active_lock", default=None
)


class NodeKind(str, Enum):
    FOLDER = "folder"
    LINK = "link"


class StoreError(Exception):
    """The underlying database failed for reasons unrelated to input."""


class DuplicateKeyError(Exception):
    """Uniqueness constraint on (owner, parent, title) was violated."""


class VersionMismatchError(Exception):
    """The stored node version differs from the one the caller expected."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NodeRecord:
    id: str
    owner_id: str
    kind: NodeKind
    title: str
    parent_id: Optional[str] = None
    url: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    version: int = 1

    @property
    def is_folder(self) -> bool:
        return self.kind == NodeKind.FOLDER

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "title": self.title,
            "parent_id": self.parent_id,
            "url": self.url,
            "created_at": self.created_at,
            "version": self.version,
        }


class NodeStore(Protocol):
    """Interface for persisting bookmark nodes. Every call is owner-scoped."""

    def find_by_owner(self, owner_id: str) -> list[NodeRecord]:
        ...

    def find_by_id(self, owner_id: str, node_id: str) -> Optional[NodeRecord]:
        ...

    def find_children(
        self, owner_id: str, parent_id: Optional[str]
    ) -> list[NodeRecord]:
        ...

    def insert(
        self,
        owner_id: str,
        *,
        kind: NodeKind,
        title: str,
        parent_id: Optional[str] = None,
        url: Optional[str] = None,
    ) -> NodeRecord:
        ...

    def update_one(
        self,
        owner_id: str,
        node_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[NodeRecord]:
        ...

    def delete_one(self, owner_id: str, node_id: str) -> int:
        ...

    def delete_many(self, owner_id: str, node_ids: Iterable[str]) -> int:
        ...

    def owner_lock(self, owner_id: str):
        """Context manager serialising tree mutations for one owner."""
        ...


@dataclass
class _OwnerLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class OwnerLocks:
    """Per-owner reentrant locks for the current process.

    An owner's entry lives only while some thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _OwnerLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, owner_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(owner_id, _OwnerLock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[owner_id]


def _check_changes(changes: dict) -> None:
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported fields: {sorted(unknown)}")


class InMemoryNodeStore:
    """Simple in-memory node store for development and tests."""

    def __init__(self):
        self.nodes: Dict[str, NodeRecord] = {}
        self.owner_locks = OwnerLocks()
        self._mutex = threading.Lock()

    def _conflicts(
        self,
        owner_id: str,
        parent_id: Optional[str],
        title: str,
        exclude_id: Optional[str] = None,
    ) -> bool:
        for node in self.nodes.values():
            if (
                node.id != exclude_id
                and node.owner_id == owner_id
                and node.parent_id == parent_id
                and node.title == title
            ):
                return True
        return False

    def find_by_owner(self, owner_id: str) -> list[NodeRecord]:
        with self._mutex:
            return [
                replace(node)
                for node in self.nodes.values()
                if node.owner_id == owner_id
            ]

    def find_by_id(self, owner_id: str, node_id: str) -> Optional[NodeRecord]:
        with self._mutex:
            node = self.nodes.get(node_id)
            if node is None or node.owner_id != owner_id:
                return None
            return replace(node)

    def find_children(
        self, owner_id: str, parent_id: Optional[str]
    ) -> list[NodeRecord]:
        with self._mutex:
            return [
                replace(node)
                for node in self.nodes.values()
                if node.owner_id == owner_id and node.parent_id == parent_id
            ]

    def insert(
        self,
        owner_id: str,
        *,
        kind: NodeKind,
        title: str,
        parent_id: Optional[str] = None,
        url: Optional[str] = None,
    ) -> NodeRecord:
        with self._mutex:
            if self._conflicts(owner_id, parent_id, title):
                raise DuplicateKeyError(title)
            record = NodeRecord(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                kind=NodeKind(kind),
                title=title,
                parent_id=parent_id,
                url=url,
            )
            self.nodes[record.id] = record
            return replace(record)

    def update_one(
        self,
        owner_id: str,
        node_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[NodeRecord]:
        _check_changes(changes)
        with self._mutex:
            node = self.nodes.get(node_id)
            if node is None or node.owner_id != owner_id:
                return None
            if expected_version is not None and node.version != expected_version:
                raise VersionMismatchError(node_id)
            updated = replace(node, **changes)
            if self._conflicts(
                owner_id, updated.parent_id, updated.title, exclude_id=node_id
            ):
                raise DuplicateKeyError(updated.title)
            updated.version = node.version + 1
            self.nodes[node_id] = updated
            return replace(updated)

    def delete_one(self, owner_id: str, node_id: str) -> int:
        with self._mutex:
            node = self.nodes.get(node_id)
            if node is None or node.owner_id != owner_id:
                return 0
            del self.nodes[node_id]
            return 1

    def delete_many(self, owner_id: str, node_ids: Iterable[str]) -> int:
        deleted = 0
        with self._mutex:
            for node_id in set(node_ids):
                node = self.nodes.get(node_id)
                if node is not None and node.owner_id == owner_id:
                    del self.nodes[node_id]
                    deleted += 1
        return deleted

    def owner_lock(self, owner_id: str):
        return self.owner_locks.hold(owner_id)


class SqlNodeStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (Postgres in
    production, SQLite for tests and local runs).

    Inside ``owner_lock`` every call shares the lock's session, so a whole
    mutation is one transaction on one connection and commits once on exit.
    """

    def __init__(self, database_url: str, **engine_options):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlNodeStore")
        options = {"future": True, "pool_pre_ping": True, "pool_recycle": 1800}
        options.update(engine_options)
        self.engine = create_engine(database_url, **options)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        self.owner_locks = OwnerLocks()
        # SQLite has no row locks and serialises writers already.
        self.row_locks = not self.is_sqlite
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    @property
    def is_sqlite(self) -> bool:
        return self.engine.dialect.name == "sqlite"

    def _to_record(self, row: "NodeRow") -> NodeRecord:
        created_at = row.created_at
        if created_at.tzinfo is None:
            # SQLite drops the offset; values are always written in UTC.
            created_at = created_at.replace(tzinfo=timezone.utc)
        return NodeRecord(
            id=row.id,
            owner_id=row.owner_id,
            kind=NodeKind(row.kind),
            title=row.title,
            parent_id=row.parent_id or None,
            url=row.url,
            created_at=created_at,
            version=row.version,
        )

    def _lock_session(self) -> Optional[Session]:
        active = _active_lock.get()
        if active is not None and active[0] is self:
            return active[1]
        return None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            session = self._lock_session()
            if session is not None:
                yield session
            else:
                with self.Session() as session:
                    yield session
        except IntegrityError as exc:
            raise DuplicateKeyError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    def _commit(self, session: Session) -> None:
        if session is self._lock_session():
            # owner_lock commits; later reads must not see stale rows.
            session.flush()
            session.expire_all()
        else:
            session.commit()

    def find_by_owner(self, owner_id: str) -> list[NodeRecord]:
        with self._session() as session:
            stmt = (
                select(NodeRow)
                .where(NodeRow.owner_id == owner_id)
                .order_by(NodeRow.created_at.asc(), NodeRow.id.asc())
            )
            return [self._to_record(row) for row in session.execute(stmt).scalars()]

    def find_by_id(self, owner_id: str, node_id: str) -> Optional[NodeRecord]:
        with self._session() as session:
            stmt = select(NodeRow).where(
                NodeRow.id == node_id, NodeRow.owner_id == owner_id
            )
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_record(row) if row else None

    def find_children(
        self, owner_id: str, parent_id: Optional[str]
    ) -> list[NodeRecord]:
        with self._session() as session:
            stmt = (
                select(NodeRow)
                .where(
                    NodeRow.owner_id == owner_id,
                    NodeRow.parent_id == (parent_id or ROOT_KEY),
                )
                .order_by(NodeRow.created_at.asc(), NodeRow.id.asc())
            )
            return [self._to_record(row) for row in session.execute(stmt).scalars()]

    def insert(
        self,
        owner_id: str,
        *,
        kind: NodeKind,
        title: str,
        parent_id: Optional[str] = None,
        url: Optional[str] = None,
    ) -> NodeRecord:
        with self._session() as session:
            row = NodeRow(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                kind=NodeKind(kind).value,
                title=title,
                parent_id=parent_id or ROOT_KEY,
                url=url,
                created_at=_utcnow(),
                version=1,
            )
            session.add(row)
            self._commit(session)
            session.refresh(row)
            return self._to_record(row)

    def update_one(
        self,
        owner_id: str,
        node_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[NodeRecord]:
        _check_changes(changes)
        values = dict(changes)
        if "parent_id" in values:
            values["parent_id"] = values["parent_id"] or ROOT_KEY
        values["version"] = NodeRow.version + 1

        with self._session() as session:
            stmt = update(NodeRow).where(
                NodeRow.id == node_id, NodeRow.owner_id == owner_id
            )
            if expected_version is not None:
                stmt = stmt.where(NodeRow.version == expected_version)
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = session.execute(
                    select(NodeRow.id).where(
                        NodeRow.id == node_id, NodeRow.owner_id == owner_id
                    )
                ).scalar_one_or_none()
                if exists is None:
                    return None
                raise VersionMismatchError(node_id)
            self._commit(session)
            row = session.get(NodeRow, node_id, populate_existing=True)
            return self._to_record(row)

    def delete_one(self, owner_id: str, node_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                delete(NodeRow)
                .where(NodeRow.id == node_id, NodeRow.owner_id == owner_id)
                .execution_options(synchronize_session=False)
            )
            self._commit(session)
            return result.rowcount or 0

    def delete_many(self, owner_id: str, node_ids: Iterable[str]) -> int:
        ids = list(set(node_ids))
        if not ids:
            return 0
        with self._session() as session:
            result = session.execute(
                delete(NodeRow)
                .where(NodeRow.owner_id == owner_id, NodeRow.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            self._commit(session)
            return result.rowcount or 0

    def _ensure_lock_row(self, owner_id: str) -> None:
        with self.Session() as session:
            if session.get(TreeLockRow, owner_id) is not None:
                return
            session.add(TreeLockRow(owner_id=owner_id))
            try:
                session.commit()
            except IntegrityError:
                # Another process created it first.
                session.rollback()

    @contextmanager
    def owner_lock(self, owner_id: str) -> Iterator[None]:
        with self.owner_locks.hold(owner_id):
            if self._lock_session() is not None:
                yield
                return
            try:
                if self.row_locks:
                    self._ensure_lock_row(owner_id)
                session = self.Session()
            except SQLAlchemyError as exc:
                raise StoreError(str(exc)) from exc
            token = _active_lock.set((self, session))
            try:
                if self.row_locks:
                    session.execute(
                        select(TreeLockRow)
                        .where(TreeLockRow.owner_id == owner_id)
                        .with_for_update()
                    ).scalar_one()
                yield
                session.commit()
            except IntegrityError as exc:
                raise DuplicateKeyError(str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                raise StoreError(str(exc)) from exc
            finally:
                _active_lock.reset(token)
                # Rolls back anything left uncommitted.
                session.close()


Base = declarative_base()


class NodeRow(Base):
    __tablename__ = "bookmarks"
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "parent_id", "title", name="uq_bookmarks_owner_parent_title"
        ),
    )

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    parent_id = Column(String, nullable=False, default=ROOT_KEY)
    url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=1)


class TreeLockRow(Base):
    __tablename__ = "tree_locks"

    owner_id = Column(String, primary_key=True)
