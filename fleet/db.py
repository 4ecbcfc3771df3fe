from __future__ import annotations

import json
import os
import secrets
import sqlite3
import uuid
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Iterator

from pydantic import ValidationError as ModelValidationError

from .errors import AlreadyExistsError, ConflictError, NotFoundError, TransientError, ValidationError
from .models import KIND_MODELS, LabelSelector
from .selectors import matches
from .settings import settings


Subscriber = Callable[[str, str, Any], None]

# Fields the store owns; client writes never change them.
_IMMUTABLE_META = ("name", "namespace", "uid", "creation_timestamp", "generate_name", "deletion_timestamp")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_ts(ts: str) -> datetime:
    """Parse an RFC 3339 timestamp. A trailing Z or a missing offset means UTC."""
    if ts.endswith(("Z", "z")):
        ts = ts[:-1] + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _resolve_db_path(db_path: str) -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory; in that case the DB file goes inside it.
    """

    p = os.path.abspath(db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "fleet.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch (RFC 7386). Lists are replaced wholesale."""
    if not isinstance(patch, dict):
        return patch
    out = dict(target) if isinstance(target, dict) else {}
    for k, v in patch.items():
        if v is None:
            out.pop(k, None)
        else:
            out[k] = merge_patch(out.get(k), v)
    return out


class Store:
    """SQLite-backed object store with optimistic concurrency.

    Every object carries an integer resource_version that is bumped on each
    write. Writes that name a stale version fail with ConflictError instead
    of overwriting.
    """

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or settings.db_path
        self._subscribers: list[Subscriber] = []
        self._sub_lock = Lock()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(_resolve_db_path(self.db_path), check_same_thread=False, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self.connect()) as conn, conn:
                yield conn
        except sqlite3.OperationalError as e:
            raise TransientError(f"store unavailable: {e}") from e

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._tx() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS objects (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  kind TEXT NOT NULL,
                  namespace TEXT NOT NULL,
                  name TEXT NOT NULL,
                  uid TEXT NOT NULL,
                  resource_version INTEGER NOT NULL,
                  body TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  UNIQUE(kind, namespace, name)
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  namespace TEXT,
                  set_name TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_objects_kind_ns ON objects(kind, namespace);
                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    # --- watch ---

    def subscribe(self, callback: Subscriber) -> None:
        with self._sub_lock:
            self._subscribers.append(callback)

    def _notify(self, kind: str, event_type: str, obj: Any) -> None:
        with self._sub_lock:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            # The write is already committed; watcher failures are logged, not raised.
            try:
                cb(kind, event_type, obj)
            except Exception as e:
                meta = obj.metadata
                self.log_event(
                    "ERROR",
                    f"Watcher failed on {event_type} {kind} {meta.namespace}/{meta.name}: {type(e).__name__}: {e}",
                    namespace=meta.namespace or None,
                )

    # --- reads ---

    @staticmethod
    def _load(row: sqlite3.Row) -> Any:
        obj = KIND_MODELS[row["kind"]].model_validate(json.loads(row["body"]))
        obj.metadata.resource_version = str(row["resource_version"])
        return obj

    @staticmethod
    def _row(conn: sqlite3.Connection, kind: str, namespace: str, name: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM objects WHERE kind=? AND namespace=? AND name=?",
            (kind, namespace, name),
        ).fetchone()

    def get(self, kind: str, namespace: str, name: str) -> Any:
        with self._tx() as conn:
            row = self._row(conn, kind, namespace, name)
        if row is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        return self._load(row)

    def list(self, kind: str, namespace: str | None = None, selector: LabelSelector | None = None) -> list[Any]:
        with self._tx() as conn:
            if namespace is None:
                rows = conn.execute("SELECT * FROM objects WHERE kind=? ORDER BY id", (kind,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM objects WHERE kind=? AND namespace=? ORDER BY id",
                    (kind, namespace),
                ).fetchall()
        out = [self._load(r) for r in rows]
        if selector is not None:
            out = [o for o in out if matches(selector, o.metadata.labels)]
        return out

    # --- writes ---

    def create(self, obj: Any) -> Any:
        if obj.kind not in KIND_MODELS:
            raise ValidationError(f"unknown kind {obj.kind!r}")
        obj = obj.model_copy(deep=True)
        meta = obj.metadata
        if not meta.name:
            if not meta.generate_name:
                raise ValidationError("metadata.name or metadata.generate_name is required")
            meta.name = f"{meta.generate_name}{secrets.token_hex(3)}"
        meta.uid = str(uuid.uuid4())
        meta.creation_timestamp = utc_now()
        meta.deletion_timestamp = None
        meta.generation = 1
        meta.resource_version = "1"

        try:
            with self._tx() as conn:
                conn.execute(
                    """
                    INSERT INTO objects (kind, namespace, name, uid, resource_version, body, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (obj.kind, meta.namespace, meta.name, meta.uid, 1, obj.model_dump_json(), meta.creation_timestamp),
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError(f"{obj.kind} {meta.namespace}/{meta.name} already exists") from e

        self._notify(obj.kind, "ADDED", obj)
        return obj

    def _mutate(self, obj: Any, fn: Callable[[Any], Any]) -> Any:
        """Read-modify-write one object, guarded by its resource_version.

        ``fn`` receives the stored object and returns the new one. An object
        whose deletion has been requested and whose finalizers are now empty
        is removed instead of written back.
        """
        kind, meta = obj.kind, obj.metadata
        expected = meta.resource_version
        with self._tx() as conn:
            row = self._row(conn, kind, meta.namespace, meta.name)
            if row is None:
                raise NotFoundError(f"{kind} {meta.namespace}/{meta.name} not found")
            current_rv = int(row["resource_version"])
            if expected and str(current_rv) != expected:
                raise ConflictError(
                    f"{kind} {meta.namespace}/{meta.name}: resource_version {expected} is stale (now {current_rv})"
                )
            current = self._load(row)
            updated = fn(current)
            for field_name in _IMMUTABLE_META:
                setattr(updated.metadata, field_name, getattr(current.metadata, field_name))
            removed = bool(updated.metadata.deletion_timestamp) and not updated.metadata.finalizers
            if removed:
                conn.execute("DELETE FROM objects WHERE id=?", (row["id"],))
            else:
                updated.metadata.resource_version = str(current_rv + 1)
                cur = conn.execute(
                    """
                    UPDATE objects SET body=?, resource_version=?
                    WHERE id=? AND resource_version=?
                    """,
                    (updated.model_dump_json(), current_rv + 1, row["id"], current_rv),
                )
                if cur.rowcount != 1:
                    raise ConflictError(f"{kind} {meta.namespace}/{meta.name} changed concurrently")

        if removed:
            self._collect_garbage(updated)
            self._notify(kind, "DELETED", updated)
        else:
            self._notify(kind, "MODIFIED", updated)
        return updated

    def update(self, obj: Any) -> Any:
        """Replace metadata and spec; status is left alone."""

        def apply(current: Any) -> Any:
            updated = obj.model_copy(deep=True)
            if hasattr(current, "status"):
                updated.status = current.status
            updated.metadata.generation = current.metadata.generation
            if hasattr(current, "spec") and updated.spec != current.spec:
                updated.metadata.generation += 1
            return updated

        return self._mutate(obj, apply)

    def patch(self, obj: Any, diff: dict[str, Any]) -> Any:
        """Apply a merge patch, checked against obj.metadata.resource_version."""

        def apply(current: Any) -> Any:
            body = merge_patch(current.model_dump(mode="json"), diff)
            try:
                updated = type(current).model_validate(body)
            except ModelValidationError as e:
                raise ValidationError(f"invalid patch for {current.kind} {current.metadata.name}: {e}") from e
            updated.metadata.generation = current.metadata.generation
            if hasattr(current, "spec") and updated.spec != current.spec:
                updated.metadata.generation += 1
            return updated

        return self._mutate(obj, apply)

    def update_status(self, obj: Any) -> Any:
        def apply(current: Any) -> Any:
            updated = current.model_copy(deep=True)
            updated.status = obj.status.model_copy(deep=True)
            return updated

        return self._mutate(obj, apply)

    def delete(self, obj: Any, uid: str | None = None) -> None:
        """Delete obj. ``uid`` is a precondition: a different object that now
        holds the same name is reported as NotFound.
        """
        kind, meta = obj.kind, obj.metadata
        with self._tx() as conn:
            row = self._row(conn, kind, meta.namespace, meta.name)
            if row is None or (uid and row["uid"] != uid):
                raise NotFoundError(f"{kind} {meta.namespace}/{meta.name} not found")
            current = self._load(row)
            if current.metadata.finalizers:
                if current.metadata.deletion_timestamp:
                    return
                rv = int(row["resource_version"])
                current.metadata.deletion_timestamp = utc_now()
                current.metadata.resource_version = str(rv + 1)
                cur = conn.execute(
                    "UPDATE objects SET body=?, resource_version=? WHERE id=? AND resource_version=?",
                    (current.model_dump_json(), rv + 1, row["id"], rv),
                )
                if cur.rowcount != 1:
                    raise ConflictError(f"{kind} {meta.namespace}/{meta.name} changed concurrently")
                event = "MODIFIED"
            else:
                conn.execute("DELETE FROM objects WHERE id=?", (row["id"],))
                event = "DELETED"

        if event == "DELETED":
            self._collect_garbage(current)
        self._notify(kind, event, current)

    def _collect_garbage(self, owner: Any) -> None:
        """Cascade a removal to every object in the namespace that lists the
        removed object among its owners."""
        uid = owner.metadata.uid
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM objects WHERE namespace=? ORDER BY id", (owner.metadata.namespace,)
            ).fetchall()
        for r in rows:
            dependent = self._load(r)
            if not any(ref.uid == uid for ref in dependent.metadata.owner_references):
                continue
            try:
                self.delete(dependent, dependent.metadata.uid)
            except NotFoundError:
                # Removed by someone else in the meantime.
                continue

    # --- events ---

    def log_event(
        self, level: str, message: str, namespace: str | None = None, set_name: str | None = None
    ) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, namespace, set_name, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), namespace, set_name, message),
            )

    def latest_events(self, limit: int = 100, set_name: str | None = None) -> list[dict[str, Any]]:
        with self._tx() as conn:
            if set_name:
                rows = conn.execute(
                    "SELECT * FROM events WHERE set_name=? ORDER BY id DESC LIMIT ?", (set_name, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]
