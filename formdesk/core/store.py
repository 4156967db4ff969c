"""
Persistence for templates, responses and assignments.

Two implementations of the same FormStore contract:

- InMemoryFormStore  — dict-backed, guarded by a re-entrant lock
- SQLiteFormStore    — durable, one short transaction per operation

Accepting a response is a single operation (`add_response`) that checks
the template is active, increments `responseCount` only while it is
below `maxResponses`, and inserts the record, all atomically. Callers
never increment the count themselves.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from formdesk.core.assignments import FormAssignment
from formdesk.core.errors import (
    AssignmentNotFoundError,
    FormClosedError,
    ResponseLimitReachedError,
    ResponseNotFoundError,
    StoreError,
    TemplateNotFoundError,
)
from formdesk.core.schema import ResponseRecord, Template
from formdesk.core.utils import new_id, now_utc, parse_datetime, to_iso

logger = logging.getLogger(__name__)


class FormStore(Protocol):
    """The persistence collaborator consumed by the service layer."""

    def get_template(self, template_id: str) -> Template: ...

    def list_templates(
        self,
        owner_id: str | None = None,
        public: bool | None = None,
        active: bool | None = None,
    ) -> list[Template]: ...

    def save_template(self, template: Template) -> Template: ...

    def delete_template(self, template_id: str) -> None: ...

    def add_response(self, record: ResponseRecord) -> str: ...

    def get_response(self, response_id: str) -> ResponseRecord: ...

    def list_responses(self, template_id: str) -> list[ResponseRecord]: ...

    def save_assignment(self, assignment: FormAssignment) -> FormAssignment: ...

    def get_assignment(self, assignment_id: str) -> FormAssignment: ...

    def get_assignment_by_token(self, token: str) -> FormAssignment: ...

    def find_assignment(self, user_id: str, template_id: str) -> FormAssignment | None: ...

    def list_assignments(self, user_id: str) -> list[FormAssignment]: ...


def _prepare_template(template: Template, existing: Template | None) -> Template:
    """Assign id and timestamps; keep the stored count authoritative."""
    now = now_utc()
    update = {"updated_at": now}
    if existing is None:
        update["id"] = template.id or new_id()
        update["created_at"] = template.created_at or now
        update["response_count"] = template.response_count
    else:
        update["created_at"] = existing.created_at
        update["owner_id"] = template.owner_id or existing.owner_id
        update["response_count"] = existing.response_count
    return template.model_copy(update=update, deep=True)


def _newest_first(templates: list[Template]) -> list[Template]:
    return sorted(templates, key=lambda t: t.created_at or now_utc(), reverse=True)


# =================================================================
# In-memory store
# =================================================================


class InMemoryFormStore:
    """Dict-backed store. Every public method holds the lock for its whole body."""

    def __init__(self):
        self._templates: dict[str, Template] = {}
        self._responses: dict[str, ResponseRecord] = {}
        self._assignments: dict[str, FormAssignment] = {}
        self._lock = threading.RLock()

    # --- Templates ---

    def get_template(self, template_id: str) -> Template:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                raise TemplateNotFoundError(template_id)
            return template.model_copy(deep=True)

    def list_templates(
        self,
        owner_id: str | None = None,
        public: bool | None = None,
        active: bool | None = None,
    ) -> list[Template]:
        with self._lock:
            matches = [
                t.model_copy(deep=True) for t in self._templates.values()
                if (owner_id is None or t.owner_id == owner_id)
                and (public is None or t.is_public == public)
                and (active is None or t.is_active == active)
            ]
        return _newest_first(matches)

    def save_template(self, template: Template) -> Template:
        with self._lock:
            existing = self._templates.get(template.id) if template.id else None
            stored = _prepare_template(template, existing)
            self._templates[stored.id] = stored
            return stored.model_copy(deep=True)

    def delete_template(self, template_id: str) -> None:
        with self._lock:
            if template_id not in self._templates:
                raise TemplateNotFoundError(template_id)
            del self._templates[template_id]
            for response_id in [
                rid for rid, r in self._responses.items() if r.template_id == template_id
            ]:
                del self._responses[response_id]
            for assignment_id in [
                aid for aid, a in self._assignments.items() if a.template_id == template_id
            ]:
                del self._assignments[assignment_id]

    # --- Responses ---

    def add_response(self, record: ResponseRecord) -> str:
        with self._lock:
            template = self._templates.get(record.template_id)
            if template is None:
                raise TemplateNotFoundError(record.template_id)
            if not template.is_active:
                raise FormClosedError(f"Template '{record.template_id}' is inactive")
            if template.is_full:
                raise ResponseLimitReachedError(record.template_id, template.max_responses)

            template.response_count += 1
            stored = record.model_copy(
                update={
                    "id": record.id or new_id(),
                    "submitted_at": record.submitted_at or now_utc(),
                }
            )
            self._responses[stored.id] = stored
            return stored.id

    def get_response(self, response_id: str) -> ResponseRecord:
        with self._lock:
            record = self._responses.get(response_id)
        if record is None:
            raise ResponseNotFoundError(response_id)
        return record

    def list_responses(self, template_id: str) -> list[ResponseRecord]:
        with self._lock:
            records = [r for r in self._responses.values() if r.template_id == template_id]
        return sorted(records, key=lambda r: r.submitted_at, reverse=True)

    # --- Assignments ---

    def save_assignment(self, assignment: FormAssignment) -> FormAssignment:
        with self._lock:
            stored = assignment.model_copy(
                update={
                    "id": assignment.id or new_id(),
                    "assigned_at": assignment.assigned_at or now_utc(),
                },
                deep=True,
            )
            self._assignments[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_assignment(self, assignment_id: str) -> FormAssignment:
        with self._lock:
            assignment = self._assignments.get(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)
        return assignment.model_copy(deep=True)

    def get_assignment_by_token(self, token: str) -> FormAssignment:
        with self._lock:
            for assignment in self._assignments.values():
                if assignment.survey_token == token:
                    return assignment.model_copy(deep=True)
        raise AssignmentNotFoundError(token)

    def find_assignment(self, user_id: str, template_id: str) -> FormAssignment | None:
        with self._lock:
            for assignment in self._assignments.values():
                if assignment.user_id == user_id and assignment.template_id == template_id:
                    return assignment.model_copy(deep=True)
        return None

    def list_assignments(self, user_id: str) -> list[FormAssignment]:
        with self._lock:
            matches = [
                a.model_copy(deep=True)
                for a in self._assignments.values()
                if a.user_id == user_id
            ]
        return sorted(matches, key=lambda a: a.assigned_at, reverse=True)


# =================================================================
# SQLite store
# =================================================================


_SCHEMA = """
CREATE TABLE IF NOT EXISTS templates (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    is_public INTEGER NOT NULL,
    is_active INTEGER NOT NULL,
    max_responses INTEGER,
    response_count INTEGER NOT NULL DEFAULT 0,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS responses (
    id TEXT PRIMARY KEY,
    template_id TEXT NOT NULL,
    data_json TEXT NOT NULL,
    submitted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_responses_template ON responses (template_id);
CREATE TABLE IF NOT EXISTS assignments (
    id TEXT PRIMARY KEY,
    template_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    survey_token TEXT NOT NULL UNIQUE,
    data_json TEXT NOT NULL,
    assigned_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_assignments_user ON assignments (user_id);
"""


class SQLiteFormStore:
    """SQLite-backed durable store.

    Each operation opens its own connection and runs inside a single
    `BEGIN IMMEDIATE` transaction, so concurrent writers (threads or
    processes) are serialized by SQLite itself.

    Args:
        db_path: Path of the database file (created if missing).
        timeout: Seconds to wait for a competing writer's lock.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        self._db_path = db_path
        self._timeout = timeout
        self._lock = threading.RLock()
        self._ensure_schema()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)
        except sqlite3.Error as e:
            logger.error("Cannot open database %s: %s", self._db_path, e, exc_info=True)
            raise StoreError(f"Cannot open database: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error("Database error on %s: %s", self._db_path, e, exc_info=True)
            raise StoreError(f"Database error: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            try:
                conn = sqlite3.connect(self._db_path, timeout=self._timeout)
                try:
                    conn.executescript(_SCHEMA)
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                logger.error("Cannot initialize database %s: %s", self._db_path, e, exc_info=True)
                raise StoreError(f"Cannot initialize database: {e}") from e

    # --- Row mapping ---

    @staticmethod
    def _row_to_template(row: sqlite3.Row) -> Template:
        data = json.loads(row["data_json"])
        template = Template.model_validate(data)
        # Columns are authoritative for what the store itself maintains
        return template.model_copy(
            update={
                "response_count": int(row["response_count"]),
                "created_at": parse_datetime(row["created_at"]),
                "updated_at": parse_datetime(row["updated_at"]),
            }
        )

    @staticmethod
    def _row_to_response(row: sqlite3.Row) -> ResponseRecord:
        record = ResponseRecord.model_validate_json(row["data_json"])
        return record.model_copy(update={"submitted_at": parse_datetime(row["submitted_at"])})

    @staticmethod
    def _row_to_assignment(row: sqlite3.Row) -> FormAssignment:
        return FormAssignment.model_validate_json(row["data_json"])

    # --- Templates ---

    def _fetch_template(self, conn: sqlite3.Connection, template_id: str) -> Template | None:
        row = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        return self._row_to_template(row) if row is not None else None

    def get_template(self, template_id: str) -> Template:
        with self._lock, self._transaction() as conn:
            template = self._fetch_template(conn, template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def list_templates(
        self,
        owner_id: str | None = None,
        public: bool | None = None,
        active: bool | None = None,
    ) -> list[Template]:
        clauses: list[str] = []
        params: list = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if public is not None:
            clauses.append("is_public = ?")
            params.append(int(public))
        if active is not None:
            clauses.append("is_active = ?")
            params.append(int(active))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock, self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM templates {where} ORDER BY created_at DESC", params
            ).fetchall()
        return [self._row_to_template(r) for r in rows]

    def save_template(self, template: Template) -> Template:
        with self._lock, self._transaction() as conn:
            existing = self._fetch_template(conn, template.id) if template.id else None
            stored = _prepare_template(template, existing)
            conn.execute(
                """
                INSERT INTO templates
                (id, owner_id, is_public, is_active, max_responses, response_count,
                 data_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    is_public = excluded.is_public,
                    is_active = excluded.is_active,
                    max_responses = excluded.max_responses,
                    data_json = excluded.data_json,
                    updated_at = excluded.updated_at
                """,
                (
                    stored.id,
                    stored.owner_id,
                    int(stored.is_public),
                    int(stored.is_active),
                    stored.max_responses,
                    stored.response_count,
                    stored.model_dump_json(by_alias=True),
                    to_iso(stored.created_at),
                    to_iso(stored.updated_at),
                ),
            )
        return stored

    def delete_template(self, template_id: str) -> None:
        with self._lock, self._transaction() as conn:
            cursor = conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
            if cursor.rowcount == 0:
                raise TemplateNotFoundError(template_id)
            conn.execute("DELETE FROM responses WHERE template_id = ?", (template_id,))
            conn.execute("DELETE FROM assignments WHERE template_id = ?", (template_id,))

    # --- Responses ---

    def add_response(self, record: ResponseRecord) -> str:
        stored = record.model_copy(
            update={
                "id": record.id or new_id(),
                "submitted_at": record.submitted_at or now_utc(),
            }
        )
        with self._lock, self._transaction() as conn:
            row = conn.execute(
                "SELECT is_active, max_responses FROM templates WHERE id = ?",
                (record.template_id,),
            ).fetchone()
            if row is None:
                raise TemplateNotFoundError(record.template_id)
            if not row["is_active"]:
                raise FormClosedError(f"Template '{record.template_id}' is inactive")

            cursor = conn.execute(
                """
                UPDATE templates SET response_count = response_count + 1
                WHERE id = ? AND (max_responses IS NULL OR response_count < max_responses)
                """,
                (record.template_id,),
            )
            if cursor.rowcount == 0:
                raise ResponseLimitReachedError(record.template_id, row["max_responses"])

            conn.execute(
                "INSERT INTO responses (id, template_id, data_json, submitted_at) VALUES (?, ?, ?, ?)",
                (
                    stored.id,
                    stored.template_id,
                    stored.model_dump_json(by_alias=True),
                    to_iso(stored.submitted_at),
                ),
            )
        return stored.id

    def get_response(self, response_id: str) -> ResponseRecord:
        with self._lock, self._transaction() as conn:
            row = conn.execute("SELECT * FROM responses WHERE id = ?", (response_id,)).fetchone()
        if row is None:
            raise ResponseNotFoundError(response_id)
        return self._row_to_response(row)

    def list_responses(self, template_id: str) -> list[ResponseRecord]:
        with self._lock, self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM responses WHERE template_id = ? ORDER BY submitted_at DESC",
                (template_id,),
            ).fetchall()
        return [self._row_to_response(r) for r in rows]

    # --- Assignments ---

    def save_assignment(self, assignment: FormAssignment) -> FormAssignment:
        stored = assignment.model_copy(
            update={
                "id": assignment.id or new_id(),
                "assigned_at": assignment.assigned_at or now_utc(),
            }
        )
        with self._lock, self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO assignments (id, template_id, user_id, survey_token, data_json, assigned_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data_json = excluded.data_json
                """,
                (
                    stored.id,
                    stored.template_id,
                    stored.user_id,
                    stored.survey_token,
                    stored.model_dump_json(by_alias=True),
                    to_iso(stored.assigned_at),
                ),
            )
        return stored

    def get_assignment(self, assignment_id: str) -> FormAssignment:
        with self._lock, self._transaction() as conn:
            row = conn.execute("SELECT * FROM assignments WHERE id = ?", (assignment_id,)).fetchone()
        if row is None:
            raise AssignmentNotFoundError(assignment_id)
        return self._row_to_assignment(row)

    def get_assignment_by_token(self, token: str) -> FormAssignment:
        with self._lock, self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM assignments WHERE survey_token = ?", (token,)
            ).fetchone()
        if row is None:
            raise AssignmentNotFoundError(token)
        return self._row_to_assignment(row)

    def find_assignment(self, user_id: str, template_id: str) -> FormAssignment | None:
        with self._lock, self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM assignments WHERE user_id = ? AND template_id = ?",
                (user_id, template_id),
            ).fetchone()
        return self._row_to_assignment(row) if row is not None else None

    def list_assignments(self, user_id: str) -> list[FormAssignment]:
        with self._lock, self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM assignments WHERE user_id = ? ORDER BY assigned_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_assignment(r) for r in rows]
