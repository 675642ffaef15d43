"""
SQLite-backed collaborators for single-host deployments.

Every store shares one database file through SqliteDatabase:

    replace_job       jobs (scope encoded as pipeline_id_info / project_id)
    replace_rule      rules, unique per (job_id, ordinal)
    replace_history   append-only migration records
    kv_checkpoint     sweep cursors and in-progress markers
    kv_lock           lease locks (owner, expires_at in epoch seconds)
    project           projects and their integer primary keys
    pipeline          pipeline ownership and latest version
    pipeline_version  every stored pipeline body (JSON)
    template          custom templates, latest body (JSON) plus version

Each call opens its own connection; writes that read before they write run
inside BEGIN IMMEDIATE so concurrent processes serialize on the file lock.
"""

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Sequence

from compswap.errors import InvalidTransitionError
from compswap.schemas import (
    Definition,
    EntityKind,
    JobScope,
    MigrationRecord,
    ReplacementJob,
    ReplacementRule,
    StoredDefinition,
    StoredTemplate,
    TaskStatus,
    can_transition,
    decode_definition,
)

from .base import ProjectRef

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS replace_job (
    job_id TEXT PRIMARY KEY,
    pipeline_id_info TEXT,
    project_id TEXT,
    status TEXT NOT NULL,
    creator TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    modifier TEXT
);
CREATE INDEX IF NOT EXISTS idx_replace_job_status ON replace_job (status, created_at, job_id);

CREATE TABLE IF NOT EXISTS replace_rule (
    rule_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES replace_job (job_id),
    ordinal INTEGER NOT NULL,
    source_code TEXT NOT NULL,
    source_version TEXT NOT NULL,
    target_code TEXT NOT NULL,
    target_version TEXT NOT NULL,
    param_remap_info TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    modifier TEXT,
    UNIQUE (job_id, ordinal)
);

CREATE TABLE IF NOT EXISTS replace_history (
    record_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    project_id TEXT,
    entity_id TEXT NOT NULL,
    entity_kind TEXT NOT NULL,
    source_version INTEGER NOT NULL,
    target_version INTEGER,
    status TEXT NOT NULL,
    error TEXT,
    actor TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_replace_history_job ON replace_history (job_id, rule_id);

CREATE TABLE IF NOT EXISTS kv_checkpoint (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS kv_lock (
    key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS project (
    project_id TEXT PRIMARY KEY,
    key INTEGER NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS pipeline (
    pipeline_id TEXT PRIMARY KEY,
    project_id TEXT REFERENCES project (project_id),
    latest_version INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pipeline_project ON pipeline (project_id);

CREATE TABLE IF NOT EXISTS pipeline_version (
    pipeline_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    body TEXT NOT NULL,
    modifier TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (pipeline_id, version)
);

CREATE TABLE IF NOT EXISTS template (
    project_id TEXT NOT NULL,
    template_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    version_name TEXT,
    body TEXT NOT NULL,
    creator TEXT,
    PRIMARY KEY (project_id, template_id)
);
"""


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _statuses_from(new: TaskStatus) -> list[str]:
    """Statuses a row may currently have for an update to new to be allowed."""
    return [s.value for s in TaskStatus if can_transition(s, new)]


class SqliteDatabase:
    """Owns the database file path and schema."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def initialize(self) -> None:
        """Create the database file and tables if missing."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"Initialized replacement database at {self.path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")


class SqliteLockService:
    """Lease lock in kv_lock. Expiry uses wall-clock time shared by all processes."""

    def __init__(
        self,
        db: SqliteDatabase,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self.owner = owner or uuid.uuid4().hex
        self._clock = clock

    def try_acquire(self, key: str, lease_ms: int) -> bool:
        now = self._clock()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO kv_lock (key, owner, expires_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
                WHERE kv_lock.owner = excluded.owner OR kv_lock.expires_at <= ?
                """,
                (key, self.owner, now + lease_ms / 1000.0, now),
            )
            row = conn.execute("SELECT owner FROM kv_lock WHERE key = ?", (key,)).fetchone()
        return row is not None and row["owner"] == self.owner

    def release(self, key: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM kv_lock WHERE key = ? AND owner = ?", (key, self.owner))

    def holder(self, key: str) -> Optional[str]:
        """Owner of an unexpired lease on key, if any."""
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT owner FROM kv_lock WHERE key = ? AND expires_at > ?", (key, self._clock())
            ).fetchone()
        return row["owner"] if row else None


class SqliteCheckpointStore:
    """CheckpointStore on kv_checkpoint."""

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def get(self, key: str) -> Optional[str]:
        with self._db.connect() as conn:
            row = conn.execute("SELECT value FROM kv_checkpoint WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO kv_checkpoint (key, value) VALUES (?, ?) "
                "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    def delete(self, key: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM kv_checkpoint WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        with self._db.connect() as conn:
            return [r["key"] for r in conn.execute("SELECT key FROM kv_checkpoint ORDER BY key")]


class SqliteJobStore:
    """JobStore on replace_job, replace_rule and replace_history."""

    def __init__(self, db: SqliteDatabase):
        self._db = db

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> ReplacementJob:
        return ReplacementJob(
            job_id=row["job_id"],
            scope=JobScope.from_fields(row["pipeline_id_info"], row["project_id"]),
            creator=row["creator"],
            status=TaskStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            modifier=row["modifier"],
        )

    @staticmethod
    def _rule_from_row(row: sqlite3.Row) -> ReplacementRule:
        return ReplacementRule(
            rule_id=row["rule_id"],
            job_id=row["job_id"],
            ordinal=row["ordinal"],
            source_code=row["source_code"],
            source_version=row["source_version"],
            target_code=row["target_code"],
            target_version=row["target_version"],
            param_remap_info=row["param_remap_info"],
            status=TaskStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            modifier=row["modifier"],
        )

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> MigrationRecord:
        return MigrationRecord(
            record_id=row["record_id"],
            job_id=row["job_id"],
            rule_id=row["rule_id"],
            project_id=row["project_id"],
            entity_id=row["entity_id"],
            entity_kind=EntityKind(row["entity_kind"]),
            source_version=row["source_version"],
            target_version=row["target_version"],
            status=TaskStatus(row["status"]),
            error=row["error"],
            actor=row["actor"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def create_job(self, job: ReplacementJob, rules: Sequence[ReplacementRule]) -> None:
        pipeline_id_info, project_id = job.scope.to_fields()
        with self._db.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO replace_job (job_id, pipeline_id_info, project_id, status, creator, "
                    "created_at, updated_at, modifier) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        job.job_id, pipeline_id_info, project_id, job.status.value, job.creator,
                        job.created_at.isoformat(), job.updated_at.isoformat(), job.modifier,
                    ),
                )
                for rule in rules:
                    if rule.job_id != job.job_id:
                        raise ValueError(f"Rule {rule.rule_id} belongs to job {rule.job_id}, not {job.job_id}")
                    conn.execute(
                        "INSERT INTO replace_rule (rule_id, job_id, ordinal, source_code, source_version, "
                        "target_code, target_version, param_remap_info, status, created_at, updated_at, modifier) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            rule.rule_id, rule.job_id, rule.ordinal, rule.source_code, rule.source_version,
                            rule.target_code, rule.target_version, rule.param_remap_info, rule.status.value,
                            rule.created_at.isoformat(), rule.updated_at.isoformat(), rule.modifier,
                        ),
                    )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Cannot create job {job.job_id}: {e}") from e

    def get_job(self, job_id: str) -> Optional[ReplacementJob]:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM replace_job WHERE job_id = ?", (job_id,)).fetchone()
        return self._job_from_row(row) if row else None

    def next_pending_job(self) -> Optional[ReplacementJob]:
        pending = self.list_jobs(statuses=(TaskStatus.INIT, TaskStatus.HANDING), limit=1)
        return pending[0] if pending else None

    def list_jobs(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReplacementJob]:
        sql = "SELECT * FROM replace_job"
        params: list = []
        if statuses is not None:
            values = [TaskStatus(s).value for s in statuses]
            sql += f" WHERE status IN ({', '.join('?' * len(values))})"
            params.extend(values)
        sql += " ORDER BY created_at, job_id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._db.connect() as conn:
            return [self._job_from_row(r) for r in conn.execute(sql, params)]

    def count_rules(self, job_id: str, statuses: Optional[Iterable[TaskStatus]] = None) -> int:
        sql = "SELECT COUNT(*) FROM replace_rule WHERE job_id = ?"
        params: list = [job_id]
        if statuses is not None:
            values = [TaskStatus(s).value for s in statuses]
            sql += f" AND status IN ({', '.join('?' * len(values))})"
            params.extend(values)
        with self._db.connect() as conn:
            return conn.execute(sql, params).fetchone()[0]

    def list_rules(
        self,
        job_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None,
        after_ordinal: Optional[int] = None,
        limit: int = 100,
    ) -> list[ReplacementRule]:
        sql = "SELECT * FROM replace_rule WHERE job_id = ?"
        params: list = [job_id]
        if statuses is not None:
            values = [TaskStatus(s).value for s in statuses]
            sql += f" AND status IN ({', '.join('?' * len(values))})"
            params.extend(values)
        if after_ordinal is not None:
            sql += " AND ordinal > ?"
            params.append(after_ordinal)
        sql += " ORDER BY ordinal LIMIT ?"
        params.append(limit)
        with self._db.connect() as conn:
            return [self._rule_from_row(r) for r in conn.execute(sql, params)]

    def get_rule(self, rule_id: str) -> Optional[ReplacementRule]:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM replace_rule WHERE rule_id = ?", (rule_id,)).fetchone()
        return self._rule_from_row(row) if row else None

    def _update_status(self, table: str, id_column: str, row_id: str, status: TaskStatus, modifier: str) -> None:
        allowed = _statuses_from(status)
        with self._db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET status = ?, modifier = ?, updated_at = ? "
                f"WHERE {id_column} = ? AND status IN ({', '.join('?' * len(allowed))})",
                (status.value, modifier, _utcnow().isoformat(), row_id, *allowed),
            )
            if cursor.rowcount == 1:
                return
            row = conn.execute(f"SELECT status FROM {table} WHERE {id_column} = ?", (row_id,)).fetchone()
        if row is None:
            raise KeyError(f"Unknown {table} row: {row_id}")
        raise InvalidTransitionError(f"{row_id}: {row['status']} -> {status.value}")

    def update_job_status(self, job_id: str, status: TaskStatus, modifier: str) -> None:
        self._update_status("replace_job", "job_id", job_id, status, modifier)

    def update_rule_status(self, rule_id: str, status: TaskStatus, modifier: str) -> None:
        self._update_status("replace_rule", "rule_id", rule_id, status, modifier)

    def add_migration_record(self, record: MigrationRecord) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO replace_history (record_id, job_id, rule_id, project_id, entity_id, entity_kind, "
                "source_version, target_version, status, error, actor, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.record_id, record.job_id, record.rule_id, record.project_id, record.entity_id,
                    record.entity_kind.value, record.source_version, record.target_version,
                    record.status.value, record.error, record.actor, record.created_at.isoformat(),
                ),
            )

    def list_migration_records(
        self,
        job_id: str,
        rule_id: Optional[str] = None,
    ) -> list[MigrationRecord]:
        sql = "SELECT * FROM replace_history WHERE job_id = ?"
        params: list = [job_id]
        if rule_id is not None:
            sql += " AND rule_id = ?"
            params.append(rule_id)
        sql += " ORDER BY rowid"
        with self._db.connect() as conn:
            return [self._record_from_row(r) for r in conn.execute(sql, params)]


class SqliteProjectDirectory:
    """ProjectDirectory on project and pipeline."""

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def add_project(self, project_id: str, key: int) -> None:
        with self._db.transaction() as conn:
            conn.execute("INSERT INTO project (project_id, key) VALUES (?, ?)", (project_id, key))

    def list_pipeline_ids(self, project_id: str) -> set[str]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT pipeline_id FROM pipeline WHERE project_id = ?", (project_id,))
            return {r["pipeline_id"] for r in rows}

    def list_projects_by_key_range(self, min_key: int, max_key: int) -> list[ProjectRef]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT project_id, key FROM project WHERE key >= ? AND key <= ? ORDER BY key",
                (min_key, max_key),
            )
            return [ProjectRef(project_id=r["project_id"], key=r["key"]) for r in rows]

    def min_key(self) -> Optional[int]:
        with self._db.connect() as conn:
            return conn.execute("SELECT MIN(key) FROM project").fetchone()[0]

    def max_key(self) -> Optional[int]:
        with self._db.connect() as conn:
            return conn.execute("SELECT MAX(key) FROM project").fetchone()[0]


class SqliteDefinitionStore:
    """DefinitionStore on pipeline and pipeline_version."""

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def add_pipeline(
        self,
        pipeline_id: str,
        definition: Definition,
        project_id: Optional[str] = None,
        version: int = 1,
        modifier: Optional[str] = None,
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO pipeline (pipeline_id, project_id, latest_version) VALUES (?, ?, ?)",
                (pipeline_id, project_id, version),
            )
            conn.execute(
                "INSERT INTO pipeline_version (pipeline_id, version, body, modifier, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (pipeline_id, version, json.dumps(definition.to_dict()), modifier, _utcnow().isoformat()),
            )

    def get_version(self, pipeline_id: str, version: int) -> Definition:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT body FROM pipeline_version WHERE pipeline_id = ? AND version = ?",
                (pipeline_id, version),
            ).fetchone()
        if row is None:
            raise KeyError(f"{pipeline_id} has no version {version}")
        return decode_definition(row["body"])

    def load_latest(self, pipeline_ids: Iterable[str]) -> list[StoredDefinition]:
        ids = sorted(set(pipeline_ids))
        if not ids:
            return []
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT p.pipeline_id, p.project_id, v.version, v.body, v.modifier
                FROM pipeline p
                JOIN pipeline_version v ON v.pipeline_id = p.pipeline_id AND v.version = p.latest_version
                WHERE p.pipeline_id IN ({', '.join('?' * len(ids))})
                ORDER BY p.pipeline_id
                """,
                ids,
            ).fetchall()
        return [
            StoredDefinition(
                pipeline_id=r["pipeline_id"],
                project_id=r["project_id"],
                version=r["version"],
                body=r["body"],
                last_modifier=r["modifier"],
            )
            for r in rows
        ]

    def persist_new_version(self, pipeline_id: str, definition: Definition, actor: str) -> int:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT latest_version FROM pipeline WHERE pipeline_id = ?", (pipeline_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown pipeline: {pipeline_id}")
            new_version = row["latest_version"] + 1
            conn.execute(
                "INSERT INTO pipeline_version (pipeline_id, version, body, modifier, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (pipeline_id, new_version, json.dumps(definition.to_dict()), actor, _utcnow().isoformat()),
            )
            conn.execute(
                "UPDATE pipeline SET latest_version = ? WHERE pipeline_id = ?",
                (new_version, pipeline_id),
            )
        return new_version


class SqliteTemplateStore:
    """TemplateStore on template."""

    def __init__(self, db: SqliteDatabase):
        self._db = db

    @staticmethod
    def _from_row(row: sqlite3.Row) -> StoredTemplate:
        return StoredTemplate(
            template_id=row["template_id"],
            project_id=row["project_id"],
            version=row["version"],
            version_name=row["version_name"],
            body=row["body"],
            creator=row["creator"],
        )

    def add_template(
        self,
        project_id: str,
        template_id: str,
        definition: Definition,
        version: int = 1,
        version_name: str = "init",
        creator: Optional[str] = None,
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO template (project_id, template_id, version, version_name, body, creator) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (project_id, template_id, version, version_name, json.dumps(definition.to_dict()), creator),
            )

    def get_template(self, project_id: str, template_id: str) -> StoredTemplate:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM template WHERE project_id = ? AND template_id = ?",
                (project_id, template_id),
            ).fetchone()
        if row is None:
            raise KeyError(f"Unknown template: {project_id}/{template_id}")
        return self._from_row(row)

    def list_templates(self, project_id: str, offset: int = 0, limit: int = 100) -> list[StoredTemplate]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM template WHERE project_id = ? ORDER BY template_id LIMIT ? OFFSET ?",
                (project_id, limit, offset),
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def update_template(
        self,
        project_id: str,
        template_id: str,
        definition: Definition,
        actor: str,
    ) -> int:
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT version FROM template WHERE project_id = ? AND template_id = ?",
                (project_id, template_id),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown template: {project_id}/{template_id}")
            new_version = row["version"] + 1
            conn.execute(
                "UPDATE template SET version = ?, body = ? WHERE project_id = ? AND template_id = ?",
                (new_version, json.dumps(definition.to_dict()), project_id, template_id),
            )
        logger.debug(f"Template {project_id}/{template_id} updated to v{new_version} by {actor}")
        return new_version
