"""
Transactional SQLite metadata store.

Stored at: the configured path (default .sbupload/metadata.db)

Invariants:
- Counter read, counter write and build insert commit or abort together.
- Writers serialize on BEGIN IMMEDIATE; a busy database retries the
  whole read-compute-write, so callers never see a numbering conflict.
- ISO8601 UTC timestamps.
- Canonical JSON storage for coverage (sorted keys, compact separators).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import closing
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, TypeVar, Union

from .base import DEFAULT_LIST_LIMIT, BuildMetadataStore
from .schema import SCHEMA_SQL, SCHEMA_VERSION
from ..core.errors import InternalError, MetadataConflictError, MetadataStoreError
from ..core.types import (
    Build,
    BuildCoverage,
    BuildStatus,
    CreateBuildData,
    UpdateBuildData,
    format_timestamp,
    generate_document_id,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TRANSACTION_ATTEMPTS = 5
BUSY_TIMEOUT_SECONDS = 5.0
RETRY_BACKOFF_BASE = 0.05

# camelCase field name -> column
_UPDATABLE_COLUMNS = {
    "status": "status",
    "zipUrl": "zip_url",
    "archivedAt": "archived_at",
    "archivedBy": "archived_by",
    "coverage": "coverage",
}


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return "locked" in text or "busy" in text


def _column_value(field: str, value: Any) -> Any:
    if field == "archivedAt":
        return format_timestamp(value)
    if field == "coverage":
        return _canonical_json(value)
    return value


# ------------------------------------------------------------
# Database
# ------------------------------------------------------------

class SQLiteDatabase:
    """
    Connection and schema management shared by the SQLite stores.

    - WAL mode enabled
    - One short-lived connection per operation
    - Blocking work runs in a worker thread
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path).expanduser().resolve()
        logger.debug(f"SQLite store using DB: {self.db_path}")

    def init_schema(self) -> None:
        """Create tables if needed. Safe to call on every start."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            ).fetchone()

            if row:
                version = conn.execute(
                    "SELECT version FROM schema_version WHERE id = 1"
                ).fetchone()
                if version and version[0] != SCHEMA_VERSION:
                    raise InternalError(
                        f"Database schema v{version[0]} does not match expected v{SCHEMA_VERSION}"
                    )

            try:
                conn.executescript(SCHEMA_SQL)
            except sqlite3.OperationalError as e:
                raise InternalError(f"Schema initialization failed: {e}") from e

    def verify_schema(self) -> Tuple[bool, str]:
        """
        Returns:
            (is_valid, message)
        """
        if not self.db_path.exists():
            return False, f"Database not found at {self.db_path}"

        with closing(self._connect()) as conn:
            try:
                row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
            except sqlite3.OperationalError as e:
                return False, f"Schema verification failed: {e}"

        if not row:
            return False, "No schema version found in database"
        if row[0] != SCHEMA_VERSION:
            return False, f"Schema mismatch: DB v{row[0]}, expected v{SCHEMA_VERSION}"
        return True, f"Schema version {SCHEMA_VERSION} (current)"

    # ------------------------------------------------------------
    # Connection Management
    # ------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,  # explicit transactions
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
        return conn

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK;")

    def _transaction(self, work: Callable[[sqlite3.Connection], T], operation: str) -> T:
        """
        Run work inside BEGIN IMMEDIATE ... COMMIT.

        A busy/locked database reruns work from the start. Any other
        failure rolls back and propagates.
        """
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            with closing(self._connect()) as conn:
                try:
                    conn.execute("BEGIN IMMEDIATE;")
                    result = work(conn)
                    conn.execute("COMMIT;")
                    return result
                except sqlite3.OperationalError as exc:
                    self._rollback(conn)
                    if not _is_busy(exc):
                        raise MetadataStoreError(str(exc), operation=operation) from exc
                    logger.warning(
                        f"{operation}: database busy (attempt {attempt}/{MAX_TRANSACTION_ATTEMPTS}), retrying"
                    )
                except sqlite3.IntegrityError as exc:
                    self._rollback(conn)
                    raise MetadataConflictError(str(exc), operation=operation) from exc
                except sqlite3.Error as exc:
                    self._rollback(conn)
                    raise MetadataStoreError(str(exc), operation=operation) from exc
                except BaseException:
                    self._rollback(conn)
                    raise
            time.sleep(RETRY_BACKOFF_BASE * (2 ** (attempt - 1)))

        raise MetadataConflictError(
            f"Transaction did not commit after {MAX_TRANSACTION_ATTEMPTS} attempts",
            operation=operation,
        )

    def _execute(self, sql: str, params: tuple, operation: str) -> int:
        """Single autocommit statement. Returns affected row count."""
        with closing(self._connect()) as conn:
            try:
                return conn.execute(sql, params).rowcount
            except sqlite3.Error as exc:
                raise MetadataStoreError(str(exc), operation=operation) from exc

    def _fetch(self, sql: str, params: tuple, operation: str) -> List[sqlite3.Row]:
        with closing(self._connect()) as conn:
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise MetadataStoreError(str(exc), operation=operation) from exc


# ------------------------------------------------------------
# Metadata Store
# ------------------------------------------------------------

class SQLiteMetadataStore(SQLiteDatabase, BuildMetadataStore):
    """
    Build metadata with atomic, strictly increasing per-project numbers.
    """

    transactional = True

    def __init__(self, db_path: Union[str, Path], service_account_id: str = "upload-service"):
        super().__init__(db_path)
        self.service_account_id = service_account_id

    # ------------------------------------------------------------
    # Build Operations
    # ------------------------------------------------------------

    async def create_build(self, project_id: str, data: CreateBuildData) -> Build:
        build = await asyncio.to_thread(self._create_build, project_id, data)
        logger.info(f"Created build #{build.build_number} ({build.id}) for project {project_id}")
        return build

    def _create_build(self, project_id: str, data: CreateBuildData) -> Build:
        coverage = data.coverage.to_dict() if data.coverage else None

        def work(conn: sqlite3.Connection) -> Build:
            row = conn.execute(
                "SELECT current_build_number FROM build_counters WHERE project_id = ?",
                (project_id,),
            ).fetchone()

            if row is None:
                build_number = 1
                conn.execute(
                    "INSERT INTO build_counters (project_id, current_build_number) VALUES (?, ?)",
                    (project_id, build_number),
                )
            else:
                build_number = row["current_build_number"] + 1
                conn.execute(
                    "UPDATE build_counters SET current_build_number = ? WHERE project_id = ?",
                    (build_number, project_id),
                )

            build_id = generate_document_id()
            created_at = utc_now()

            conn.execute(
                """
                INSERT INTO builds (
                    project_id,
                    build_id,
                    version_id,
                    build_number,
                    zip_url,
                    status,
                    created_at,
                    created_by,
                    coverage
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    build_id,
                    data.version_id,
                    build_number,
                    data.zip_url,
                    BuildStatus.ACTIVE.value,
                    format_timestamp(created_at),
                    self.service_account_id,
                    _canonical_json(coverage) if coverage is not None else None,
                ),
            )

            return Build(
                id=build_id,
                project_id=project_id,
                version_id=data.version_id,
                build_number=build_number,
                zip_url=data.zip_url,
                status=BuildStatus.ACTIVE,
                created_at=created_at,
                created_by=self.service_account_id,
                coverage=data.coverage,
            )

        return self._transaction(work, "create_build")

    async def get_build(self, project_id: str, build_id: str) -> Optional[Build]:
        rows = await asyncio.to_thread(
            self._fetch,
            "SELECT * FROM builds WHERE project_id = ? AND build_id = ?",
            (project_id, build_id),
            "get_build",
        )
        return self._row_to_build(rows[0]) if rows else None

    async def get_project_builds(
        self,
        project_id: str,
        status_filter: Optional[BuildStatus] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Build]:
        if limit < 1 or limit > 1000:
            raise ValueError("limit must be between 1 and 1000")

        if status_filter is not None:
            sql = """
                SELECT * FROM builds
                WHERE project_id = ? AND status = ?
                ORDER BY created_at DESC, build_number DESC
                LIMIT ?
            """
            params: tuple = (project_id, BuildStatus(status_filter).value, limit)
        else:
            sql = """
                SELECT * FROM builds
                WHERE project_id = ?
                ORDER BY build_number DESC
                LIMIT ?
            """
            params = (project_id, limit)

        rows = await asyncio.to_thread(self._fetch, sql, params, "get_project_builds")
        return [self._row_to_build(r) for r in rows]

    async def get_build_by_version(self, project_id: str, version_id: str) -> Optional[Build]:
        rows = await asyncio.to_thread(
            self._fetch,
            """
            SELECT * FROM builds
            WHERE project_id = ? AND version_id = ?
            ORDER BY build_number DESC
            LIMIT 1
            """,
            (project_id, version_id),
            "get_build_by_version",
        )
        return self._row_to_build(rows[0]) if rows else None

    async def get_latest_build(self, project_id: str) -> Optional[Build]:
        rows = await asyncio.to_thread(
            self._fetch,
            """
            SELECT * FROM builds
            WHERE project_id = ? AND status = 'active'
            ORDER BY build_number DESC
            LIMIT 1
            """,
            (project_id,),
            "get_latest_build",
        )
        return self._row_to_build(rows[0]) if rows else None

    async def update_build(self, project_id: str, build_id: str, updates: UpdateBuildData) -> None:
        fields = updates.fields()
        if not fields:
            return

        assignments = ", ".join(f"{_UPDATABLE_COLUMNS[name]} = ?" for name in fields)
        params = tuple(_column_value(name, value) for name, value in fields.items())

        where = "project_id = ? AND build_id = ?"
        where_params: Tuple[Any, ...] = (project_id, build_id)
        if "status" in fields:
            # Archiving applies once; an archived build keeps its audit fields
            where += " AND status = ?"
            where_params += (BuildStatus.ACTIVE.value,)

        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE builds SET {assignments} WHERE {where}",
            params + where_params,
            "update_build",
        )
        if not changed:
            logger.debug(f"update_build: no active build {build_id} in project {project_id}")

    async def update_build_coverage(
        self,
        project_id: str,
        build_id: str,
        coverage: BuildCoverage,
    ) -> None:
        await self.update_build(project_id, build_id, UpdateBuildData(coverage=coverage))

    async def archive_build(self, project_id: str, build_id: str, user_id: str) -> None:
        await self.update_build(
            project_id,
            build_id,
            UpdateBuildData(
                status=BuildStatus.ARCHIVED,
                archived_at=utc_now(),
                archived_by=user_id,
            ),
        )

    async def delete_build(self, project_id: str, build_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM builds WHERE project_id = ? AND build_id = ?",
            (project_id, build_id),
            "delete_build",
        )

    async def get_counter(self, project_id: str) -> Optional[int]:
        """Last assigned build number for a project, None before the first build."""
        rows = await asyncio.to_thread(
            self._fetch,
            "SELECT current_build_number FROM build_counters WHERE project_id = ?",
            (project_id,),
            "get_counter",
        )
        return rows[0]["current_build_number"] if rows else None

    # ------------------------------------------------------------
    # Row Mapping
    # ------------------------------------------------------------

    @staticmethod
    def _row_to_build(row: sqlite3.Row) -> Build:
        return Build(
            id=row["build_id"],
            project_id=row["project_id"],
            version_id=row["version_id"],
            build_number=row["build_number"],
            zip_url=row["zip_url"],
            status=BuildStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            created_by=row["created_by"],
            archived_at=parse_timestamp(row["archived_at"]) if row["archived_at"] else None,
            archived_by=row["archived_by"],
            coverage=BuildCoverage.from_dict(json.loads(row["coverage"])) if row["coverage"] else None,
        )
