"""Persistent store for projects, resources, runs, hypotheses and prompts.

The pipeline treats storage as a transactional row store:
- runs are updated by read-modify-write, optionally conditioned on the
  expected cursor (status / current_step / current_loop) so that two
  invocations can never both advance the same run
- hypothesis numbers are allocated per project as max(existing) + 1,
  counting soft-deleted rows so numbers are never reused
- activating a prompt version deactivates its siblings in one transaction
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from asip.contracts.schemas import (
    Hypothesis,
    Project,
    PromptVersion,
    ResearchItem,
    Resource,
    Run,
    RunStatus,
)
from asip.errors import (
    ConcurrentRunUpdateError,
    HypothesisNotFoundError,
    ResourceNotFoundError,
    RunNotFoundError,
)


class Storage(ABC):
    """Abstract persistence interface used by the pipeline."""

    # Projects and resources
    @abstractmethod
    def create_project(self, project: Project) -> Project: ...

    @abstractmethod
    def get_project(self, project_id: str, include_deleted: bool = False) -> Project | None: ...

    @abstractmethod
    def list_projects(self) -> list[Project]: ...

    @abstractmethod
    def soft_delete_project(self, project_id: str) -> None: ...

    @abstractmethod
    def create_resource(self, resource: Resource) -> Resource: ...

    @abstractmethod
    def get_resource(self, resource_id: str) -> Resource | None: ...

    @abstractmethod
    def list_resources(self, project_id: str) -> list[Resource]: ...

    @abstractmethod
    def update_resource(self, resource_id: str, updates: dict[str, Any]) -> Resource: ...

    @abstractmethod
    def delete_resource(self, resource_id: str) -> None: ...

    # Runs
    @abstractmethod
    def create_run(self, run: Run) -> Run: ...

    @abstractmethod
    def get_run(self, run_id: str) -> Run | None: ...

    @abstractmethod
    def list_runs(self, project_id: str) -> list[Run]: ...

    @abstractmethod
    def get_runs_by_status(self, statuses: list[RunStatus]) -> list[Run]: ...

    @abstractmethod
    def update_run(
        self, run_id: str, updates: dict[str, Any], expect: dict[str, Any] | None = None
    ) -> Run: ...

    # Hypotheses
    @abstractmethod
    def get_next_hypothesis_number(self, project_id: str) -> int: ...

    @abstractmethod
    def create_hypotheses(self, hypotheses: list[Hypothesis]) -> list[Hypothesis]: ...

    @abstractmethod
    def has_loop_hypotheses(self, run_id: str, loop: int) -> bool: ...

    @abstractmethod
    def get_hypothesis(self, hypothesis_id: str) -> Hypothesis | None: ...

    @abstractmethod
    def list_hypotheses(
        self,
        project_id: str,
        run_id: str | None = None,
        target_spec_ids: list[str] | None = None,
        technical_assets_ids: list[str] | None = None,
    ) -> list[Hypothesis]: ...

    @abstractmethod
    def delete_hypothesis(self, hypothesis_id: str) -> None: ...

    # Prompt versions
    @abstractmethod
    def create_prompt_version(
        self, step_number: int, content: str, activate: bool = False
    ) -> PromptVersion: ...

    @abstractmethod
    def list_prompt_versions(self, step_number: int) -> list[PromptVersion]: ...

    @abstractmethod
    def get_active_prompt(self, step_number: int) -> PromptVersion | None: ...

    @abstractmethod
    def activate_prompt_version(self, version_id: str) -> PromptVersion: ...

    @abstractmethod
    def deactivate_prompts(self, step_number: int) -> None: ...

    # Research items
    @abstractmethod
    def create_research_items(self, items: list[ResearchItem]) -> list[ResearchItem]: ...

    @abstractmethod
    def list_research_items(self, run_id: str, loop: int) -> list[ResearchItem]: ...

    @abstractmethod
    def update_research_item(self, item_id: str, updates: dict[str, Any]) -> ResearchItem: ...


# =============================================================================
# SQLite Implementation
# =============================================================================

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT,
    updated_at TEXT,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS resources (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    target_spec_id TEXT NOT NULL,
    technical_assets_id TEXT NOT NULL,
    job_name TEXT,
    hypothesis_count INTEGER NOT NULL,
    loop_count INTEGER NOT NULL,
    strategy TEXT NOT NULL,
    existing_filter TEXT,
    status TEXT NOT NULL,
    current_step INTEGER NOT NULL,
    current_loop INTEGER NOT NULL,
    step2_output TEXT,
    step3_output TEXT,
    step4_output TEXT,
    step5_output TEXT,
    integrated_list TEXT,
    validation_metadata TEXT,
    progress_info TEXT,
    error_message TEXT,
    resume_count INTEGER DEFAULT 0,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS hypotheses (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    run_id TEXT,
    target_spec_id TEXT,
    technical_assets_id TEXT,
    hypothesis_number INTEGER NOT NULL,
    loop INTEGER,
    title TEXT,
    industry TEXT,
    field TEXT,
    business_summary TEXT,
    customer_problem TEXT,
    scientific_judgment TEXT,
    scientific_score REAL,
    strategic_judgment TEXT,
    strategic_win_level TEXT,
    catchup_score REAL,
    total_score REAL,
    full_data TEXT,
    created_at TEXT,
    deleted_at TEXT,
    UNIQUE (project_id, hypothesis_number)
);

CREATE TABLE IF NOT EXISTS prompt_versions (
    id TEXT PRIMARY KEY,
    step_number INTEGER NOT NULL,
    version INTEGER NOT NULL,
    content TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    UNIQUE (step_number, version)
);

CREATE TABLE IF NOT EXISTS research_items (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    loop INTEGER NOT NULL,
    item_index INTEGER NOT NULL,
    title TEXT,
    brief TEXT,
    status TEXT NOT NULL,
    interaction_id TEXT,
    research_output TEXT,
    step3_output TEXT,
    step4_output TEXT,
    step5_output TEXT,
    error_message TEXT,
    started_at TEXT,
    updated_at TEXT
);
"""

# Columns stored as JSON text
_JSON_COLUMNS = {
    "existing_filter",
    "integrated_list",
    "validation_metadata",
    "progress_info",
    "full_data",
    "brief",
}


def _encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"), ensure_ascii=False)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return value


def _to_row(model: BaseModel) -> dict[str, Any]:
    return {key: _encode(getattr(model, key)) for key in type(model).model_fields}


def _from_row(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    for key in _JSON_COLUMNS & data.keys():
        if data[key] is not None:
            data[key] = json.loads(data[key])
    return data


class SQLiteStorage(Storage):
    """SQLite-backed storage. Use ":memory:" for an ephemeral database."""

    def __init__(self, db_path: str | Path = "asip.db"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _insert(self, table: str, model: BaseModel) -> None:
        row = _to_row(model)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        self._conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values())
        )

    def _fetch_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return _from_row(row) if row else None

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_from_row(row) for row in rows]

    def _update(self, table: str, row_id: str, updates: dict[str, Any]) -> int:
        assignments = ", ".join(f"{key} = ?" for key in updates)
        params = [_encode(value) for value in updates.values()] + [row_id]
        cursor = self._conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Projects and resources
    # -------------------------------------------------------------------------

    def create_project(self, project: Project) -> Project:
        with self._lock, self._conn:
            self._insert("projects", project)
        return project

    def get_project(self, project_id: str, include_deleted: bool = False) -> Project | None:
        sql = "SELECT * FROM projects WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self._fetch_one(sql, (project_id,))
        return Project.model_validate(row) if row else None

    def list_projects(self) -> list[Project]:
        rows = self._fetch_all(
            "SELECT * FROM projects WHERE deleted_at IS NULL ORDER BY created_at DESC"
        )
        return [Project.model_validate(row) for row in rows]

    def soft_delete_project(self, project_id: str) -> None:
        now = datetime.now()
        with self._lock, self._conn:
            if not self._update("projects", project_id, {"deleted_at": now, "updated_at": now}):
                raise ResourceNotFoundError("Project", project_id)

    def create_resource(self, resource: Resource) -> Resource:
        with self._lock, self._conn:
            self._insert("resources", resource)
        return resource

    def get_resource(self, resource_id: str) -> Resource | None:
        row = self._fetch_one("SELECT * FROM resources WHERE id = ?", (resource_id,))
        return Resource.model_validate(row) if row else None

    def list_resources(self, project_id: str) -> list[Resource]:
        rows = self._fetch_all(
            "SELECT * FROM resources WHERE project_id = ? ORDER BY created_at", (project_id,)
        )
        return [Resource.model_validate(row) for row in rows]

    def update_resource(self, resource_id: str, updates: dict[str, Any]) -> Resource:
        updates = {k: v for k, v in updates.items() if k in ("name", "content") and v is not None}
        with self._lock, self._conn:
            if updates and not self._update("resources", resource_id, updates):
                raise ResourceNotFoundError("Resource", resource_id)
        resource = self.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFoundError("Resource", resource_id)
        return resource

    def delete_resource(self, resource_id: str) -> None:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM resources WHERE id = ?", (resource_id,))
            if cursor.rowcount == 0:
                raise ResourceNotFoundError("Resource", resource_id)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def create_run(self, run: Run) -> Run:
        with self._lock, self._conn:
            self._insert("runs", run)
        return run

    def get_run(self, run_id: str) -> Run | None:
        row = self._fetch_one("SELECT * FROM runs WHERE id = ?", (run_id,))
        return Run.model_validate(row) if row else None

    def list_runs(self, project_id: str) -> list[Run]:
        rows = self._fetch_all(
            "SELECT * FROM runs WHERE project_id = ? ORDER BY created_at DESC", (project_id,)
        )
        return [Run.model_validate(row) for row in rows]

    def get_runs_by_status(self, statuses: list[RunStatus]) -> list[Run]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._fetch_all(
            f"SELECT * FROM runs WHERE status IN ({placeholders}) ORDER BY created_at",
            tuple(_encode(status) for status in statuses),
        )
        return [Run.model_validate(row) for row in rows]

    def update_run(
        self, run_id: str, updates: dict[str, Any], expect: dict[str, Any] | None = None
    ) -> Run:
        """Apply updates to a run, optionally only if it still matches expect.

        Raises:
            RunNotFoundError: no such run
            ConcurrentRunUpdateError: the run no longer matches expect
        """
        updates = {**updates, "updated_at": datetime.now()}
        assignments = ", ".join(f"{key} = ?" for key in updates)
        params = [_encode(value) for value in updates.values()] + [run_id]
        where = "id = ?"
        for key, value in (expect or {}).items():
            where += f" AND {key} = ?"
            params.append(_encode(value))

        with self._lock, self._conn:
            cursor = self._conn.execute(f"UPDATE runs SET {assignments} WHERE {where}", params)
            matched = cursor.rowcount

        if not matched:
            if self.get_run(run_id) is None:
                raise RunNotFoundError(run_id)
            raise ConcurrentRunUpdateError(run_id, expect or {})
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # -------------------------------------------------------------------------
    # Hypotheses
    # -------------------------------------------------------------------------

    def get_next_hypothesis_number(self, project_id: str) -> int:
        # Soft-deleted rows count, so deleted numbers are never handed out again
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(hypothesis_number) FROM hypotheses WHERE project_id = ?",
                (project_id,),
            ).fetchone()
        return (row[0] or 0) + 1

    def create_hypotheses(self, hypotheses: list[Hypothesis]) -> list[Hypothesis]:
        with self._lock, self._conn:
            for hypothesis in hypotheses:
                self._insert("hypotheses", hypothesis)
        return hypotheses

    def has_loop_hypotheses(self, run_id: str, loop: int) -> bool:
        # Soft-deleted rows count: the loop was saved even if the user pruned it
        row = self._fetch_one(
            "SELECT 1 AS saved FROM hypotheses WHERE run_id = ? AND loop = ? LIMIT 1",
            (run_id, loop),
        )
        return row is not None

    def get_hypothesis(self, hypothesis_id: str) -> Hypothesis | None:
        row = self._fetch_one(
            "SELECT * FROM hypotheses WHERE id = ? AND deleted_at IS NULL", (hypothesis_id,)
        )
        return Hypothesis.model_validate(row) if row else None

    def list_hypotheses(
        self,
        project_id: str,
        run_id: str | None = None,
        target_spec_ids: list[str] | None = None,
        technical_assets_ids: list[str] | None = None,
    ) -> list[Hypothesis]:
        sql = "SELECT * FROM hypotheses WHERE project_id = ? AND deleted_at IS NULL"
        params: list[Any] = [project_id]
        if run_id:
            sql += " AND run_id = ?"
            params.append(run_id)
        for column, ids in (
            ("target_spec_id", target_spec_ids),
            ("technical_assets_id", technical_assets_ids),
        ):
            if ids:
                sql += f" AND {column} IN ({', '.join('?' for _ in ids)})"
                params.extend(ids)
        sql += " ORDER BY hypothesis_number"
        return [Hypothesis.model_validate(row) for row in self._fetch_all(sql, tuple(params))]

    def delete_hypothesis(self, hypothesis_id: str) -> None:
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE hypotheses SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (datetime.now().isoformat(), hypothesis_id),
            )
            if cursor.rowcount == 0:
                raise HypothesisNotFoundError(hypothesis_id)

    # -------------------------------------------------------------------------
    # Prompt versions
    # -------------------------------------------------------------------------

    def create_prompt_version(
        self, step_number: int, content: str, activate: bool = False
    ) -> PromptVersion:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT MAX(version) FROM prompt_versions WHERE step_number = ?",
                (step_number,),
            ).fetchone()
            version = PromptVersion(
                step_number=step_number,
                version=(row[0] or 0) + 1,
                content=content,
                is_active=activate,
            )
            if activate:
                self._conn.execute(
                    "UPDATE prompt_versions SET is_active = 0 WHERE step_number = ?",
                    (step_number,),
                )
            self._insert("prompt_versions", version)
        return version

    def list_prompt_versions(self, step_number: int) -> list[PromptVersion]:
        rows = self._fetch_all(
            "SELECT * FROM prompt_versions WHERE step_number = ? ORDER BY version DESC",
            (step_number,),
        )
        return [PromptVersion.model_validate(row) for row in rows]

    def get_active_prompt(self, step_number: int) -> PromptVersion | None:
        row = self._fetch_one(
            "SELECT * FROM prompt_versions WHERE step_number = ? AND is_active = 1",
            (step_number,),
        )
        return PromptVersion.model_validate(row) if row else None

    def activate_prompt_version(self, version_id: str) -> PromptVersion:
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT step_number FROM prompt_versions WHERE id = ?", (version_id,)
            ).fetchone()
            if row is None:
                raise ResourceNotFoundError("PromptVersion", version_id)
            self._conn.execute(
                "UPDATE prompt_versions SET is_active = 0 WHERE step_number = ?", (row[0],)
            )
            self._conn.execute(
                "UPDATE prompt_versions SET is_active = 1 WHERE id = ?", (version_id,)
            )
        active = self._fetch_one("SELECT * FROM prompt_versions WHERE id = ?", (version_id,))
        return PromptVersion.model_validate(active)

    def deactivate_prompts(self, step_number: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE prompt_versions SET is_active = 0 WHERE step_number = ?", (step_number,)
            )

    # -------------------------------------------------------------------------
    # Research items
    # -------------------------------------------------------------------------

    def create_research_items(self, items: list[ResearchItem]) -> list[ResearchItem]:
        with self._lock, self._conn:
            for item in items:
                self._insert("research_items", item)
        return items

    def list_research_items(self, run_id: str, loop: int) -> list[ResearchItem]:
        rows = self._fetch_all(
            "SELECT * FROM research_items WHERE run_id = ? AND loop = ? ORDER BY item_index",
            (run_id, loop),
        )
        return [ResearchItem.model_validate(row) for row in rows]

    def update_research_item(self, item_id: str, updates: dict[str, Any]) -> ResearchItem:
        updates = {**updates, "updated_at": datetime.now()}
        with self._lock, self._conn:
            if not self._update("research_items", item_id, updates):
                raise ResourceNotFoundError("ResearchItem", item_id)
        row = self._fetch_one("SELECT * FROM research_items WHERE id = ?", (item_id,))
        return ResearchItem.model_validate(row)
