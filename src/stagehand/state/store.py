from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stagehand.errors import (
    ConcurrentStateUpdateError,
    StageAlreadyRunningError,
    StateStoreError,
)
from stagehand.models import ACTIVE_STATUSES, StageExecution, StageTemplate, Task

LOCK_TIMEOUT_SECONDS = 3.0
UPDATE_ATTEMPTS = 4


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _as_envelope(raw: Any, schema_version: int) -> dict[str, Any]:
    # Files written before the envelope existed hold the bare record list.
    if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
        return {
            "schema_version": int(raw["schema_version"] or schema_version),
            "revision": int(raw["revision"] or 1),
            "updated_at": raw.get("updated_at") or _now(),
            "data": raw["data"],
        }
    return {
        "schema_version": schema_version,
        "revision": 1,
        "updated_at": _now(),
        "data": [] if raw is None else raw,
    }


class JsonStateStore:
    """File-backed store for templates, tasks and stage executions.

    Each namespace lives in ``<directory>/<namespace>.json`` wrapped in an
    envelope carrying a schema version and a monotonically increasing revision.
    Writes take a lock file and check the revision they read, so two writers
    never silently overwrite each other.
    """

    NAMESPACES = ("templates", "tasks", "executions")
    SCHEMA_VERSION = 1

    def __init__(self, directory: Path) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.directory / ".lock"

    def _path(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")
        return self.directory / f"{namespace}.json"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        deadline = time.monotonic() + LOCK_TIMEOUT_SECONDS
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as exc:
                if time.monotonic() > deadline:
                    raise StateStoreError(
                        f"Timed out waiting for state lock: {self.lock_file}"
                    ) from exc
                time.sleep(0.02)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            break
        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def get_envelope(self, namespace: str) -> dict[str, Any]:
        path = self._path(namespace)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            raw = None
        return _as_envelope(raw, self.SCHEMA_VERSION)

    def get_json(self, namespace: str) -> Any:
        return self.get_envelope(namespace)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        path = self._path(namespace)
        with self._locked():
            revision = self.get_envelope(namespace)["revision"]
            if expected_revision is not None and expected_revision != revision:
                raise ConcurrentStateUpdateError(
                    namespace, expected=expected_revision, found=revision
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision + 1,
                "updated_at": _now(),
                "data": data,
            }
            staging = path.with_suffix(".json.tmp")
            staging.write_text(
                json.dumps(envelope, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
            )
            os.replace(staging, path)

    def update_json(self, namespace: str, updater: Callable[[Any], Any]) -> Any:
        """Read-modify-write with optimistic retries on concurrent writers."""
        conflict: ConcurrentStateUpdateError | None = None
        for _ in range(UPDATE_ATTEMPTS):
            envelope = self.get_envelope(namespace)
            updated = updater(envelope["data"])
            try:
                self.set_json(namespace, updated, expected_revision=envelope["revision"])
            except ConcurrentStateUpdateError as exc:
                conflict = exc
                time.sleep(0.01)
                continue
            return updated
        if conflict is not None:
            raise conflict
        raise StateStoreError(f"State update for '{namespace}' did not run.")

    def _records(self, namespace: str) -> list[dict[str, Any]]:
        payload = self.get_json(namespace)
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def _upsert(self, namespace: str, record: dict[str, Any]) -> None:
        def _updater(payload: Any) -> list[dict[str, Any]]:
            records = payload if isinstance(payload, list) else []
            for index, item in enumerate(records):
                if isinstance(item, dict) and item.get("id") == record["id"]:
                    records[index] = record
                    return records
            records.append(record)
            return records

        self.update_json(namespace, _updater)

    # Templates

    def list_templates(self) -> list[StageTemplate]:
        templates = [StageTemplate.from_dict(item) for item in self._records("templates")]
        return sorted(templates, key=lambda template: template.sort_order)

    def save_templates(self, templates: list[StageTemplate]) -> None:
        self.set_json("templates", [template.to_dict() for template in templates])

    def get_template(self, template_id: str) -> StageTemplate:
        for template in self.list_templates():
            if template.id == template_id:
                return template
        raise StateStoreError(f"Stage template not found: {template_id}")

    # Tasks

    def list_tasks(self) -> list[Task]:
        return [Task.from_dict(item) for item in self._records("tasks")]

    def get_task(self, task_id: str) -> Task:
        for item in self._records("tasks"):
            if item.get("id") == task_id:
                return Task.from_dict(item)
        raise StateStoreError(f"Task not found: {task_id}")

    def save_task(self, task: Task) -> None:
        task.updated_at = _now()
        self._upsert("tasks", asdict(task))

    def update_task(self, task_id: str, **changes: Any) -> Task:
        task = self.get_task(task_id)
        for key, value in changes.items():
            setattr(task, key, value)
        self.save_task(task)
        return task

    # Stage executions

    def list_executions(self, task_id: str | None = None) -> list[StageExecution]:
        executions = [StageExecution.from_dict(item) for item in self._records("executions")]
        if task_id is not None:
            executions = [execution for execution in executions if execution.task_id == task_id]
        return sorted(
            executions,
            key=lambda execution: (execution.started_at, execution.attempt_number),
        )

    def get_execution(self, execution_id: str) -> StageExecution:
        for item in self._records("executions"):
            if item.get("id") == execution_id:
                return StageExecution.from_dict(item)
        raise StateStoreError(f"Stage execution not found: {execution_id}")

    def create_execution(self, execution: StageExecution) -> None:
        """Append a new attempt.

        An attempt created as active is refused with ``StageAlreadyRunningError``
        when the stored records already hold an active attempt for the same
        (task, stage) pair. The check runs on every retry of the write.
        """

        def _updater(payload: Any) -> list[dict[str, Any]]:
            records = payload if isinstance(payload, list) else []
            for item in records:
                if not isinstance(item, dict):
                    continue
                if item.get("id") == execution.id:
                    raise StateStoreError(f"Stage execution already exists: {execution.id}")
                if (
                    execution.is_active
                    and item.get("task_id") == execution.task_id
                    and item.get("stage_template_id") == execution.stage_template_id
                    and item.get("status") in ACTIVE_STATUSES
                ):
                    raise StageAlreadyRunningError(
                        f"Stage '{execution.stage_template_id}' already has an active attempt "
                        f"({item.get('id')}).",
                        task_id=execution.task_id,
                        stage_template_id=execution.stage_template_id,
                    )
            records.append(execution.to_dict())
            return records

        self.update_json("executions", _updater)

    def update_execution(self, execution_id: str, **changes: Any) -> StageExecution:
        updated: dict[str, Any] = {}

        def _updater(payload: Any) -> list[dict[str, Any]]:
            records = payload if isinstance(payload, list) else []
            for item in records:
                if isinstance(item, dict) and item.get("id") == execution_id:
                    item.update(changes)
                    updated.clear()
                    updated.update(item)
                    return records
            raise StateStoreError(f"Stage execution not found: {execution_id}")

        self.update_json("executions", _updater)
        return StageExecution.from_dict(updated)
