"""Storage contract and the two bundled backends.

The orchestrator only relies on :meth:`WorkflowStorage.update_instance` as its
single commit point. Backends hand out copies; mutating a returned model never
changes stored state.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .errors import InstanceNotFound, TaskNotFound
from .models import (
    InstanceQuery,
    TaskQuery,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTask,
    apply_instance_query,
    apply_task_query,
    utc_now,
)

logger = logging.getLogger(__name__)


class WorkflowStorage(ABC):
    """Persistence boundary for definitions, instances and tasks."""

    @abstractmethod
    def save_definition(self, definition: WorkflowDefinition) -> None: ...

    @abstractmethod
    def get_definition(
        self, name: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        """Return the requested version, or the latest registered one."""

    @abstractmethod
    def list_definitions(self) -> list[WorkflowDefinition]:
        """Return the latest version of every definition."""

    @abstractmethod
    def save_instance(self, instance: WorkflowInstance) -> None: ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> WorkflowInstance | None: ...

    @abstractmethod
    def update_instance(self, instance_id: str, patch: dict[str, Any]) -> WorkflowInstance:
        """Apply ``patch`` and return the stored result.

        Raises:
            InstanceNotFound: if ``instance_id`` does not exist.
        """

    @abstractmethod
    def query_instances(self, query: InstanceQuery) -> list[WorkflowInstance]: ...

    @abstractmethod
    def save_task(self, task: WorkflowTask) -> None: ...

    @abstractmethod
    def get_task(self, task_id: str) -> WorkflowTask | None: ...

    @abstractmethod
    def update_task(self, task_id: str, patch: dict[str, Any]) -> WorkflowTask:
        """Apply ``patch`` and return the stored result.

        Raises:
            TaskNotFound: if ``task_id`` does not exist.
        """

    @abstractmethod
    def query_tasks(self, query: TaskQuery) -> list[WorkflowTask]: ...


class InMemoryWorkflowStorage(WorkflowStorage):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # name -> version -> definition, in registration order
        self._definitions: dict[str, dict[str, WorkflowDefinition]] = {}
        self._instances: dict[str, WorkflowInstance] = {}
        self._tasks: dict[str, WorkflowTask] = {}

    def save_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            versions = self._definitions.setdefault(definition.name, {})
            versions[definition.version_key] = definition

    def get_definition(
        self, name: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        with self._lock:
            return _pick_version(self._definitions.get(name), version)

    def list_definitions(self) -> list[WorkflowDefinition]:
        with self._lock:
            return [list(v.values())[-1] for v in self._definitions.values() if v]

    def save_instance(self, instance: WorkflowInstance) -> None:
        with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance is not None else None

    def update_instance(self, instance_id: str, patch: dict[str, Any]) -> WorkflowInstance:
        with self._lock:
            current = self._instances.get(instance_id)
            if current is None:
                raise InstanceNotFound(instance_id=instance_id)
            merged = current.model_copy(update=patch, deep=True)
            self._instances[instance_id] = merged
            return merged.model_copy(deep=True)

    def query_instances(self, query: InstanceQuery) -> list[WorkflowInstance]:
        with self._lock:
            found = apply_instance_query(list(self._instances.values()), query)
            return [i.model_copy(deep=True) for i in found]

    def save_task(self, task: WorkflowTask) -> None:
        with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    def get_task(self, task_id: str) -> WorkflowTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task is not None else None

    def update_task(self, task_id: str, patch: dict[str, Any]) -> WorkflowTask:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise TaskNotFound(task_id=task_id)
            merged = current.model_copy(update=patch, deep=True)
            self._tasks[task_id] = merged
            return merged.model_copy(deep=True)

    def query_tasks(self, query: TaskQuery) -> list[WorkflowTask]:
        with self._lock:
            found = apply_task_query(list(self._tasks.values()), query)
            return [t.model_copy(deep=True) for t in found]

    def clear(self) -> None:
        with self._lock:
            self._definitions.clear()
            self._instances.clear()
            self._tasks.clear()


def _pick_version(
    versions: dict[str, WorkflowDefinition] | None, version: str | None
) -> WorkflowDefinition | None:
    if not versions:
        return None
    if version is not None:
        return versions.get(str(version))
    return list(versions.values())[-1]


class _StorageDocument(BaseModel):
    definitions: list[WorkflowDefinition] = Field(default_factory=list)
    instances: list[WorkflowInstance] = Field(default_factory=list)
    tasks: list[WorkflowTask] = Field(default_factory=list)


@dataclass
class JsonFileWorkflowStorage(WorkflowStorage):
    """Single JSON document on disk.

    Every operation reads and rewrites the whole file under one lock, which is
    fine for local use and tests but not for volume. A file that is not valid
    JSON is renamed to ``<name>.corrupt-<timestamp>`` before anything is written.
    """

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> _StorageDocument:
        if not self.path.exists():
            return _StorageDocument()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
            backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
            self.path.replace(backup)
            logger.warning(
                "Workflow state file is not valid JSON; moved aside and starting empty",
                extra={"path": str(self.path), "backup": str(backup)},
            )
            return _StorageDocument()
        return _StorageDocument.model_validate(raw or {})

    def _save_unlocked(self, doc: _StorageDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(doc.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )

    def save_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            doc = self._load_unlocked()
            doc.definitions = [
                d
                for d in doc.definitions
                if (d.name, d.version_key) != (definition.name, definition.version_key)
            ]
            doc.definitions.append(definition)
            self._save_unlocked(doc)

    def get_definition(
        self, name: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        with self._lock:
            versions = {d.version_key: d for d in self._load_unlocked().definitions if d.name == name}
            return _pick_version(versions, version)

    def list_definitions(self) -> list[WorkflowDefinition]:
        with self._lock:
            latest: dict[str, WorkflowDefinition] = {}
            for d in self._load_unlocked().definitions:
                latest[d.name] = d
            return list(latest.values())

    def save_instance(self, instance: WorkflowInstance) -> None:
        with self._lock:
            doc = self._load_unlocked()
            doc.instances = [i for i in doc.instances if i.id != instance.id]
            doc.instances.append(instance)
            self._save_unlocked(doc)

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            for instance in self._load_unlocked().instances:
                if instance.id == instance_id:
                    return instance
            return None

    def update_instance(self, instance_id: str, patch: dict[str, Any]) -> WorkflowInstance:
        with self._lock:
            doc = self._load_unlocked()
            for idx, instance in enumerate(doc.instances):
                if instance.id != instance_id:
                    continue
                merged = instance.model_copy(update=patch, deep=True)
                doc.instances[idx] = merged
                self._save_unlocked(doc)
                return merged
            raise InstanceNotFound(instance_id=instance_id)

    def query_instances(self, query: InstanceQuery) -> list[WorkflowInstance]:
        with self._lock:
            return apply_instance_query(self._load_unlocked().instances, query)

    def save_task(self, task: WorkflowTask) -> None:
        with self._lock:
            doc = self._load_unlocked()
            doc.tasks = [t for t in doc.tasks if t.id != task.id]
            doc.tasks.append(task)
            self._save_unlocked(doc)

    def get_task(self, task_id: str) -> WorkflowTask | None:
        with self._lock:
            for task in self._load_unlocked().tasks:
                if task.id == task_id:
                    return task
            return None

    def update_task(self, task_id: str, patch: dict[str, Any]) -> WorkflowTask:
        with self._lock:
            doc = self._load_unlocked()
            for idx, task in enumerate(doc.tasks):
                if task.id != task_id:
                    continue
                merged = task.model_copy(update=patch, deep=True)
                doc.tasks[idx] = merged
                self._save_unlocked(doc)
                return merged
            raise TaskNotFound(task_id=task_id)

    def query_tasks(self, query: TaskQuery) -> list[WorkflowTask]:
        with self._lock:
            return apply_task_query(self._load_unlocked().tasks, query)
