"""Settings for the workflow execution core.

Configuration is loaded from environment variables (prefix ``WORKFLOW_``) and a
local `.env` file (if present). Tests can bypass the env file with
``WorkflowSettings(_env_file=None)``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_core.workflow.storage import (
    InMemoryWorkflowStorage,
    JsonFileWorkflowStorage,
    WorkflowStorage,
)

logger = logging.getLogger(__name__)


class WorkflowSettings(BaseSettings):
    log_level: str = Field(default="INFO", description="Root logging level")
    json_logs: bool = Field(
        default=True,
        description="Emit one JSON object per log line instead of plain text",
    )

    storage_backend: Literal["memory", "json"] = Field(
        default="memory",
        description="Where instances, tasks and definitions are persisted",
    )
    storage_path: Path = Field(
        default=Path("workflow_state/workflows.json"),
        description="JSON document used by the `json` storage backend",
    )

    system_principal: str = Field(
        default="system",
        description="Principal recorded as `triggered_by` for escalation transitions",
    )
    approve_transition: str = Field(
        default="approve",
        description="Transition fired when a task decision has `approved: true`",
    )
    reject_transition: str = Field(
        default="reject",
        description="Transition fired when a task decision has `approved: false`",
    )
    escalation_enabled: bool = Field(
        default=True,
        description="Schedule timers for transitions declaring `timeout_ms`",
    )

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )


def build_storage(settings: WorkflowSettings) -> WorkflowStorage:
    """Create the storage backend selected by ``settings``.

    Raises:
        ValueError: If the backend is not supported.
    """

    logger.info("Creating workflow storage", extra={"backend": settings.storage_backend})
    if settings.storage_backend == "memory":
        return InMemoryWorkflowStorage()
    elif settings.storage_backend == "json":
        return JsonFileWorkflowStorage(settings.storage_path)
    else:
        raise ValueError(f"Unsupported storage backend: {settings.storage_backend}")
