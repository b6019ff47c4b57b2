"""Workflow execution core.

A finite-state-machine engine for long-running business processes:
- declared states and guarded transitions with an auditable history
- human tasks and multi-level approval chains
- timeout escalation and best-effort notifications
- conversion to and from a node/edge flow graph
"""

__version__ = "0.1.0"

from workflow_core.config import WorkflowSettings
from workflow_core.workflow.api import WorkflowAPI
from workflow_core.workflow.engine import WorkflowEngine

__all__ = ["__version__", "WorkflowAPI", "WorkflowEngine", "WorkflowSettings"]
