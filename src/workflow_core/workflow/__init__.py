"""Workflow domain: definitions, engine, orchestrator, approvals and flows.

Import concrete modules directly (``workflow_core.workflow.api`` etc.); this
package keeps no re-exports so that settings can import storage without a cycle.
"""

__all__: list[str] = []
