"""
Workflow definitions and resolution.
"""

from renderqueue.workflow.registry import (
    WORKFLOWS,
    Workflow,
    WorkflowRegistry,
    WorkflowStep,
)

__all__ = ["WORKFLOWS", "Workflow", "WorkflowRegistry", "WorkflowStep"]
