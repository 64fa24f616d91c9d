"""Workflow State Machine and Approval Resolution Handler."""

from agent_desk.workflow.approvals import ApprovalResolutionHandler
from agent_desk.workflow.definitions import (
    AiStep,
    ApprovalStep,
    CustomStep,
    PublishStep,
    StepSpec,
    WorkflowDefinition,
    default_workflows,
    load_workflow_file,
    parse_workflow_definition,
)
from agent_desk.workflow.engine import WorkflowEngine
from agent_desk.workflow.repository import WorkflowRepository
from agent_desk.workflow.steps import StepContext, StepHandlerRegistry

__all__ = [
    "AiStep",
    "ApprovalResolutionHandler",
    "ApprovalStep",
    "CustomStep",
    "PublishStep",
    "StepContext",
    "StepHandlerRegistry",
    "StepSpec",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowRepository",
    "default_workflows",
    "load_workflow_file",
    "parse_workflow_definition",
]
