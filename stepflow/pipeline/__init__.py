"""Declarative pipelines: parsing, input resolution, orchestration and cleanup."""

from .cleanup import CleanupStepSpec, execute_cleanup_specs
from .models import StepDefinition, WorkflowBlock, WorkflowDefinition
from .parser import parse_workflow
from .reconciliation import (
    CleanupReconciliationWorkflow,
    CleanupVerificationWorkflow,
    start_cleanup_reconciliation,
)
from .workflow import PipelineWorkflow, start_pipeline

__all__ = [
    "CleanupReconciliationWorkflow",
    "CleanupStepSpec",
    "CleanupVerificationWorkflow",
    "PipelineWorkflow",
    "StepDefinition",
    "WorkflowBlock",
    "WorkflowDefinition",
    "execute_cleanup_specs",
    "parse_workflow",
    "start_cleanup_reconciliation",
    "start_pipeline",
]
