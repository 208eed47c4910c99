from __future__ import annotations

import logging

import pydantic
import yaml

from ..errors import PipelineParsingError
from .models import StepDefinition, WorkflowDefinition

logger = logging.getLogger(__name__)


def parse_workflow(source: str) -> WorkflowDefinition:
    """Parse pipeline YAML into a ``WorkflowDefinition``.

    Raises:
        PipelineParsingError: on invalid YAML, a definition that does not
            match the schema, or duplicate step ids.
    """
    try:
        raw = yaml.safe_load(source)
    except yaml.YAMLError as exc:
        raise PipelineParsingError(f"failed to parse workflow yaml: {exc}") from exc
    if not isinstance(raw, dict):
        raise PipelineParsingError("failed to parse workflow yaml: expected a mapping")

    try:
        definition = WorkflowDefinition.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise PipelineParsingError(f"invalid workflow definition: {exc}") from exc

    _check_unique_ids(definition.steps, definition.name)
    for name, block in definition.custom_checks.items():
        _check_unique_ids(block.steps, name)
    logger.debug(f"Parsed pipeline {definition.name} with {len(definition.steps)} steps")
    return definition


def _check_unique_ids(steps: list[StepDefinition], owner: str) -> None:
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise PipelineParsingError(f"duplicate step id {step.id} in {owner}")
        seen.add(step.id)
