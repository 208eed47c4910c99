"""Declarative pipeline definitions."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RetryPolicyConfig(BaseModel):
    maximum_attempts: int = 0
    initial_interval: str = ""
    maximum_interval: str = ""
    backoff_coefficient: float = 0.0


class ActivityOptionsConfig(BaseModel):
    """Activity option overrides as written in YAML (Go-style durations)."""

    schedule_to_close_timeout: str = ""
    start_to_close_timeout: str = ""
    retry_policy: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)


class RuntimeConfig(BaseModel):
    namespace: str = ""
    task_queue: str = ""
    execution_timeout: str = ""
    activity_options: ActivityOptionsConfig = Field(default_factory=ActivityOptionsConfig)
    debug: bool = False


class TypedValue(BaseModel):
    """A payload entry, optionally tagged with the type it is cast to."""

    type: str = ""
    value: Any = None


def _as_typed_value(raw: Any) -> Any:
    if isinstance(raw, TypedValue):
        return raw
    if isinstance(raw, dict) and "value" in raw and set(raw) <= {"type", "value"}:
        return raw
    return {"value": raw}


class StepInputs(BaseModel):
    """The ``with`` block of a step.

    ``config`` is kept apart; everything else (an explicit ``payload`` map
    and/or flat keys) ends up in ``payload``.
    """

    config: Dict[str, Any] = Field(default_factory=dict)
    payload: Dict[str, TypedValue] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _split_config_and_payload(cls, data: Any) -> Any:
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"invalid step inputs: expected map, got {type(data).__name__}")
        data = dict(data)
        config = data.pop("config", None) or {}
        if not isinstance(config, dict):
            raise ValueError(
                f"invalid config section: expected map, got {type(config).__name__}"
            )
        payload = data.pop("payload", None) or {}
        if not isinstance(payload, dict):
            raise ValueError(
                f"invalid payload section: expected map, got {type(payload).__name__}"
            )
        payload = {**payload, **data}
        return {
            "config": config,
            "payload": {k: _as_typed_value(v) for k, v in payload.items()},
        }

    def values(self) -> Dict[str, Any]:
        """Plain payload values, without type tags."""
        return {k: v.value for k, v in self.payload.items()}

    def set_payload_value(self, key: str, value: Any) -> None:
        current = self.payload.get(key)
        self.payload[key] = TypedValue(type=current.type if current else "", value=value)


class StepSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    use: str
    with_: StepInputs = Field(default_factory=StepInputs, alias="with")
    activity_options: Optional[ActivityOptionsConfig] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StepDefinition(StepSpec):
    """A top-level pipeline step.

    ``on_error`` steps run after the step fails and their failures are added
    to the run errors. ``on_success`` steps run after it succeeds; their
    failures are only logged and never fail the run.
    """

    continue_on_error: bool = False
    on_error: List[StepSpec] = Field(default_factory=list)
    on_success: List[StepSpec] = Field(default_factory=list)


class InputDeclaration(BaseModel):
    type: str = "string"
    description: str = ""


class WorkflowBlock(BaseModel):
    """A reusable sub-pipeline (custom check) with declared inputs and outputs."""

    description: str = ""
    inputs: Dict[str, InputDeclaration] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepDefinition] = Field(default_factory=list)

    def to_workflow_definition(self, name: str) -> "WorkflowDefinition":
        return WorkflowDefinition(
            name=name,
            config=dict(self.config),
            steps=[s.model_copy(deep=True) for s in self.steps],
        )


class WorkflowDefinition(BaseModel):
    version: str = ""
    name: str
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    config: Dict[str, Any] = Field(default_factory=dict)
    global_runner_id: str = ""
    custom_checks: Dict[str, WorkflowBlock] = Field(default_factory=dict)
    steps: List[StepDefinition] = Field(default_factory=list)
