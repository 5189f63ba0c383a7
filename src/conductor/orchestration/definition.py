"""Pydantic models for declarative workflow definitions.

A workflow definition is JSON-shaped data (a dict, or YAML/JSON text) that
describes nodes, edges, reusable node templates, and an optional run
policy.  The models validate the shape; ``to_graph()`` then builds the
immutable :class:`~conductor.orchestration.graph.Graph`, which applies the
structural checks (duplicate ids, dangling edges, cycles).

Usage::

    from conductor.orchestration.definition import WorkflowSpec

    spec = WorkflowSpec.from_dict(data)
    graph = spec.to_graph()

    # Or from a YAML string / file
    spec = WorkflowSpec.from_yaml(yaml_content)
    spec = WorkflowSpec.from_yaml_file("workflows/research.yaml")

Example YAML::

    name: research.brief
    policy:
      strategy: dag
      max_concurrency: 2
    templates:
      summariser:
        executor_ref: llm.summarise
        outputs: [summary]
        failure_policy: {max_attempts: 3, backoff_base: 0.5, retry_on: [EXECUTOR, TIMEOUT]}
    nodes:
      - id: fetch
        executor_ref: tools.fetch
        outputs: [document]
      - id: summarise
        template: summariser
        inputs: [document, {key: style, default: brief}]
      - id: escalate
        executor_ref: agents.escalate
    edges:
      - {from: fetch, to: summarise, type: data_flow}
      - from: summarise
        to: escalate
        type: trigger
        condition: {when: {severity: high}}
"""

from __future__ import annotations

import importlib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from conductor.core.errors import ErrorCategory, is_retryable
from conductor.orchestration.exceptions import InvalidDefinitionError
from conductor.orchestration.failure_policy import FailurePolicy, retry_on_categories
from conductor.orchestration.graph import Graph
from conductor.orchestration.models import MISSING, Edge, EdgeType, InputSpec, TriggerCondition
from conductor.orchestration.templates import NodeTemplate, merge_fields


def resolve_callable_ref(ref: str) -> Any:
    """Import and return the callable identified by ``'module:qualname'``.

    Raises:
        InvalidDefinitionError: The reference is malformed or does not resolve
    """
    module_path, _, attr_path = ref.partition(":")
    if not module_path or not attr_path:
        raise InvalidDefinitionError(f"Invalid callable ref (expected 'module:qualname'): {ref!r}", field="condition_ref")
    try:
        obj: Any = importlib.import_module(module_path)
        for part in attr_path.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as exc:
        raise InvalidDefinitionError(f"Cannot resolve {ref!r}: {exc}", field="condition_ref") from exc
    if not callable(obj):
        raise InvalidDefinitionError(f"{ref!r} resolved to non-callable: {type(obj)}", field="condition_ref")
    return obj


class KeyEquals:
    """Trigger predicate: every listed context key equals its expected value."""

    def __init__(self, expected: Mapping[str, Any]) -> None:
        self.expected = dict(expected)

    def __call__(self, snapshot: Mapping[str, Any]) -> bool:
        return all(key in snapshot and snapshot[key] == value for key, value in self.expected.items())

    def __repr__(self) -> str:
        return f"KeyEquals({self.expected!r})"


# =============================================================================
# Models
# =============================================================================


class InputSpecModel(BaseModel):
    """Long form of a node input (a bare string means ``{key: <str>}``)."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., min_length=1)
    required: bool = True
    default: Any = None

    def to_input(self) -> InputSpec:
        default = self.default if "default" in self.model_fields_set else MISSING
        return InputSpec(key=self.key, required=self.required, default=default)


class FailurePolicySpec(BaseModel):
    """Retry / timeout section of a node or template."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=1, ge=1)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff: float | None = Field(default=60.0, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    retry_on: list[ErrorCategory] | None = Field(
        default=None,
        description="Error categories worth retrying (default: the error's own retryable flag)",
    )

    def to_policy(self) -> FailurePolicy:
        classifier = retry_on_categories(self.retry_on) if self.retry_on is not None else is_retryable
        return FailurePolicy(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff=self.max_backoff,
            timeout=self.timeout_seconds,
            retryable=classifier,
        )


class NodeTemplateSpec(BaseModel):
    """Node fields shared by templates and nodes; everything optional."""

    model_config = ConfigDict(extra="forbid")

    executor_ref: str | None = Field(default=None, min_length=1)
    inputs: list[str | InputSpecModel] | None = None
    outputs: list[str] | None = None
    failure_policy: FailurePolicySpec | None = None
    description: str | None = None

    def to_template(self) -> NodeTemplate:
        inputs = None
        if self.inputs is not None:
            inputs = tuple(i if isinstance(i, str) else i.to_input() for i in self.inputs)
        return NodeTemplate(
            executor_ref=self.executor_ref,
            inputs=inputs,
            outputs=tuple(self.outputs) if self.outputs is not None else None,
            failure_policy=self.failure_policy.to_policy() if self.failure_policy else None,
            description=self.description,
        )


class NodeSpecModel(NodeTemplateSpec):
    """One node; ``template`` names an entry of the ``templates`` section."""

    id: str = Field(..., min_length=1)
    template: str | None = None


class TriggerConditionSpec(BaseModel):
    """Trigger predicate: an importable callable or key equality checks."""

    model_config = ConfigDict(extra="forbid")

    condition_ref: str | None = Field(default=None, description="module:qualname of a predicate(snapshot)")
    when: dict[str, Any] | None = Field(default=None, description="Context key → expected value")

    @model_validator(mode="after")
    def exactly_one(self) -> TriggerConditionSpec:
        if (self.condition_ref is None) == (self.when is None):
            raise ValueError("trigger condition needs exactly one of 'condition_ref' or 'when'")
        return self

    def to_condition(self) -> TriggerCondition:
        if self.condition_ref is not None:
            return resolve_callable_ref(self.condition_ref)
        return KeyEquals(self.when or {})


class EdgeSpecModel(BaseModel):
    """One edge, written ``{from: a, to: b, type: ...}``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    source: str = Field(..., alias="from", min_length=1)
    target: str = Field(..., alias="to", min_length=1)
    type: EdgeType = EdgeType.DEPENDENCY
    best_effort: bool = False
    condition: TriggerConditionSpec | None = None

    @model_validator(mode="after")
    def condition_only_on_triggers(self) -> EdgeSpecModel:
        if self.condition is not None and self.type is not EdgeType.TRIGGER:
            raise ValueError(f"edge {self.source} -> {self.target}: only trigger edges may carry a condition")
        return self

    def to_edge(self) -> Edge:
        return Edge(
            source=self.source,
            target=self.target,
            type=self.type,
            best_effort=self.best_effort,
            condition=self.condition.to_condition() if self.condition else None,
        )


class RunPolicySpec(BaseModel):
    """Optional run policy section; unset fields fall back to settings."""

    model_config = ConfigDict(extra="forbid")

    strategy: str | None = None
    max_concurrency: int | None = Field(default=None, ge=1)
    cancel_grace_seconds: float | None = Field(default=None, ge=0)
    run_timeout_seconds: float | None = Field(default=None, gt=0)

    def overrides(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class WorkflowSpec(BaseModel):
    """Complete workflow definition.

    This is the root model for parsing declarative definitions.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str = ""
    policy: RunPolicySpec = Field(default_factory=RunPolicySpec)
    templates: dict[str, NodeTemplateSpec] = Field(default_factory=dict)
    nodes: list[NodeSpecModel] = Field(default_factory=list)
    edges: list[EdgeSpecModel] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_template_refs(self) -> WorkflowSpec:
        """Ensure every ``template:`` names a declared template."""
        for node in self.nodes:
            if node.template is not None and node.template not in self.templates:
                raise ValueError(
                    f"Node '{node.id}' uses unknown template '{node.template}'. "
                    f"Available: {sorted(self.templates)}"
                )
        return self

    def resolved_nodes(self) -> list[NodeTemplateSpec]:
        """Nodes with their template merged in (node fields win)."""
        resolved = []
        for node in self.nodes:
            base = self.templates[node.template].model_dump(exclude_unset=True) if node.template else {}
            own = node.model_dump(exclude_unset=True, exclude={"id", "template"})
            resolved.append(NodeTemplateSpec.model_validate(merge_fields(base, own)))
        return resolved

    def to_graph(self) -> Graph:
        """Build the validated graph.

        Raises:
            GraphError: Duplicate ids, dangling edges, cycles, or bad condition refs
        """
        nodes = [
            spec.to_template().instantiate(node.id)
            for node, spec in zip(self.nodes, self.resolved_nodes())
        ]
        edges = [edge.to_edge() for edge in self.edges]
        return Graph.build(nodes, edges)

    def to_execution_policy(self, settings: Any = None) -> Any:
        """Run policy from the ``policy`` section layered over settings."""
        from conductor.orchestration.scheduler import ExecutionPolicy

        return ExecutionPolicy.from_settings(settings, **self.policy.overrides())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowSpec:
        """Validate a JSON-shaped definition.

        Raises:
            InvalidDefinitionError: The data does not match the schema
        """
        if not isinstance(data, Mapping):
            raise InvalidDefinitionError(f"Workflow definition must be a mapping, got {type(data).__name__}")
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise InvalidDefinitionError(f"Invalid workflow definition: {exc}") from exc

    @classmethod
    def from_yaml(cls, yaml_content: str) -> WorkflowSpec:
        """Parse and validate YAML (or JSON) content.

        Raises
        ------
        InvalidDefinitionError
            If the text is not valid YAML or doesn't match the schema.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise InvalidDefinitionError(f"Invalid YAML: {e}") from e
        return cls.from_dict(data if data is not None else {})

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> WorkflowSpec:
        """Load and validate a YAML or JSON file."""
        content = Path(path).read_text(encoding="utf-8")
        return cls.from_yaml(content)


def load_graph(source: Mapping[str, Any] | str | Path) -> Graph:
    """Build a graph from a definition dict, or a path to a YAML/JSON file."""
    if isinstance(source, Mapping):
        return WorkflowSpec.from_dict(source).to_graph()
    return WorkflowSpec.from_yaml_file(source).to_graph()
