"""Tests for declarative workflow definitions (dict / YAML → Graph)."""

from __future__ import annotations

import pytest

from conductor.core.errors import ErrorCategory, ExecutorError, GraphError, TransientError
from conductor.core.settings import EngineSettings
from conductor.orchestration.definition import (
    KeyEquals,
    WorkflowSpec,
    load_graph,
    resolve_callable_ref,
)
from conductor.orchestration.exceptions import (
    CycleDetectedError,
    DuplicateNodeError,
    InvalidDefinitionError,
    UnknownNodeError,
)
from conductor.orchestration.models import EdgeType
from conductor.orchestration.scheduler import Strategy

RESEARCH_YAML = """
name: research.brief
description: Fetch, summarise, maybe escalate
policy:
  strategy: event_driven
  max_concurrency: 2
templates:
  summariser:
    executor_ref: llm.summarise
    outputs: [summary, severity]
    failure_policy:
      max_attempts: 3
      backoff_base: 0.5
      timeout_seconds: 30
      retry_on: [EXECUTOR, TIMEOUT]
nodes:
  - id: fetch
    executor_ref: tools.fetch
    outputs: [document]
  - id: summarise
    template: summariser
    inputs: [document, {key: style, default: brief}]
  - id: escalate
    executor_ref: agents.escalate
    inputs: [{key: summary}, {key: notes, required: false}]
edges:
  - {from: fetch, to: summarise, type: data_flow}
  - from: summarise
    to: escalate
    type: trigger
    condition: {when: {severity: high}}
"""


class TestYamlLoading:
    def test_research_workflow(self):
        spec = WorkflowSpec.from_yaml(RESEARCH_YAML)
        graph = spec.to_graph()

        assert spec.name == "research.brief"
        assert graph.node_ids() == ["fetch", "summarise", "escalate"]
        assert graph.topological_order() == ["escalate", "fetch", "summarise"]

        summarise = graph.node("summarise")
        assert summarise.executor_ref == "llm.summarise"
        assert summarise.outputs == ("summary", "severity")
        assert [i.key for i in summarise.inputs] == ["document", "style"]
        assert summarise.inputs[1].default == "brief"
        assert summarise.failure_policy.max_attempts == 3
        assert summarise.failure_policy.timeout == 30

    def test_input_long_form(self):
        graph = WorkflowSpec.from_yaml(RESEARCH_YAML).to_graph()
        summary, notes = graph.node("escalate").inputs
        assert summary.required and not summary.has_default
        assert not notes.required

    def test_trigger_condition_from_when(self):
        graph = WorkflowSpec.from_yaml(RESEARCH_YAML).to_graph()
        (trigger,) = graph.incoming_triggers("escalate")
        assert trigger.type is EdgeType.TRIGGER
        assert isinstance(trigger.condition, KeyEquals)
        assert trigger.condition({"severity": "high", "summary": "s"})
        assert not trigger.condition({"severity": "low"})
        assert not trigger.condition({})

    def test_retry_on_categories(self):
        policy = WorkflowSpec.from_yaml(RESEARCH_YAML).to_graph().node("summarise").failure_policy
        assert policy.retryable(ExecutorError("fatal by default"))
        assert policy.retryable(TimeoutError())
        assert not policy.retryable(ValueError())

    def test_run_policy_section(self):
        spec = WorkflowSpec.from_yaml(RESEARCH_YAML)
        policy = spec.to_execution_policy(EngineSettings(cancel_grace_seconds=1.0))
        assert policy.strategy is Strategy.EVENT_DRIVEN
        assert policy.max_concurrency == 2
        assert policy.cancel_grace_seconds == 1.0

    def test_empty_document(self):
        spec = WorkflowSpec.from_yaml("")
        assert spec.nodes == []
        assert len(spec.to_graph()) == 0

    def test_invalid_yaml(self):
        with pytest.raises(InvalidDefinitionError, match="Invalid YAML"):
            WorkflowSpec.from_yaml("nodes: [unclosed")

    def test_load_graph_from_file(self, tmp_path):
        path = tmp_path / "research.yaml"
        path.write_text(RESEARCH_YAML, encoding="utf-8")
        assert len(load_graph(path)) == 3

    def test_json_is_yaml(self, tmp_path):
        path = tmp_path / "tiny.json"
        path.write_text('{"nodes": [{"id": "a"}, {"id": "b"}], "edges": [{"from": "a", "to": "b"}]}')
        graph = load_graph(path)
        assert graph.topological_order() == ["a", "b"]


class TestTemplates:
    def test_node_fields_override_template(self):
        spec = WorkflowSpec.from_dict(
            {
                "templates": {"tool": {"executor_ref": "tools.run", "outputs": ["out"], "description": "tool"}},
                "nodes": [{"id": "t1", "template": "tool", "outputs": ["special"]}],
            }
        )
        node = spec.to_graph().node("t1")
        assert node.executor_ref == "tools.run"
        assert node.outputs == ("special",)
        assert node.description == "tool"

    def test_template_is_not_mutated(self):
        spec = WorkflowSpec.from_dict(
            {
                "templates": {"tool": {"outputs": ["out"]}},
                "nodes": [
                    {"id": "t1", "template": "tool", "outputs": ["special"]},
                    {"id": "t2", "template": "tool"},
                ],
            }
        )
        graph = spec.to_graph()
        assert graph.node("t2").outputs == ("out",)
        assert spec.templates["tool"].outputs == ["out"]

    def test_executor_ref_defaults_to_node_id(self):
        graph = WorkflowSpec.from_dict({"nodes": [{"id": "plain"}]}).to_graph()
        assert graph.node("plain").executor_ref == "plain"

    def test_unknown_template(self):
        with pytest.raises(InvalidDefinitionError, match="unknown template 'ghost'"):
            WorkflowSpec.from_dict({"nodes": [{"id": "a", "template": "ghost"}]})


class TestConditionRefs:
    def test_condition_ref_resolves(self):
        graph = load_graph(
            {
                "nodes": [{"id": "a"}, {"id": "b"}],
                "edges": [{"from": "a", "to": "b", "type": "trigger", "condition": {"condition_ref": "operator:truth"}}],
            }
        )
        (edge,) = graph.incoming_triggers("b")
        assert edge.condition({"k": 1})
        assert not edge.condition({})

    def test_unresolvable_ref(self):
        with pytest.raises(InvalidDefinitionError) as exc_info:
            resolve_callable_ref("conductor.nowhere:predicate")
        assert exc_info.value.field == "condition_ref"

    def test_malformed_ref(self):
        with pytest.raises(InvalidDefinitionError, match="module:qualname"):
            resolve_callable_ref("no_colon_here")

    def test_non_callable_ref(self):
        with pytest.raises(InvalidDefinitionError, match="non-callable"):
            resolve_callable_ref("math:pi")

    def test_condition_needs_exactly_one_form(self):
        for condition in ({}, {"when": {"a": 1}, "condition_ref": "operator:truth"}):
            with pytest.raises(InvalidDefinitionError):
                WorkflowSpec.from_dict(
                    {
                        "nodes": [{"id": "a"}, {"id": "b"}],
                        "edges": [{"from": "a", "to": "b", "type": "trigger", "condition": condition}],
                    }
                )

    def test_condition_only_on_trigger_edges(self):
        with pytest.raises(InvalidDefinitionError, match="only trigger edges"):
            WorkflowSpec.from_dict(
                {
                    "nodes": [{"id": "a"}, {"id": "b"}],
                    "edges": [{"from": "a", "to": "b", "condition": {"when": {"x": 1}}}],
                }
            )


class TestValidationErrors:
    def test_extra_fields_rejected(self):
        with pytest.raises(InvalidDefinitionError):
            WorkflowSpec.from_dict({"nodes": [{"id": "a", "retries": 3}]})

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidDefinitionError, match="must be a mapping"):
            WorkflowSpec.from_dict(["a", "b"])  # type: ignore[arg-type]
        with pytest.raises(InvalidDefinitionError):
            WorkflowSpec.from_yaml("- just\n- a list\n")

    def test_invalid_policy_values(self):
        with pytest.raises(InvalidDefinitionError):
            WorkflowSpec.from_dict({"nodes": [{"id": "a", "failure_policy": {"max_attempts": 0}}]})
        with pytest.raises(InvalidDefinitionError):
            WorkflowSpec.from_dict({"policy": {"max_concurrency": 0}})

    def test_unknown_error_category(self):
        with pytest.raises(InvalidDefinitionError):
            WorkflowSpec.from_dict({"nodes": [{"id": "a", "failure_policy": {"retry_on": ["NOPE"]}}]})

    def test_structural_errors_from_graph(self):
        with pytest.raises(DuplicateNodeError):
            load_graph({"nodes": [{"id": "a"}, {"id": "a"}]})
        with pytest.raises(UnknownNodeError):
            load_graph({"nodes": [{"id": "a"}], "edges": [{"from": "a", "to": "z"}]})
        with pytest.raises(CycleDetectedError):
            load_graph(
                {
                    "nodes": [{"id": "a"}, {"id": "b"}],
                    "edges": [{"from": "a", "to": "b"}, {"from": "b", "to": "a", "type": "data_flow"}],
                }
            )

    def test_all_definition_errors_are_graph_errors(self):
        with pytest.raises(GraphError) as exc_info:
            WorkflowSpec.from_dict({"nodes": "nope"})
        assert exc_info.value.category is ErrorCategory.GRAPH


class TestFailurePolicySpec:
    def test_default_classifier_uses_error_flag(self):
        graph = load_graph({"nodes": [{"id": "a", "failure_policy": {"max_attempts": 2}}]})
        policy = graph.node("a").failure_policy
        assert policy.retryable(TransientError("x"))
        assert not policy.retryable(ExecutorError("x"))
