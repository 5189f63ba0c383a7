"""Tests for the Graph Model — validation, ordering, waves, critical path."""

from __future__ import annotations

import random

import pytest

from conductor.core.errors import GraphError
from conductor.orchestration.exceptions import (
    CycleDetectedError,
    DuplicateNodeError,
    InvalidDefinitionError,
    UnknownNodeError,
)
from conductor.orchestration.graph import (
    Graph,
    build_graph,
    critical_path,
    parallel_batches,
    topological_order,
)
from conductor.orchestration.models import Edge, EdgeType, InputSpec, Node


# ── Helpers ──────────────────────────────────────────────────────────────


def _wide_graph() -> Graph:
    """Two chains of different length joined at the end.

        s1 → a → b ─┐
        s2 ─────────┴→ end
    """
    return Graph.build(
        nodes=[Node("s1"), Node("s2"), Node("a"), Node("b"), Node("end")],
        edges=[
            Edge("s1", "a"),
            Edge("a", "b"),
            Edge("b", "end"),
            Edge("s2", "end"),
        ],
    )


def _random_dag(rng: random.Random, size: int, density: float) -> tuple[list[Node], list[Edge]]:
    """Random acyclic graph: ordering edges only run forward in a hidden rank.

    Nodes are declared in shuffled order and a few trigger edges (which may
    point backwards) are mixed in.
    """
    rank = [f"n{i:03d}" for i in range(size)]
    rng.shuffle(rank)
    edges = []
    for i, source in enumerate(rank):
        for target in rank[i + 1 :]:
            if rng.random() < density:
                edges.append(Edge(source, target, rng.choice([EdgeType.DEPENDENCY, EdgeType.DATA_FLOW])))
    for _ in range(size // 4):
        a, b = rng.sample(rank, 2)
        edges.append(Edge(a, b, EdgeType.TRIGGER))
    declared = list(rank)
    rng.shuffle(declared)
    return [Node(n) for n in declared], edges


# ── Models ────────────────────────────────────────────────────────────────


class TestNodeAndEdge:
    def test_executor_ref_defaults_to_id(self):
        assert Node("fetch").executor_ref == "fetch"
        assert Node("fetch", executor_ref="tools.fetch").executor_ref == "tools.fetch"

    def test_inputs_normalised(self):
        node = Node("n", inputs=["a", InputSpec("b", default=2)], outputs=["x"])
        assert node.input_keys == ("a", "b")
        assert node.outputs == ("x",)
        assert not node.inputs[0].has_default
        assert node.inputs[1].default == 2

    def test_empty_id_rejected(self):
        with pytest.raises(InvalidDefinitionError):
            Node("")

    def test_edge_type_from_string(self):
        edge = Edge("a", "b", "data_flow")
        assert edge.type is EdgeType.DATA_FLOW
        assert edge.implies_ordering

    def test_unknown_edge_type(self):
        with pytest.raises(InvalidDefinitionError, match="Unknown edge type"):
            Edge("a", "b", "sometimes")

    def test_condition_only_on_trigger_edges(self):
        with pytest.raises(InvalidDefinitionError, match="only trigger edges"):
            Edge("a", "b", EdgeType.DEPENDENCY, condition=lambda ctx: True)
        assert Edge("a", "b", EdgeType.TRIGGER, condition=lambda ctx: True).condition is not None

    def test_trigger_does_not_imply_ordering(self):
        assert not Edge("a", "b", EdgeType.TRIGGER).implies_ordering

    def test_to_dict(self):
        assert Edge("a", "b", best_effort=True).to_dict() == {
            "from": "a",
            "to": "b",
            "type": "dependency",
            "best_effort": True,
        }


# ── Validation ───────────────────────────────────────────────────────────


class TestValidation:
    def test_duplicate_node(self):
        with pytest.raises(DuplicateNodeError) as exc_info:
            Graph.build([Node("a"), Node("a")])
        assert exc_info.value.node_id == "a"

    def test_unknown_edge_endpoint(self):
        with pytest.raises(UnknownNodeError) as exc_info:
            Graph.build([Node("a")], [Edge("a", "ghost")])
        assert exc_info.value.missing == ["ghost"]

    def test_cycle_detected(self):
        with pytest.raises(CycleDetectedError) as exc_info:
            Graph.build(
                [Node("a"), Node("b"), Node("c")],
                [Edge("a", "b"), Edge("b", "c"), Edge("c", "a")],
            )
        path = exc_info.value.path
        assert path[0] == path[-1]
        assert set(path) == {"a", "b", "c"}
        assert " -> " in str(exc_info.value)

    def test_self_loop_is_a_cycle(self):
        with pytest.raises(CycleDetectedError):
            Graph.build([Node("a")], [Edge("a", "a", EdgeType.DATA_FLOW)])

    def test_trigger_cycle_allowed(self):
        graph = Graph.build(
            [Node("a"), Node("b")],
            [Edge("a", "b"), Edge("b", "a", EdgeType.TRIGGER)],
        )
        assert graph.topological_order() == ["a", "b"]
        assert graph.has_triggers()

    def test_graph_errors_share_a_base(self):
        for exc_type in (CycleDetectedError, DuplicateNodeError, UnknownNodeError, InvalidDefinitionError):
            assert issubclass(exc_type, GraphError)

    def test_empty_graph(self):
        graph = build_graph([])
        assert len(graph) == 0
        assert graph.topological_order() == []
        assert graph.parallel_batches() == []
        assert graph.critical_path({}) == []


# ── Ordering ─────────────────────────────────────────────────────────────


class TestTopologicalOrder:
    def test_every_edge_respected(self, diamond_graph):
        order = topological_order(diamond_graph)
        position = {node_id: i for i, node_id in enumerate(order)}
        assert sorted(order) == sorted(diamond_graph.node_ids())
        for edge in diamond_graph.edges:
            assert position[edge.source] < position[edge.target]

    def test_deterministic(self, diamond_graph):
        assert diamond_graph.topological_order() == ["A", "B", "C", "D"]
        assert diamond_graph.topological_order() == diamond_graph.topological_order()

    def test_ties_broken_by_id(self):
        graph = Graph.build([Node("zeta"), Node("alpha"), Node("mid")])
        assert graph.topological_order() == ["alpha", "mid", "zeta"]

    def test_duplicate_edges_counted_once(self):
        graph = Graph.build(
            [Node("a"), Node("b")],
            [Edge("a", "b"), Edge("a", "b", EdgeType.DATA_FLOW)],
        )
        assert graph.predecessors("b") == ("a",)
        assert graph.topological_order() == ["a", "b"]


class TestParallelBatches:
    def test_diamond_waves(self, diamond_graph):
        assert parallel_batches(diamond_graph) == [
            frozenset({"A"}),
            frozenset({"B", "C"}),
            frozenset({"D"}),
        ]

    def test_wave_is_longest_chain_depth(self):
        graph = _wide_graph()
        batches = graph.parallel_batches()
        assert batches == [
            frozenset({"s1", "s2"}),
            frozenset({"a"}),
            frozenset({"b"}),
            frozenset({"end"}),
        ]
        for k, wave in enumerate(batches):
            for node_id in wave:
                preds = graph.predecessors(node_id)
                assert all(graph.depth(p) < k for p in preds)
                if preds:
                    assert max(graph.depth(p) for p in preds) == k - 1

    def test_sources_and_sinks(self):
        graph = _wide_graph()
        assert graph.sources() == ["s1", "s2"]
        assert graph.sinks() == ["end"]


class TestCriticalPath:
    def test_heaviest_branch_wins(self, diamond_graph):
        weights = {"A": 1.0, "B": 5.0, "C": 2.0, "D": 1.0}
        assert critical_path(diamond_graph, weights) == ["A", "B", "D"]
        weights["C"] = 9.0
        assert diamond_graph.critical_path(weights) == ["A", "C", "D"]

    def test_tie_prefers_earliest_declared(self, diamond_graph):
        assert diamond_graph.critical_path({"A": 1, "B": 2, "C": 2, "D": 1}) == ["A", "B", "D"]

    def test_callable_weight(self):
        graph = _wide_graph()
        assert graph.critical_path(lambda node_id: 1.0) == ["s1", "a", "b", "end"]

    def test_missing_mapping_keys_weigh_zero(self):
        graph = _wide_graph()
        assert graph.critical_path({"s2": 10.0, "end": 1.0}) == ["s2", "end"]


class TestSerialization:
    def test_to_dict(self, diamond_graph):
        data = diamond_graph.to_dict()
        assert [n["id"] for n in data["nodes"]] == ["A", "B", "C", "D"]
        assert data["edges"][0] == {"from": "A", "to": "B", "type": "data_flow"}


class TestLongChains:
    def test_deep_chain_builds(self):
        ids = [f"n{i:05d}" for i in range(5000)]
        graph = Graph.build([Node(n) for n in ids], [Edge(a, b) for a, b in zip(ids, ids[1:])])
        assert graph.topological_order() == ids
        assert graph.depth(ids[-1]) == 4999
        assert graph.critical_path(lambda node_id: 1.0) == ids

    def test_deep_cycle_reported_with_path(self):
        ids = [f"n{i:05d}" for i in range(5000)]
        edges = [Edge(a, b) for a, b in zip(ids, ids[1:])] + [Edge(ids[-1], ids[0])]
        with pytest.raises(CycleDetectedError) as exc_info:
            Graph.build([Node(n) for n in ids], edges)
        assert exc_info.value.path == ids + [ids[0]]


# ── Generated graphs ─────────────────────────────────────────────────────


SEEDS = range(30)


class TestGeneratedGraphs:
    @pytest.mark.parametrize("seed", SEEDS)
    def test_acyclic_graphs_always_build(self, seed):
        rng = random.Random(seed)
        nodes, edges = _random_dag(rng, size=rng.randint(1, 40), density=rng.uniform(0.0, 0.4))
        graph = Graph.build(nodes, edges)
        assert len(graph) == len(nodes)

    @pytest.mark.parametrize("seed", SEEDS)
    def test_topological_order_respects_every_ordering_edge(self, seed):
        rng = random.Random(seed)
        nodes, edges = _random_dag(rng, size=rng.randint(1, 40), density=rng.uniform(0.0, 0.4))
        graph = Graph.build(nodes, edges)

        order = graph.topological_order()
        assert sorted(order) == sorted(n.id for n in nodes)
        position = {node_id: i for i, node_id in enumerate(order)}
        for edge in edges:
            if edge.implies_ordering:
                assert position[edge.source] < position[edge.target]

    @pytest.mark.parametrize("seed", SEEDS)
    def test_batch_index_is_one_past_deepest_predecessor(self, seed):
        rng = random.Random(seed)
        nodes, edges = _random_dag(rng, size=rng.randint(1, 40), density=rng.uniform(0.0, 0.4))
        graph = Graph.build(nodes, edges)

        batches = graph.parallel_batches()
        index = {node_id: k for k, wave in enumerate(batches) for node_id in wave}
        assert len(index) == len(nodes)
        assert all(batches)
        for node_id, k in index.items():
            preds = graph.predecessors(node_id)
            expected = 1 + max(index[p] for p in preds) if preds else 0
            assert k == expected

    @pytest.mark.parametrize("seed", SEEDS)
    def test_critical_path_is_a_heaviest_path(self, seed):
        rng = random.Random(seed)
        nodes, edges = _random_dag(rng, size=rng.randint(1, 30), density=rng.uniform(0.0, 0.4))
        graph = Graph.build(nodes, edges)
        weights = {n.id: float(rng.randint(0, 9)) for n in nodes}

        path = graph.critical_path(weights)
        assert not graph.predecessors(path[0])
        for a, b in zip(path, path[1:]):
            assert a in graph.predecessors(b)

        heaviest: dict[str, float] = {}
        for node_id in graph.topological_order():
            preds = graph.predecessors(node_id)
            heaviest[node_id] = weights[node_id] + max((heaviest[p] for p in preds), default=0.0)
        assert sum(weights[n] for n in path) == max(heaviest.values())

    @pytest.mark.parametrize("seed", SEEDS)
    def test_back_edge_always_detected(self, seed):
        rng = random.Random(seed)
        nodes, edges = _random_dag(rng, size=rng.randint(2, 40), density=rng.uniform(0.05, 0.4))
        ordering = [e for e in edges if e.implies_ordering]
        if not ordering:
            ordering = [Edge(nodes[0].id, nodes[1].id)]
            edges.append(ordering[0])
        closing = rng.choice(ordering)
        edges.append(Edge(closing.target, closing.source, EdgeType.DATA_FLOW))

        with pytest.raises(CycleDetectedError) as exc_info:
            Graph.build(nodes, edges)

        path = exc_info.value.path
        assert path[0] == path[-1]
        links = {(e.source, e.target) for e in edges if e.implies_ordering}
        assert all((a, b) in links for a, b in zip(path, path[1:]))
