"""Graph Model — validated, immutable workflow graph.

Manifesto:
    A workflow definition is loose data; the scheduler needs a structure it
can trust.  ``Graph.build()`` turns nodes and edges into that structure once
per run, rejecting every invalid shape up front (duplicate ids, dangling edge
endpoints, ordering cycles) so nothing is discovered at dispatch time.

ARCHITECTURE
────────────
::

    Graph.build(nodes, edges)          ── validate + index, or raise GraphError
      ├── topological_order()          ── deterministic linear extension
      ├── parallel_batches()           ── waves by longest-chain depth
      ├── critical_path(weight)        ── longest weighted path
      ├── predecessors / successors    ── ordering edges only
      └── incoming_triggers / outgoing_triggers

Ordering edges are dependency and data-flow edges.  Trigger edges are kept
separately; they never take part in cycle detection or wave computation.

Example::

    graph = Graph.build(
        nodes=[Node("fetch"), Node("summarise"), Node("classify"), Node("report")],
        edges=[
            Edge("fetch", "summarise"),
            Edge("fetch", "classify"),
            Edge("summarise", "report", EdgeType.DATA_FLOW),
            Edge("classify", "report", EdgeType.DATA_FLOW),
        ],
    )
    graph.parallel_batches()   # [{'fetch'}, {'classify', 'summarise'}, {'report'}]
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Callable, Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from conductor.orchestration.exceptions import (
    CycleDetectedError,
    DuplicateNodeError,
    UnknownNodeError,
)
from conductor.orchestration.models import Edge, Node

WeightFn = Callable[[str], float]


class Graph:
    """Immutable workflow graph.  Build with :meth:`Graph.build`."""

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> None:
        node_map: dict[str, Node] = {}
        for node in nodes:
            if node.id in node_map:
                raise DuplicateNodeError(node.id)
            node_map[node.id] = node

        edge_list = tuple(edges)
        for edge in edge_list:
            missing = [n for n in (edge.source, edge.target) if n not in node_map]
            if missing:
                raise UnknownNodeError(edge.source, edge.target, sorted(set(missing)))

        self._nodes: Mapping[str, Node] = MappingProxyType(node_map)
        self._edges: tuple[Edge, ...] = edge_list
        self._index: dict[str, int] = {node_id: i for i, node_id in enumerate(node_map)}

        preds: dict[str, list[str]] = defaultdict(list)
        succs: dict[str, list[str]] = defaultdict(list)
        ordering_in: dict[str, list[Edge]] = defaultdict(list)
        triggers_in: dict[str, list[Edge]] = defaultdict(list)
        triggers_out: dict[str, list[Edge]] = defaultdict(list)

        for edge in edge_list:
            if edge.implies_ordering:
                ordering_in[edge.target].append(edge)
                if edge.source not in preds[edge.target]:
                    preds[edge.target].append(edge.source)
                    succs[edge.source].append(edge.target)
            else:
                triggers_in[edge.target].append(edge)
                triggers_out[edge.source].append(edge)

        self._preds = {k: tuple(v) for k, v in preds.items()}
        self._succs = {k: tuple(v) for k, v in succs.items()}
        self._ordering_in = {k: tuple(v) for k, v in ordering_in.items()}
        self._triggers_in = {k: tuple(v) for k, v in triggers_in.items()}
        self._triggers_out = {k: tuple(v) for k, v in triggers_out.items()}

        self._validate_no_cycles()
        self._depth = self._compute_depths()

    @classmethod
    def build(cls, nodes: Iterable[Node], edges: Iterable[Edge] = ()) -> Graph:
        """Validate and build a graph.

        Raises:
            DuplicateNodeError: Two nodes share an id
            UnknownNodeError: An edge endpoint was never declared
            CycleDetectedError: Ordering edges form a cycle
        """
        return cls(nodes, edges)

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate_no_cycles(self) -> None:
        """
        Validate the ordering sub-graph is a DAG.

        Uses depth-first search with three-color marking:
        - WHITE (0): Unvisited
        - GRAY (1): Currently visiting (on current path)
        - BLACK (2): Finished visiting

        If we encounter a GRAY node, we've found a cycle.
        """
        WHITE, GRAY, BLACK = 0, 1, 2

        color = {node_id: WHITE for node_id in self._nodes}

        for root in self._nodes:
            if color[root] != WHITE:
                continue

            # Explicit stack of (node, remaining successors); path mirrors the GRAY nodes
            color[root] = GRAY
            path: list[str] = [root]
            stack: list[tuple[str, Iterator[str]]] = [(root, iter(self._succs.get(root, ())))]

            while stack:
                node, successors = stack[-1]
                for neighbor in successors:
                    if color[neighbor] == GRAY:
                        cycle_start = path.index(neighbor)
                        raise CycleDetectedError(path[cycle_start:] + [neighbor])
                    if color[neighbor] == WHITE:
                        color[neighbor] = GRAY
                        path.append(neighbor)
                        stack.append((neighbor, iter(self._succs.get(neighbor, ()))))
                        break
                else:
                    color[node] = BLACK
                    path.pop()
                    stack.pop()

    def _compute_depths(self) -> dict[str, int]:
        """Longest ordering chain from any source, via Kahn's algorithm."""
        in_degree = {node_id: len(self._preds.get(node_id, ())) for node_id in self._nodes}
        depth = {node_id: 0 for node_id in self._nodes}
        queue: deque[str] = deque(n for n, deg in in_degree.items() if deg == 0)

        while queue:
            node = queue.popleft()
            for neighbor in self._succs.get(node, ()):
                depth[neighbor] = max(depth[neighbor], depth[node] + 1)
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return depth

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def nodes(self) -> Mapping[str, Node]:
        """Read-only mapping of node id → Node, in declaration order."""
        return self._nodes

    @property
    def edges(self) -> tuple[Edge, ...]:
        return self._edges

    def node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def node_ids(self) -> list[str]:
        """Node ids in declaration order."""
        return list(self._nodes)

    def declaration_index(self, node_id: str) -> int:
        return self._index[node_id]

    def predecessors(self, node_id: str) -> tuple[str, ...]:
        """Nodes with an ordering edge into ``node_id``."""
        return self._preds.get(node_id, ())

    def successors(self, node_id: str) -> tuple[str, ...]:
        """Nodes with an ordering edge out of ``node_id``."""
        return self._succs.get(node_id, ())

    def incoming_ordering_edges(self, node_id: str) -> tuple[Edge, ...]:
        return self._ordering_in.get(node_id, ())

    def incoming_triggers(self, node_id: str) -> tuple[Edge, ...]:
        return self._triggers_in.get(node_id, ())

    def outgoing_triggers(self, node_id: str) -> tuple[Edge, ...]:
        return self._triggers_out.get(node_id, ())

    def has_triggers(self) -> bool:
        return bool(self._triggers_in)

    def depth(self, node_id: str) -> int:
        """Length of the longest ordering chain ending at ``node_id``."""
        return self._depth[node_id]

    def sources(self) -> list[str]:
        return [n for n in self._nodes if not self._preds.get(n)]

    def sinks(self) -> list[str]:
        return [n for n in self._nodes if not self._succs.get(n)]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    # =========================================================================
    # Scheduling views
    # =========================================================================

    def parallel_batches(self) -> list[frozenset[str]]:
        """Partition nodes into waves.

        Wave *k* is exactly the set of nodes whose longest ordering chain from
        a source has length *k*; every predecessor of a wave-*k* node lies in
        a strictly earlier wave.
        """
        if not self._nodes:
            return []
        waves: list[set[str]] = [set() for _ in range(max(self._depth.values()) + 1)]
        for node_id, d in self._depth.items():
            waves[d].add(node_id)
        return [frozenset(w) for w in waves]

    def topological_order(self) -> list[str]:
        """Deterministic linear extension of the ordering edges.

        Nodes are emitted wave by wave; ties inside a wave are broken by node
        id ascending, so the result is reproducible across runs and matches
        the order a DAG run with a single worker dispatches nodes in.
        """
        return [node_id for wave in self.parallel_batches() for node_id in sorted(wave)]

    def critical_path(self, weight: WeightFn | Mapping[str, float]) -> list[str]:
        """Longest weighted path through the ordering DAG.

        Args:
            weight: Per-node duration, as a callable or a mapping
                (nodes missing from a mapping weigh 0).

        Ties are broken in favour of the earliest-declared node.
        """
        if isinstance(weight, Mapping):
            weights = weight
            weight_fn: WeightFn = lambda node_id: float(weights.get(node_id, 0.0))  # noqa: E731
        else:
            weight_fn = weight

        best: dict[str, float] = {}
        parent: dict[str, str | None] = {}

        for node_id in self.topological_order():
            chosen: str | None = None
            for pred in sorted(self.predecessors(node_id), key=self.declaration_index):
                if chosen is None or best[pred] > best[chosen]:
                    chosen = pred
            base = best[chosen] if chosen is not None else 0.0
            best[node_id] = base + float(weight_fn(node_id))
            parent[node_id] = chosen

        if not best:
            return []

        end: str | None = None
        for node_id in self._nodes:
            if end is None or best[node_id] > best[end]:
                end = node_id

        path: list[str] = []
        cursor = end
        while cursor is not None:
            path.append(cursor)
            cursor = parent[cursor]
        path.reverse()
        return path

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "edges": [e.to_dict() for e in self._edges],
        }

    def __repr__(self) -> str:
        return f"Graph(nodes={len(self._nodes)}, edges={len(self._edges)})"


def build_graph(nodes: Iterable[Node], edges: Iterable[Edge] = ()) -> Graph:
    """Validate and build a graph (see :meth:`Graph.build`)."""
    return Graph.build(nodes, edges)


def topological_order(graph: Graph) -> list[str]:
    return graph.topological_order()


def parallel_batches(graph: Graph) -> list[frozenset[str]]:
    return graph.parallel_batches()


def critical_path(graph: Graph, weight: WeightFn | Mapping[str, float]) -> list[str]:
    return graph.critical_path(weight)
