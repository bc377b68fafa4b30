"""
DAG checks for parsed task graphs.

The grammar cannot express cycles, but graphs can also be built by hand or by
the process-calculus bridge, so every graph is re-checked here before it is
handed to the runtime:
- node ids are unique
- the data-flow graph is acyclic
- every Merge closes a ParallelGroup, and no group flows into a consumer
  without passing through a Merge
"""

from typing import Any, Dict, List

import networkx as nx

from .ast import Command, Merge, Node, ParallelGroup, Pipe, TaskGraph
from .errors import GraphError


def _kind(node: Node) -> str:
    return type(node).__name__


def build_dependency_graph(graph: TaskGraph) -> nx.DiGraph:
    dag = nx.DiGraph()
    seen = set()
    for node in graph.nodes():
        if node.node_id in seen:
            raise GraphError(f"Duplicate node id '{node.node_id}'")
        seen.add(node.node_id)
        # pipes are composition only; data flows between their endpoints
        if not isinstance(node, Pipe):
            dag.add_node(node.node_id, kind=_kind(node), data=node)
    for src, dst in graph.edges():
        dag.add_edge(src, dst)
    return dag


def _check_structure(node: Node, in_branch: bool, last: bool) -> None:
    if isinstance(node, Merge):
        if not isinstance(node.group, ParallelGroup):
            raise GraphError(f"Merge {node.node_id} does not close a parallel group")
        _check_structure(node.group, in_branch, last=False)
    elif isinstance(node, ParallelGroup):
        if not node.branches:
            raise GraphError(f"Parallel group {node.node_id} has no branches")
        if in_branch and last:
            raise GraphError(f"Parallel group {node.node_id} ends a branch without a merge")
        for branch in node.branches:
            _check_structure(branch, in_branch=True, last=True)
    elif isinstance(node, Pipe):
        tail = node.producer
        while isinstance(tail, Pipe):
            tail = tail.consumer
        if isinstance(tail, ParallelGroup):
            raise GraphError(f"Parallel group {tail.node_id} flows into {node.consumer.node_id} without a merge")
        if isinstance(node.consumer, Pipe):
            raise GraphError(f"Pipe {node.node_id} has a pipe as its consumer")
        _check_structure(node.producer, in_branch, last=False)
        _check_structure(node.consumer, in_branch, last)
    elif not isinstance(node, Command):
        raise GraphError(f"Unknown node type {type(node).__name__}")


def validate(graph: TaskGraph) -> nx.DiGraph:
    """Raise GraphError on any structural violation; return the dependency DAG."""
    if not graph.pipelines:
        raise GraphError("Task graph has no pipelines")
    for pipeline in graph.pipelines:
        _check_structure(pipeline, in_branch=False, last=True)
    dag = build_dependency_graph(graph)
    if not nx.is_directed_acyclic_graph(dag):
        cycle = nx.find_cycle(dag)
        raise GraphError(f"Task graph contains a cycle: {cycle}")
    return dag


def execution_layers(graph: TaskGraph) -> List[List[str]]:
    """Node ids grouped by dependency depth; ids in one layer may run together."""
    dag = build_dependency_graph(graph)
    return [sorted(layer, key=lambda n: (len(n), n)) for layer in nx.topological_generations(dag)]


def to_dict(graph: TaskGraph) -> Dict[str, Any]:
    """Export the graph for display (used by the CLI's --check)."""
    dag = build_dependency_graph(graph)
    nodes = []
    for nid in nx.topological_sort(dag):
        node = dag.nodes[nid]["data"]
        info: Dict[str, Any] = {
            "id": nid,
            "kind": dag.nodes[nid]["kind"],
            "parents": list(dag.predecessors(nid)),
            "children": list(dag.successors(nid)),
            "line": node.line,
        }
        if isinstance(node, Command):
            info["name"] = node.name
            info["args"] = list(node.args)
        elif isinstance(node, Merge):
            info["mode"] = node.mode
            info["explicit"] = node.explicit
        nodes.append(info)
    return {
        "node_count": dag.number_of_nodes(),
        "edge_count": dag.number_of_edges(),
        "is_dag": nx.is_directed_acyclic_graph(dag),
        "nodes": nodes,
    }
