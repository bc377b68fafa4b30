# Task graph node types produced by the parser and consumed by the runtime
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple, Union


@dataclass(frozen=True)
class Command:
    name: str
    args: Tuple[str, ...] = ()
    node_id: str = field(default="", compare=False)
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Pipe:
    producer: "Node"
    consumer: "Node"
    node_id: str = field(default="", compare=False)
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class ParallelGroup:
    branches: Tuple["Node", ...]
    node_id: str = field(default="", compare=False)
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Merge:
    """Closes exactly one ParallelGroup; ``explicit`` is False for merges the parser inferred."""
    group: ParallelGroup
    mode: str = "concat"
    node_id: str = field(default="", compare=False)
    explicit: bool = field(default=True, compare=False)
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


Node = Union[Command, Pipe, ParallelGroup, Merge]


def iter_nodes(node: Node) -> Iterator[Node]:
    """Pre-order walk; producers before consumers, branches in declaration order."""
    yield node
    if isinstance(node, Pipe):
        yield from iter_nodes(node.producer)
        yield from iter_nodes(node.consumer)
    elif isinstance(node, ParallelGroup):
        for branch in node.branches:
            yield from iter_nodes(branch)
    elif isinstance(node, Merge):
        yield from iter_nodes(node.group)


def entries(node: Node) -> List[str]:
    """Ids of the nodes that receive this sub-graph's input."""
    if isinstance(node, Pipe):
        return entries(node.producer)
    if isinstance(node, Merge):
        return entries(node.group)
    return [node.node_id]


def exits(node: Node) -> List[str]:
    """Ids of the nodes whose output leaves this sub-graph."""
    if isinstance(node, Pipe):
        return exits(node.consumer)
    if isinstance(node, ParallelGroup):
        out: List[str] = []
        for branch in node.branches:
            out.extend(exits(branch))
        return out
    return [node.node_id]


def node_edges(node: Node) -> List[Tuple[str, str]]:
    found: List[Tuple[str, str]] = []
    if isinstance(node, Pipe):
        found.extend(node_edges(node.producer))
        found.extend(node_edges(node.consumer))
        found.extend((a, b) for a in exits(node.producer) for b in entries(node.consumer))
    elif isinstance(node, ParallelGroup):
        for branch in node.branches:
            found.extend(node_edges(branch))
            found.extend((node.node_id, b) for b in entries(branch))
    elif isinstance(node, Merge):
        found.extend(node_edges(node.group))
        found.extend((a, node.node_id) for a in exits(node.group))
    return found


def quote(arg: str) -> str:
    escaped = arg.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
    return f'"{escaped}"'


def render(node: Node, indent: int = 0) -> str:
    """Render a node back to script text."""
    if isinstance(node, Command):
        return " ".join([node.name] + [quote(a) for a in node.args])
    if isinstance(node, Pipe):
        return f"{render(node.producer, indent)} -> {render(node.consumer, indent)}"
    if isinstance(node, ParallelGroup):
        pad = "  " * (indent + 1)
        body = "\n".join(pad + render(b, indent + 1) for b in node.branches)
        return "parallel {\n" + body + "\n" + "  " * indent + "}"
    merge = "merge" if node.mode == "concat" else f"merge {quote(node.mode)}"
    return f"{render(node.group, indent)} -> {merge}"


@dataclass(frozen=True)
class TaskGraph:
    """Parsed script: ordered top-level pipelines, read-only after parsing."""
    pipelines: Tuple[Node, ...]
    source: str = field(default="", compare=False)

    def nodes(self) -> List[Node]:
        out: List[Node] = []
        for p in self.pipelines:
            out.extend(iter_nodes(p))
        return out

    def commands(self) -> List[Command]:
        return [n for n in self.nodes() if isinstance(n, Command)]

    def command_sequence(self) -> List[Tuple[str, Tuple[str, ...]]]:
        return [(c.name, c.args) for c in self.commands()]

    def edges(self) -> List[Tuple[str, str]]:
        found: List[Tuple[str, str]] = []
        for p in self.pipelines:
            found.extend(node_edges(p))
        # each top-level pipeline feeds the next one
        for prev, nxt in zip(self.pipelines, self.pipelines[1:]):
            found.extend((a, b) for a in exits(prev) for b in entries(nxt))
        return found

    def find(self, node_id: str) -> Node:
        for n in self.nodes():
            if n.node_id == node_id:
                return n
        raise KeyError(node_id)

    def to_script(self) -> str:
        return "\n".join(render(p) for p in self.pipelines)
