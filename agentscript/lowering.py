from __future__ import annotations
import re
from typing import List

from lark import Token, Tree

from .ast import Command, Merge, Node, ParallelGroup, Pipe, TaskGraph

_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}
_ESCAPE_RE = re.compile(r"\\(.)", re.S)


def unquote(raw: str) -> str:
    body = raw[1:-1]
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(0)), body)


class IdAllocator:
    def __init__(self) -> None:
        self._n = 0

    def next(self) -> str:
        self._n += 1
        return f"n{self._n}"


def close_group(group: ParallelGroup, ids: IdAllocator, mode: str = "concat", explicit: bool = False, pos=None) -> Merge:
    line, column = pos if pos else (group.line, group.column)
    return Merge(group=group, mode=mode, node_id=ids.next(), explicit=explicit, line=line, column=column)


def fold_stages(stages: List[Node], ids: IdAllocator, in_branch: bool) -> Node:
    """Chain stages into left-nested pipes.

    A ParallelGroup that is piped into anything other than merge gets an
    implicit Merge; so does one that ends a branch, so every branch reports a
    single value. Only a top-level pipeline may end on an unmerged group.
    """
    closed: List[Node] = []
    for i, node in enumerate(stages):
        last = i == len(stages) - 1
        if isinstance(node, ParallelGroup) and (not last or in_branch):
            nxt = stages[i + 1] if not last else None
            if not isinstance(nxt, Merge):
                node = close_group(node, ids)
        closed.append(node)
    current = closed[0]
    for node in closed[1:]:
        if isinstance(node, Merge):
            # explicit merge already wraps the group that precedes it
            current = _replace_tail(current, node)
            continue
        current = Pipe(producer=current, consumer=node, node_id=ids.next(), line=current.line, column=current.column)
    return current


def _replace_tail(current: Node, merge: Merge) -> Node:
    if isinstance(current, ParallelGroup):
        return merge
    if isinstance(current, Pipe):
        return Pipe(
            producer=current.producer,
            consumer=_replace_tail(current.consumer, merge),
            node_id=current.node_id,
            line=current.line,
            column=current.column,
        )
    raise ValueError("merge does not follow a parallel group")


class Lowering:
    """Turns the lark tree of a script into task graph nodes."""

    def __init__(self, tree: Tree, source: str = ""):
        self.tree = tree
        self.source = source
        self.ids = IdAllocator()

    def lower(self) -> TaskGraph:
        pipelines = [
            self._lower_pipeline(ch, in_branch=False)
            for ch in self.tree.children
            if isinstance(ch, Tree) and ch.data == "pipeline"
        ]
        return TaskGraph(pipelines=tuple(pipelines), source=self.source)

    def _lower_pipeline(self, node: Tree, in_branch: bool) -> Node:
        stages: List[Node] = []
        for stage in node.children:
            if not isinstance(stage, Tree):
                continue
            if stage.data == "merge":
                # semantic analysis guarantees a parallel block precedes it
                group = stages[-1]
                kw = stage.children[0]
                mode = "concat"
                for ch in stage.children[1:]:
                    if isinstance(ch, Token) and ch.type == "STRING":
                        mode = unquote(ch.value).strip().lower()
                stages.append(close_group(group, self.ids, mode=mode, explicit=True, pos=(kw.line, kw.column)))
            else:
                stages.append(self._lower_stage(stage))
        return fold_stages(stages, self.ids, in_branch)

    def _lower_stage(self, node: Tree) -> Node:
        match node.data:
            case "command":
                name_tok = node.children[0]
                args = tuple(unquote(t.value) for t in node.children[1:] if isinstance(t, Token))
                return Command(
                    name=str(name_tok).lower(),
                    args=args,
                    node_id=self.ids.next(),
                    line=name_tok.line,
                    column=name_tok.column,
                )
            case "parallel":
                kw = node.children[0]
                branches = tuple(
                    self._lower_pipeline(ch, in_branch=True)
                    for ch in node.children
                    if isinstance(ch, Tree) and ch.data == "pipeline"
                )
                return ParallelGroup(branches=branches, node_id=self.ids.next(), line=kw.line, column=kw.column)
            case _:
                raise ValueError(f"Unsupported stage: {node.data}")
