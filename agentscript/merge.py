"""Merge aggregation policies.

Every policy combines branch results in declaration order; completion order
never leaks into a merge's output. Policies never drop a branch.
"""
from __future__ import annotations
import json
from typing import Callable, Dict

from .types import BranchResults, CommandResult

Aggregator = Callable[[BranchResults], CommandResult]


def concat(branches: BranchResults) -> CommandResult:
    blocks = [f"=== Branch {i} ===\n{r.as_text()}" for i, r in enumerate(branches.results, start=1)]
    return CommandResult(text="\n\n".join(blocks), meta={"merge": "concat", "branches": len(branches)})


def join(branches: BranchResults) -> CommandResult:
    return CommandResult(
        text="\n\n".join(r.as_text() for r in branches.results),
        meta={"merge": "join", "branches": len(branches)},
    )


def labeled(branches: BranchResults) -> CommandResult:
    items = []
    for i, r in enumerate(branches.results, start=1):
        label = branches.labels[i - 1] if i - 1 < len(branches.labels) else f"branch{i}"
        items.append({"branch": i, "label": label, "text": r.as_text(), "data": r.data})
    return CommandResult(
        text=json.dumps(items, ensure_ascii=False, indent=2, default=str),
        data=items,
        meta={"merge": "labeled", "branches": len(branches)},
    )


MERGE_MODES: Dict[str, Aggregator] = {
    "concat": concat,
    "join": join,
    "labeled": labeled,
}


def aggregate(branches: BranchResults, mode: str = "concat") -> CommandResult:
    try:
        policy = MERGE_MODES[mode]
    except KeyError:
        raise ValueError(f"Unknown merge mode '{mode}'") from None
    return policy(branches)
