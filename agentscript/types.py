from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover
    from .mcp import ConnectionManager


class ValueTag(str, Enum):
    Text = "Text"
    Data = "Data"
    Empty = "Empty"
    Failure = "Failure"


# ─── CommandResult: immutable output of one node ────────────────
class CommandResult(BaseModel):
    """Success payload (text and/or structured data) or a tagged failure.

    Frozen: once a node has produced its result nobody downstream can change it.
    """
    model_config = ConfigDict(frozen=True)

    ok: bool = True
    text: str = ""
    data: Any = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    command: Optional[str] = None
    node_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, text: str = "", data: Any = None, **meta: Any) -> "CommandResult":
        return cls(ok=True, text=text, data=data, meta=meta)

    @classmethod
    def failure(cls, kind: str, message: str) -> "CommandResult":
        return cls(ok=False, error_kind=kind, error=message)

    @classmethod
    def coerce(cls, value: Any) -> "CommandResult":
        """Wrap a handler's plain return value."""
        if isinstance(value, CommandResult):
            return value
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(text=value)
        if isinstance(value, bytes):
            return cls(text=value.decode("utf-8", errors="replace"))
        return cls(data=value)

    @property
    def tag(self) -> ValueTag:
        if not self.ok:
            return ValueTag.Failure
        if self.data is not None:
            return ValueTag.Data
        return ValueTag.Text if self.text else ValueTag.Empty

    def as_text(self) -> str:
        if self.text or self.data is None:
            return self.text
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data, ensure_ascii=False, indent=2, default=str)


@dataclass(frozen=True)
class BranchResults:
    """Outputs of a parallel group's branches, in declaration order."""
    results: Tuple[CommandResult, ...]
    labels: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.results)

    def as_text(self) -> str:
        from .merge import concat
        return concat(self).text


Value = Union[CommandResult, BranchResults, None]


# ─── ExecutionContext ───────────────────────────────────────────
@dataclass
class ExecutionContext:
    """Per-unit carrier of the current value plus run-scoped shared resources.

    ``value`` belongs to this unit; ``connections``, ``cancel_event`` and
    ``workdir`` are shared by every unit of the run.
    """
    value: Value = None
    connections: Optional["ConnectionManager"] = None
    workdir: Path = field(default_factory=Path.cwd)
    cancel_event: Optional[asyncio.Event] = None
    timeout_s: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)
    node_id: Optional[str] = None
    branch_path: Tuple[int, ...] = ()

    @property
    def input_text(self) -> str:
        if self.value is None:
            return ""
        return self.value.as_text()

    @property
    def input_data(self) -> Any:
        if isinstance(self.value, CommandResult):
            return self.value.data
        if isinstance(self.value, BranchResults):
            return [r.data if r.data is not None else r.text for r in self.value.results]
        return None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def with_value(self, value: Value) -> "ExecutionContext":
        return replace(self, value=value)

    def fork(self, branch: int) -> "ExecutionContext":
        """Isolated copy for one parallel branch; shared resources stay shared."""
        value = self.value
        if isinstance(value, CommandResult):
            value = value.model_copy(deep=True)
        elif isinstance(value, BranchResults):
            value = BranchResults(tuple(r.model_copy(deep=True) for r in value.results), value.labels)
        return replace(
            self,
            value=value,
            env=dict(self.env),
            branch_path=self.branch_path + (branch,),
        )
