from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from loguru import logger

from .ast import Command, Merge, Node, ParallelGroup, Pipe, TaskGraph, iter_nodes, render
from .config import EngineConfig
from .dispatcher import CommandRegistry, dispatch
from .errors import CommandTimeoutError, GraphError, PipelineError, RunCancelledError
from .logs import get_tracer
from .mcp import ConnectionManager, TransportFactory
from .merge import aggregate
from .parser import parse_script
from .types import BranchResults, CommandResult, ExecutionContext, Value


@dataclass
class RunResult:
    value: Value
    metrics: Dict[str, Any] = field(default_factory=dict)
    console: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.value.as_text() if self.value is not None else ""


def _fresh_metrics() -> Dict[str, Any]:
    return {"commands": 0, "parallel_groups": 0, "merges": 0, "failures": 0, "command_ms": {}, "run_ms": 0.0}


def _branch_label(branch: Node) -> str:
    for n in iter_nodes(branch):
        if isinstance(n, Command):
            return " ".join([n.name] + list(n.args))
    return branch.node_id


def _resolve(value: Value) -> CommandResult:
    if isinstance(value, BranchResults):
        return aggregate(value)
    if value is None:
        return CommandResult()
    return value


class Runtime:
    """Executes task graphs.

    Pipes run in order, parallel groups run their branches as concurrent
    tasks, merges combine branch results in declaration order. The first
    failing branch cancels its siblings and fails the whole run.
    """

    def __init__(
        self,
        registry: Optional[CommandRegistry] = None,
        config: Optional[EngineConfig] = None,
        dry_run: Optional[bool] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.config = config or EngineConfig()
        if registry is None:
            from .handlers import default_registry
            registry = default_registry(config=self.config)
        self.registry = registry
        self.dry_run = self.config.dry_run if dry_run is None else dry_run
        self.transport_factory = transport_factory
        self.graph: Optional[TaskGraph] = None
        self.console: List[str] = []
        self.metrics: Dict[str, Any] = _fresh_metrics()
        self.tracer = get_tracer(__name__)
        self.connections: Optional[ConnectionManager] = None
        self._executed: Set[str] = set()
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def log(self, msg: str):
        self.console.append(msg)
        logger.info(msg)

    def load(self, source: Union[str, Path]) -> TaskGraph:
        self.graph = parse_script(source, strict=self.config.strict, known_commands=self.registry.names())
        return self.graph

    # ---------- Execution entry ----------
    def run(self, source: Union[TaskGraph, str, Path, None] = None, input: Any = None, timeout: Optional[float] = None) -> RunResult:
        return asyncio.run(self.run_async(source, input=input, timeout=timeout))

    async def run_async(self, source: Union[TaskGraph, str, Path, None] = None, input: Any = None, timeout: Optional[float] = None) -> RunResult:
        graph = self._graph_for(source)
        self.registry.freeze()
        self.console = []
        self.metrics = _fresh_metrics()
        self._executed = set()
        self._cancel_requested = False
        self._cancel_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self.connections = ConnectionManager(
            self.transport_factory,
            call_timeout_s=self.config.mcp_timeout_s,
            connect_timeout_s=self.config.mcp_timeout_s,
        )
        ctx = ExecutionContext(
            value=CommandResult.coerce(input) if input is not None else None,
            connections=self.connections,
            workdir=self.config.workdir,
            cancel_event=self._cancel_event,
            timeout_s=timeout if timeout is not None else self.config.command_timeout_s,
        )
        start = time.perf_counter()
        self.log(f"[run] start: {len(graph.pipelines)} pipeline(s), {len(graph.commands())} command(s)")
        value: Value = ctx.value
        try:
            with self.tracer.start_as_current_span("run"):
                for pipeline in graph.pipelines:
                    value = await self._exec_node(pipeline, ctx.with_value(value))
        finally:
            await self.connections.close_all()
            self.metrics["run_ms"] = round((time.perf_counter() - start) * 1000, 2)
            self._loop = None
        self.log(f"[run] done in {self.metrics['run_ms']}ms")
        return RunResult(value=value, metrics=dict(self.metrics), console=list(self.console))

    def cancel(self) -> None:
        """Request cooperative cancellation of the current run (thread-safe)."""
        self._cancel_requested = True
        if self._cancel_event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._cancel_event.set)

    def _graph_for(self, source: Union[TaskGraph, str, Path, None]) -> TaskGraph:
        if isinstance(source, TaskGraph):
            if self.config.strict:
                self.registry.check(source)
            self.graph = source
            return source
        if source is not None:
            return self.load(source)
        if self.graph is None:
            raise GraphError("No script loaded")
        return self.graph

    # ---------- Node execution ----------
    async def _exec_node(self, node: Node, ctx: ExecutionContext) -> Value:
        match node:
            case Command():
                return await self._exec_command(node, ctx)
            case Pipe():
                self._mark(node)
                produced = await self._exec_node(node.producer, ctx)
                return await self._exec_node(node.consumer, ctx.with_value(produced))
            case ParallelGroup():
                return await self._exec_group(node, ctx)
            case Merge():
                return await self._exec_merge(node, ctx)
            case _:
                raise GraphError(f"Unknown node type {type(node).__name__}")

    def _mark(self, node: Node) -> None:
        if node.node_id in self._executed:
            raise GraphError(f"Node {node.node_id} would execute twice")
        self._executed.add(node.node_id)

    def _check_cancel(self, node: Node, ctx: ExecutionContext) -> None:
        if self._cancel_requested or ctx.cancelled:
            name = node.name if isinstance(node, Command) else type(node).__name__.lower()
            raise RunCancelledError("run cancelled", node_id=node.node_id, command=name)

    async def _exec_command(self, node: Command, ctx: ExecutionContext) -> CommandResult:
        self._mark(node)
        self._check_cancel(node, ctx)
        ctx = replace(ctx, node_id=node.node_id)
        self.log(f"[cmd] {node.node_id} {render(node)} (input: {len(ctx.input_text)} chars)")
        start = time.perf_counter()
        with self.tracer.start_as_current_span(f"command:{node.name}"):
            if self.dry_run:
                result = CommandResult.success(text=f"[dry_run] {render(node)}", dry_run=True)
            else:
                try:
                    result = await self._invoke(node, ctx)
                except PipelineError as e:
                    if e.node_id is None:
                        e.node_id = node.node_id
                    if e.command is None:
                        e.command = node.name
                    self.metrics["failures"] += 1
                    self.log(f"[cmd] {node.node_id} {node.name} failed: {e}")
                    raise
        dt_ms = round((time.perf_counter() - start) * 1000, 2)
        self.metrics["commands"] += 1
        self.metrics["command_ms"].setdefault(node.name, []).append(dt_ms)
        self._check_cancel(node, ctx)
        return result.model_copy(update={"command": node.name, "node_id": node.node_id})

    async def _invoke(self, node: Command, ctx: ExecutionContext) -> CommandResult:
        call = dispatch(self.registry, node.name, node.args, ctx)
        if ctx.timeout_s is not None:
            call = asyncio.wait_for(call, timeout=ctx.timeout_s)
        task = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task not in done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise RunCancelledError("run cancelled while command was running")
            try:
                return task.result()
            except asyncio.TimeoutError:
                raise CommandTimeoutError(f"exceeded {ctx.timeout_s}s deadline") from None
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _exec_group(self, group: ParallelGroup, ctx: ExecutionContext) -> BranchResults:
        self._mark(group)
        self._check_cancel(group, ctx)
        self.metrics["parallel_groups"] += 1
        self.log(f"[parallel] {group.node_id}: {len(group.branches)} branches")
        with self.tracer.start_as_current_span("parallel"):
            tasks = [
                asyncio.create_task(self._exec_node(branch, ctx.fork(i)), name=f"{group.node_id}/branch{i}")
                for i, branch in enumerate(group.branches, start=1)
            ]
            try:
                pending = set(tasks)
                while pending:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                    # ties between branches finishing together go to declaration order
                    failed = [t for t in tasks if t in done and not t.cancelled() and t.exception() is not None]
                    if failed:
                        for t in pending:
                            t.cancel()
                        await asyncio.gather(*pending, return_exceptions=True)
                        raise failed[0].exception()
            finally:
                leftovers = [t for t in tasks if not t.done()]
                for t in leftovers:
                    t.cancel()
                if leftovers:
                    await asyncio.gather(*leftovers, return_exceptions=True)
        results = tuple(_resolve(t.result()) for t in tasks)
        self.log(f"[parallel] {group.node_id} complete: {len(results)} branches finished")
        return BranchResults(results=results, labels=tuple(_branch_label(b) for b in group.branches))

    async def _exec_merge(self, merge: Merge, ctx: ExecutionContext) -> CommandResult:
        self._mark(merge)
        branches = await self._exec_group(merge.group, ctx)
        self._check_cancel(merge, ctx)
        with self.tracer.start_as_current_span("merge"):
            try:
                result = aggregate(branches, merge.mode)
            except ValueError as e:
                raise GraphError(str(e)) from e
        self.metrics["merges"] += 1
        self.log(f"[merge] {merge.node_id} ({merge.mode}) of {len(branches)} branches")
        return result.model_copy(update={"command": "merge", "node_id": merge.node_id})
