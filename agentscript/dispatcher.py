from __future__ import annotations
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Sequence, runtime_checkable

from loguru import logger

from .ast import TaskGraph
from .errors import DispatchError, HandlerError, PipelineError, UnknownCommandError
from .types import CommandResult, ExecutionContext


@runtime_checkable
class Handler(Protocol):
    """Capability behind one command name.

    ``invoke`` may be sync or async and may return a CommandResult, a str,
    structured data or None.
    """

    def invoke(self, args: Sequence[str], context: ExecutionContext) -> Any:  # pragma: no cover - protocol
        ...


@dataclass
class FunctionHandler:
    fn: Callable[..., Any]
    name: str
    description: str = ""
    min_args: int = 0
    max_args: Optional[int] = None

    def invoke(self, args: Sequence[str], context: ExecutionContext) -> Any:
        return self.fn(args, context)

    @property
    def target(self) -> Callable[..., Any]:
        return self.fn


class CommandRegistry:
    """Name -> handler registry. Routing only, no knowledge of what commands do."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}
        self._frozen = False

    def register(self, name: str, handler: Handler, replace: bool = False) -> None:
        key = name.lower()
        if self._frozen:
            raise DispatchError(f"Registry is frozen; cannot register '{key}'")
        if key in self._handlers and not replace:
            raise DispatchError(f"Command '{key}' is already registered")
        if not hasattr(handler, "invoke"):
            raise DispatchError(f"Handler for '{key}' has no invoke()")
        self._handlers[key] = handler

    def command(self, name: str, description: str = "", min_args: int = 0, max_args: Optional[int] = None):
        """Decorator registering ``fn(args, context)`` under ``name``."""
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name, FunctionHandler(fn, name.lower(), description, min_args, max_args))
            return fn
        return deco

    def resolve(self, name: str) -> Handler:
        try:
            return self._handlers[name.lower()]
        except KeyError:
            raise UnknownCommandError(f"Unknown command '{name}'", command=name) from None

    def names(self) -> set:
        return set(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._handlers

    def freeze(self) -> "CommandRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def copy(self) -> "CommandRegistry":
        other = CommandRegistry()
        other._handlers = dict(self._handlers)
        return other

    def check(self, graph: TaskGraph) -> None:
        """Eagerly resolve every command name in a graph."""
        for cmd in graph.commands():
            if cmd.name not in self._handlers:
                raise UnknownCommandError(f"Unknown command '{cmd.name}'", node_id=cmd.node_id, command=cmd.name)


def _check_arity(handler: Handler, name: str, args: Sequence[str]) -> None:
    if not isinstance(handler, FunctionHandler):
        return
    if len(args) < handler.min_args or (handler.max_args is not None and len(args) > handler.max_args):
        if handler.max_args is None:
            expected = f"at least {handler.min_args}"
        elif handler.min_args == handler.max_args:
            expected = str(handler.min_args)
        else:
            expected = f"{handler.min_args}-{handler.max_args}"
        raise DispatchError(f"'{name}' takes {expected} argument(s), got {len(args)}", command=name)


async def dispatch(registry: CommandRegistry, name: str, args: Sequence[str], context: ExecutionContext) -> CommandResult:
    """Resolve ``name`` and invoke its handler with ``args``.

    Sync handlers run in a worker thread so sibling branches keep running.
    Anything a handler raises that is not already an engine error becomes a
    HandlerError; so does a failure result.
    """
    handler = registry.resolve(name)
    _check_arity(handler, name, args)
    target = handler.target if isinstance(handler, FunctionHandler) else handler.invoke
    try:
        if inspect.iscoroutinefunction(target):
            out = await handler.invoke(args, context)
        else:
            out = await asyncio.to_thread(handler.invoke, args, context)
        if inspect.isawaitable(out):
            out = await out
    except PipelineError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.debug("handler '{}' raised {}: {}", name, type(e).__name__, e)
        raise HandlerError(f"{type(e).__name__}: {e}", command=name) from e
    result = CommandResult.coerce(out)
    if not result.ok:
        raise HandlerError(result.error or f"{name} reported a failure ({result.error_kind})", command=name)
    return result
