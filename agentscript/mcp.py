from __future__ import annotations
import asyncio
import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from loguru import logger

from .errors import HandlerError, ToolConnectionError
from .schemas import (
    MCP_PROTOCOL_VERSION,
    JsonRpcRequest,
    MCPTool,
    ToolCallResult,
    decode_message,
    parse_tool_args,
    parse_tools,
    tool_result_text,
)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


class Transport(Protocol):
    """Wire-level link to one tool server.

    ``multiplexed`` advertises that concurrent in-flight calls are safe;
    otherwise the manager serializes calls on the connection.
    """
    multiplexed: bool

    @property
    def alive(self) -> bool: ...  # pragma: no cover - protocol

    async def start(self) -> None: ...  # pragma: no cover - protocol

    async def list_tools(self) -> List[MCPTool]: ...  # pragma: no cover - protocol

    async def call_tool(self, tool: str, arguments: Dict[str, Any]) -> Any: ...  # pragma: no cover - protocol

    async def close(self) -> None: ...  # pragma: no cover - protocol


TransportFactory = Callable[[str, str], Transport]


# ─── Stdio JSON-RPC transport ───────────────────────────────────
class StdioTransport:
    """Newline-delimited JSON-RPC 2.0 over a child process's stdin/stdout."""

    multiplexed = False

    def __init__(self, name: str, launch_spec: str, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.name = name
        self.argv = shlex.split(launch_spec)
        if not self.argv:
            raise ToolConnectionError("empty launch spec", kind=ToolConnectionError.TRANSPORT, connection=name)
        self.cwd = cwd
        self.env = env or {}
        self.proc: Optional[asyncio.subprocess.Process] = None
        self._id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._readers: List[asyncio.Task] = []

    @property
    def alive(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    def _next_id(self) -> int:
        self._id += 1
        return self._id

    async def start(self) -> None:
        merged_env = dict(os.environ)
        merged_env.update(self.env)
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=merged_env,
            )
        except OSError as e:
            raise ToolConnectionError(f"failed to start MCP server: {e}", connection=self.name) from e
        self._readers = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        await self.request("initialize", {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "agentscript", "version": "0.1.0"},
        })
        await self.notify("notifications/initialized", {})

    async def _read_stdout(self) -> None:
        assert self.proc and self.proc.stdout
        while True:
            raw_line = await self.proc.stdout.readline()
            if not raw_line:
                # process ended: fail everything still waiting
                for future in self._pending.values():
                    if not future.done():
                        future.set_exception(ToolConnectionError("transport closed", connection=self.name))
                self._pending.clear()
                return
            if not raw_line.strip():
                continue
            try:
                message = decode_message(raw_line)
            except ValueError as e:
                logger.warning("[mcp {}] ignoring malformed line {!r}: {}", self.name, raw_line[:200], e)
                continue
            if not message.is_response:
                logger.debug("[mcp {}] notification: {}", self.name, raw_line.decode("utf-8", "replace").strip())
                continue
            future = self._pending.pop(message.id, None)
            if future is None or future.done():
                continue
            if message.error is not None:
                future.set_exception(ToolConnectionError(
                    f"MCP error: {message.error.message} (code {message.error.code})",
                    connection=self.name,
                ))
            else:
                future.set_result(message.result)

    async def _read_stderr(self) -> None:
        assert self.proc and self.proc.stderr
        while True:
            raw_line = await self.proc.stderr.readline()
            if not raw_line:
                return
            logger.debug("[mcp {}] {}", self.name, raw_line.decode("utf-8", "replace").rstrip())

    async def _send(self, req: JsonRpcRequest) -> None:
        if not self.alive or not self.proc or not self.proc.stdin:
            raise ToolConnectionError("server process is not running", connection=self.name)
        try:
            self.proc.stdin.write(req.encode())
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ToolConnectionError(f"failed to write request: {e}", connection=self.name) from e

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(JsonRpcRequest(id=request_id, method=method, params=params))
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self._send(JsonRpcRequest(method=method, params=params))

    async def list_tools(self) -> List[MCPTool]:
        return parse_tools(await self.request("tools/list", {}))

    async def call_tool(self, tool: str, arguments: Dict[str, Any]) -> Any:
        return await self.request("tools/call", {"name": tool, "arguments": arguments})

    async def close(self) -> None:
        if self.proc:
            if self.proc.stdin and not self.proc.stdin.is_closing():
                self.proc.stdin.close()
            try:
                await asyncio.wait_for(self.proc.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                self.proc.kill()
                await self.proc.wait()
        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []


def stdio_transport_factory(cwd: Optional[str] = None) -> TransportFactory:
    def make(name: str, launch_spec: str) -> Transport:
        return StdioTransport(name, launch_spec, cwd=cwd)
    return make


# ─── Connection manager ─────────────────────────────────────────
@dataclass
class Connection:
    name: str
    launch_spec: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    transport: Optional[Transport] = None
    tools: List[MCPTool] = field(default_factory=list)
    error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def multiplexed(self) -> bool:
        return bool(getattr(self.transport, "multiplexed", False))


class ConnectionManager:
    """Run-scoped registry of named tool-server connections.

    State per name: Disconnected -> Connecting -> Ready -> {Closed, Failed}.
    Calls on one connection are serialized unless its transport is multiplexed.
    """

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        call_timeout_s: Optional[float] = 30.0,
        connect_timeout_s: Optional[float] = 30.0,
    ):
        self.transport_factory = transport_factory or stdio_transport_factory()
        self.call_timeout_s = call_timeout_s
        self.connect_timeout_s = connect_timeout_s
        self._connections: Dict[str, Connection] = {}
        self._connect_locks: Dict[str, asyncio.Lock] = {}

    def state(self, name: str) -> ConnectionState:
        conn = self._connections.get(name)
        return conn.state if conn else ConnectionState.DISCONNECTED

    def names(self) -> List[str]:
        return sorted(self._connections)

    def get(self, name: str) -> Connection:
        conn = self._connections.get(name)
        if conn is None or conn.state != ConnectionState.READY:
            state = conn.state.value if conn else ConnectionState.DISCONNECTED.value
            raise ToolConnectionError(
                f"server '{name}' is not ready ({state}); use mcp_connect first",
                kind=ToolConnectionError.NOT_READY,
                connection=name,
            )
        return conn

    async def connect(self, name: str, launch_spec: str) -> Connection:
        lock = self._connect_locks.setdefault(name, asyncio.Lock())
        async with lock:
            existing = self._connections.get(name)
            if existing is not None and existing.state in (ConnectionState.READY, ConnectionState.CONNECTING):
                raise ToolConnectionError(f"server '{name}' is already connected", connection=name)
            conn = Connection(name=name, launch_spec=launch_spec, state=ConnectionState.CONNECTING)
            self._connections[name] = conn
            logger.info("[mcp] connecting '{}': {}", name, launch_spec)
            try:
                conn.transport = self.transport_factory(name, launch_spec)
                await asyncio.wait_for(self._handshake(conn), timeout=self.connect_timeout_s)
            except asyncio.TimeoutError:
                await self._fail(conn, "timed out connecting")
                raise ToolConnectionError(
                    f"timed out connecting to '{name}'", kind=ToolConnectionError.TIMEOUT, connection=name
                ) from None
            except asyncio.CancelledError:
                # a sibling branch failed or the run was cancelled mid-handshake
                await asyncio.shield(self._fail(conn, "cancelled while connecting"))
                raise
            except ToolConnectionError as e:
                await self._fail(conn, str(e))
                raise
            except Exception as e:
                await self._fail(conn, str(e))
                raise ToolConnectionError(f"failed to connect '{name}': {e}", connection=name) from e
            conn.state = ConnectionState.READY
            logger.info("[mcp] '{}' ready with {} tool(s)", name, len(conn.tools))
            return conn

    async def _handshake(self, conn: Connection) -> None:
        await conn.transport.start()
        conn.tools = list(await conn.transport.list_tools())

    async def _fail(self, conn: Connection, reason: str) -> None:
        conn.state = ConnectionState.FAILED
        conn.error = reason
        logger.warning("[mcp] '{}' failed: {}", conn.name, reason)
        if conn.transport is not None:
            try:
                await conn.transport.close()
            except Exception as e:  # pragma: no cover - best-effort teardown
                logger.debug("[mcp] '{}' close after failure raised {}", conn.name, e)

    async def call(self, name: str, tool: str, json_args: Union[str, Dict[str, Any], None] = None) -> str:
        conn = self.get(name)
        arguments = parse_tool_args(json_args)
        if conn.multiplexed:
            return await self._call(conn, tool, arguments)
        async with conn.lock:
            return await self._call(conn, tool, arguments)

    async def _call(self, conn: Connection, tool: str, arguments: Dict[str, Any]) -> str:
        if conn.state != ConnectionState.READY:
            raise ToolConnectionError(
                f"server '{conn.name}' is not ready ({conn.state.value})",
                kind=ToolConnectionError.NOT_READY,
                connection=conn.name,
            )
        try:
            raw = await asyncio.wait_for(conn.transport.call_tool(tool, arguments), timeout=self.call_timeout_s)
        except asyncio.TimeoutError:
            raise ToolConnectionError(
                f"call to '{conn.name}:{tool}' timed out after {self.call_timeout_s}s",
                kind=ToolConnectionError.TIMEOUT,
                connection=conn.name,
            ) from None
        except ToolConnectionError:
            if not conn.transport.alive:
                conn.state = ConnectionState.FAILED
            raise
        if isinstance(raw, dict) and raw.get("isError"):
            raise HandlerError(f"tool '{tool}' reported an error: {ToolCallResult.model_validate(raw).text()}")
        return tool_result_text(raw)

    async def list_tools(self, name: str) -> List[MCPTool]:
        return list(self.get(name).tools)

    async def close(self, name: str) -> None:
        conn = self._connections.get(name)
        if conn is None or conn.state in (ConnectionState.CLOSED, ConnectionState.FAILED):
            raise ToolConnectionError(f"server '{name}' is not connected", kind=ToolConnectionError.NOT_READY, connection=name)
        async with conn.lock:
            await conn.transport.close()
            conn.state = ConnectionState.CLOSED
        logger.info("[mcp] '{}' closed", name)

    async def close_all(self) -> None:
        for name, conn in list(self._connections.items()):
            if conn.state == ConnectionState.READY:
                try:
                    await conn.transport.close()
                except Exception as e:
                    logger.warning("[mcp] error closing '{}': {}", name, e)
                conn.state = ConnectionState.CLOSED
            elif conn.state == ConnectionState.CONNECTING:
                await self._fail(conn, "run ended while connecting")
