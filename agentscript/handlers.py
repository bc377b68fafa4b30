"""
Built-in commands.

File commands work relative to the run's working directory, LLM commands go
through a TextGenerator (selected lazily from the configured providers) and
are cached when a ResultCache is supplied, MCP commands talk to the run's
ConnectionManager.
"""

from __future__ import annotations
import json
import os
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

from .ai_providers import TextGenerator, select_provider
from .cache import TTL_LLM, TTL_SEARCH, ResultCache
from .config import EngineConfig
from .dispatcher import CommandRegistry
from .errors import ProviderError, ToolConnectionError
from .mcp import ConnectionState
from .types import CommandResult, ExecutionContext

try:
    import requests  # type: ignore
except Exception:  # pragma: no cover
    requests = None

SERPAPI_URL = "https://serpapi.com/search.json"


class LLM:
    """Lazily bound text generator plus optional result cache."""

    def __init__(self, generator: Optional[TextGenerator] = None, cache: Optional[ResultCache] = None, provider: Optional[str] = None):
        self.generator = generator
        self.cache = cache
        self.provider = provider
        self._lock = threading.Lock()

    def _bind(self) -> TextGenerator:
        with self._lock:
            if self.generator is None:
                self.generator = select_provider(self.provider)
            if self.generator is None:
                raise ProviderError("no AI provider configured; set an API key such as OPENAI_API_KEY or GEMINI_API_KEY")
            return self.generator

    def complete(self, namespace: str, prompt: str, ttl_s: int = TTL_LLM) -> str:
        generator = self._bind()
        if self.cache is None:
            return generator.generate(prompt)
        return self.cache.cached(namespace, prompt, lambda: generator.generate(prompt), ttl_s)


def _path(context: ExecutionContext, raw: str) -> Path:
    p = Path(raw).expanduser()
    return p if p.is_absolute() else Path(context.workdir) / p


def _arg(args: Sequence[str], i: int, default: str = "") -> str:
    return args[i] if len(args) > i else default


# ---------- search ----------

def _serpapi_search(query: str, api_key: str) -> str:
    if requests is None:
        raise ProviderError("requests is required for web search")
    r = requests.get(SERPAPI_URL, params={"q": query, "api_key": api_key}, timeout=30)
    r.raise_for_status()
    payload = r.json()
    snippets = []
    for item in (payload.get("organic_results") or [])[:5]:
        snippets.append(f"- {item.get('title')}\n  {item.get('snippet')}\n  {item.get('link')}")
    if not snippets:
        return json.dumps(payload, ensure_ascii=False)
    return "\n\n".join(snippets)


def default_registry(
    generator: Optional[TextGenerator] = None,
    cache: Optional[ResultCache] = None,
    config: Optional[EngineConfig] = None,
) -> CommandRegistry:
    if cache is None and config is not None and config.cache_enabled:
        cache = ResultCache(config.cache_dir, config.cache_ttl_s)
    llm = LLM(generator, cache, provider=config.ai_provider if config is not None else None)
    registry = CommandRegistry()

    # ─── Files ───
    @registry.command("read", "read a file", min_args=1, max_args=1)
    def read(args: Sequence[str], context: ExecutionContext) -> str:
        return _path(context, args[0]).read_text(encoding="utf-8")

    @registry.command("save", "write the current value to a file", min_args=1, max_args=1)
    def save(args: Sequence[str], context: ExecutionContext) -> str:
        target = _path(context, args[0])
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(context.input_text, encoding="utf-8")
        return str(target)

    @registry.command("list", "list a directory", max_args=1)
    def list_dir(args: Sequence[str], context: ExecutionContext) -> CommandResult:
        target = _path(context, _arg(args, 0, "."))
        entries = sorted(target.iterdir(), key=lambda p: p.name)
        lines = [f"{p.name}/" if p.is_dir() else p.name for p in entries]
        return CommandResult.success(text="\n".join(lines), data=[p.name for p in entries])

    # ─── LLM ───
    @registry.command("ask", "ask the model, with the current value as context", min_args=1, max_args=1)
    def ask(args: Sequence[str], context: ExecutionContext) -> str:
        prompt = args[0]
        if context.input_text:
            prompt = f"{args[0]}\n\nContext:\n{context.input_text}"
        return llm.complete("ask", prompt)

    @registry.command("summarize", "summarize the current value", max_args=1)
    def summarize(args: Sequence[str], context: ExecutionContext) -> str:
        return llm.complete("summarize", "Summarize the following content concisely:\n\n" + context.input_text)

    @registry.command("analyze", "analyze the current value", max_args=1)
    def analyze(args: Sequence[str], context: ExecutionContext) -> str:
        prompt = "Analyze the following"
        if _arg(args, 0):
            prompt += " focusing on " + args[0]
        prompt += ":\n\n" + context.input_text
        return llm.complete("analyze", prompt)

    @registry.command("search", "search the web (falls back to the model)", min_args=1, max_args=1)
    def search(args: Sequence[str], context: ExecutionContext) -> str:
        query = args[0]
        api_key = os.getenv("SERPAPI_API_KEY") or os.getenv("SEARCH_API_KEY")
        if not api_key:
            return llm.complete("search", "Please provide information about: " + query, TTL_SEARCH)
        if cache is None:
            return _serpapi_search(query, api_key)
        return cache.cached("search_web", query, lambda: _serpapi_search(query, api_key), TTL_SEARCH)

    # ─── MCP ───
    def _connections(context: ExecutionContext, name: str):
        if context.connections is None:
            raise ToolConnectionError("no connection manager for this run", kind=ToolConnectionError.NOT_READY, connection=name)
        return context.connections

    @registry.command("mcp_connect", "connect an MCP server: name, launch command", min_args=2, max_args=2)
    async def mcp_connect(args: Sequence[str], context: ExecutionContext) -> CommandResult:
        name, launch_spec = args[0].strip(), args[1].strip()
        conn = await _connections(context, name).connect(name, launch_spec)
        lines = [f"Connected to MCP server '{name}'", f"Available tools ({len(conn.tools)}):"]
        lines += [f"  - {t.name}: {t.description}" for t in conn.tools]
        return CommandResult.success(text="\n".join(lines), data=[t.name for t in conn.tools])

    @registry.command("mcp", "call a tool: \"server:tool\", JSON arguments", min_args=1, max_args=2)
    async def mcp_call(args: Sequence[str], context: ExecutionContext) -> str:
        server, sep, tool = args[0].partition(":")
        if not sep or not server.strip() or not tool.strip():
            raise ValueError('invalid mcp call format, use: mcp "server:tool" "{\\"arg\\": \\"value\\"}"')
        server = server.strip()
        return await _connections(context, server).call(server, tool.strip(), _arg(args, 1))

    @registry.command("mcp_list", "list connected servers or one server's tools", max_args=1)
    async def mcp_list(args: Sequence[str], context: ExecutionContext) -> str:
        name = _arg(args, 0).strip()
        manager = _connections(context, name)
        if not name:
            ready = [n for n in manager.names() if manager.state(n) == ConnectionState.READY]
            if not ready:
                return "No MCP servers connected. Use mcp_connect first."
            lines = ["Connected MCP servers:"]
            for n in ready:
                lines.append(f"  - {n} ({len(await manager.list_tools(n))} tools)")
            return "\n".join(lines)
        lines = [f"Tools for '{name}':"]
        for tool in await manager.list_tools(name):
            lines.append(f"\n{tool.name}\n  Description: {tool.description}")
            props: Any = tool.input_schema.get("properties") or {}
            if props:
                lines.append("  Parameters:")
                for pname, schema in props.items():
                    desc = schema.get("description", "") if isinstance(schema, dict) else ""
                    lines.append(f"    - {pname}: {desc}")
        return "\n".join(lines)

    @registry.command("mcp_close", "close an MCP server connection", min_args=1, max_args=1)
    async def mcp_close(args: Sequence[str], context: ExecutionContext) -> str:
        name = args[0].strip()
        await _connections(context, name).close(name)
        return f"Closed MCP server '{name}'"

    # ─── Misc ───
    @registry.command("echo", "return the argument, or pass the current value through", max_args=1)
    def echo(args: Sequence[str], context: ExecutionContext) -> Any:
        if args:
            return args[0]
        if isinstance(context.value, CommandResult):
            return context.value
        return context.input_text

    return registry
