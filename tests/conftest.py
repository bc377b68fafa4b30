"""
Test configuration and fixtures for the AgentScript test suite.
"""
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from agentscript.dispatcher import CommandRegistry
from agentscript.errors import ToolConnectionError
from agentscript.schemas import MCPTool


PROVIDER_ENV = [
    "AGENTSCRIPT_AI_PROVIDER",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "MISTRAL_API_KEY",
    "COHERE_API_KEY",
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_DEPLOYMENT",
    "OPENROUTER_API_KEY",
    "OLLAMA_HOST",
    "SERPAPI_API_KEY",
    "SEARCH_API_KEY",
]


class RecordingHandler:
    """Async handler that records its calls and appends its name to the input."""

    def __init__(self, name: str, calls: List[Tuple[str, Tuple[str, ...], str]], finished: List[str],
                 delay: float = 0.0, fail: bool = False):
        self.name = name
        self.calls = calls
        self.finished = finished
        self.delay = delay
        self.fail = fail

    async def invoke(self, args, context):
        self.calls.append((self.name, tuple(args), context.input_text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")
        self.finished.append(self.name)
        if context.input_text:
            return f"{context.input_text}|{self.name}"
        return self.name


class Recorder:
    def __init__(self):
        self.calls: List[Tuple[str, Tuple[str, ...], str]] = []
        self.finished: List[str] = []

    @property
    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def inputs(self, name: str) -> List[str]:
        return [c[2] for c in self.calls if c[0] == name]


@pytest.fixture
def make_registry():
    """Build a registry of recording commands: make_registry(delays={...}, fail={...})."""
    def factory(names: Iterable[str] = ("a", "b", "c", "d", "e"),
                delays: Optional[Dict[str, float]] = None,
                fail: Iterable[str] = ()) -> Tuple[CommandRegistry, Recorder]:
        delays = delays or {}
        fail = set(fail)
        rec = Recorder()
        registry = CommandRegistry()
        for name in names:
            registry.register(name, RecordingHandler(name, rec.calls, rec.finished, delays.get(name, 0.0), name in fail))
        return registry, rec
    return factory


class FakeGenerator:
    """TextGenerator returning canned replies and remembering prompts."""

    def __init__(self, reply="generated", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[Tuple[str, Optional[str]]] = []

    def generate(self, prompt: str, system: Optional[str] = None) -> str:
        self.prompts.append((prompt, system))
        if self.error is not None:
            raise self.error
        if callable(self.reply):
            return self.reply(prompt)
        return self.reply


@pytest.fixture
def fake_generator():
    return FakeGenerator()


class FakeTransport:
    """In-memory tool server; call_tool echoes the tool name and arguments."""

    def __init__(self, name: str, launch_spec: str, tools=("echo",), delay: float = 0.0,
                 fail_start: bool = False, multiplexed: bool = False, result=None,
                 start_delay: float = 0.0):
        self.name = name
        self.launch_spec = launch_spec
        self.tools = tools
        self.delay = delay
        self.fail_start = fail_start
        self.multiplexed = multiplexed
        self.result = result
        self.start_delay = start_delay
        self.started = False
        self.closed = False
        self.active = 0
        self.max_active = 0
        self.calls: List[Tuple[str, dict]] = []

    @property
    def alive(self) -> bool:
        return self.started and not self.closed

    async def start(self) -> None:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_start:
            raise ToolConnectionError("server refused to start", connection=self.name)
        self.started = True

    async def list_tools(self):
        return [MCPTool(name=t, description=f"{t} tool") for t in self.tools]

    async def call_tool(self, tool: str, arguments: dict):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.calls.append((tool, arguments))
        finally:
            self.active -= 1
        if self.result is not None:
            return self.result
        return {"content": [{"type": "text", "text": f"{tool}:{json.dumps(arguments, sort_keys=True)}"}]}

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def transports():
    """Transport factory that keeps every FakeTransport it creates, keyed by name."""
    created: Dict[str, FakeTransport] = {}

    class Factory:
        options: dict = {}

        def __call__(self, name: str, launch_spec: str) -> FakeTransport:
            t = FakeTransport(name, launch_spec, **self.options)
            created[name] = t
            return t

        @property
        def created(self) -> Dict[str, FakeTransport]:
            return created

    return Factory()


@pytest.fixture
def no_provider_env(monkeypatch):
    """Remove every provider credential from the environment."""
    for key in PROVIDER_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(scope="session")
def test_data_dir() -> Path:
    """Return the path to the test data directory."""
    return Path(__file__).parent / "data"
