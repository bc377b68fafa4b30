from .ast import Command, Merge, ParallelGroup, Pipe, TaskGraph
from .config import EngineConfig
from .dispatcher import CommandRegistry
from .errors import (
    AgentScriptError,
    CommandTimeoutError,
    DispatchError,
    GraphError,
    HandlerError,
    ParseError,
    PipelineError,
    RunCancelledError,
    ToolConnectionError,
    TranslationError,
    UnknownCommandError,
)
from .parser import parse_script
from .runtime import RunResult, Runtime
from .translator import Translator, parse_process, render_script
from .types import BranchResults, CommandResult, ExecutionContext

__version__ = "0.1.0"
