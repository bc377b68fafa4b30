from typing import Optional


class AgentScriptError(Exception):
    pass


class ConfigError(AgentScriptError):
    pass


# ---------- Pre-execution ----------

class ParseError(AgentScriptError):
    """Raised when script text cannot be turned into a task graph."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        self.line = line
        self.column = column
        if line is not None:
            message = f"{message} (line {line}, column {column})"
        super().__init__(message)


class UnterminatedBlockError(ParseError):
    pass


class MissingPipeTargetError(ParseError):
    pass


class EmptyParallelError(ParseError):
    pass


class MalformedArgumentError(ParseError):
    pass


class DanglingMergeError(ParseError):
    pass


class GraphError(AgentScriptError):
    """Structural invariant violation that survived parsing."""
    pass


# ---------- Execution ----------

class PipelineError(AgentScriptError):
    """Base for failures raised while a run is executing.

    The scheduler fills in ``node_id`` and ``command`` for the node that
    failed before the error leaves the run.
    """

    def __init__(self, message: str, node_id: Optional[str] = None, command: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id
        self.command = command

    def __str__(self) -> str:
        base = super().__str__()
        if self.command and self.node_id:
            return f"{self.command} [{self.node_id}] failed: {base}"
        return base


class DispatchError(PipelineError):
    pass


class UnknownCommandError(DispatchError):
    pass


class HandlerError(PipelineError):
    """Opaque wrapper around a command handler's failure."""
    pass


class ToolConnectionError(PipelineError):
    NOT_READY = "not_ready"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"

    def __init__(self, message: str, kind: str = TRANSPORT, connection: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.connection = connection


class CommandTimeoutError(PipelineError):
    pass


class RunCancelledError(PipelineError):
    pass


# ---------- Bridges ----------

class ProviderError(AgentScriptError):
    """A generative provider is unavailable or failed."""
    pass


class TranslationError(AgentScriptError):
    """Translator output could not be produced or did not parse."""

    def __init__(self, message: str, text: Optional[str] = None):
        super().__init__(message)
        self.text = text
