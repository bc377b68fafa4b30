"""
Natural language → task graph bridge.

A generative model is asked for a CSP-style process description of the
request; the description is parsed with ``process.lark`` and lowered onto the
same node types the script parser produces. Output that does not parse or
does not validate never reaches the runtime.

Mapping:
    a ||| b          parallel group with branches a and b
    p ; q, e -> p    sequential pipe
    merge!"mode"     merge closing the preceding parallel group
    cmd!"x"!"y"      command with arguments "x", "y"
    SKIP, STOP       termination, contributes no node
    P                the body of process P, inlined
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedInput
from loguru import logger

from .ai_providers import TextGenerator, select_provider
from .ast import Command, Node, ParallelGroup, TaskGraph
from .errors import GraphError, ProviderError, TranslationError
from .lowering import IdAllocator, close_group, fold_stages, unquote

PROCESS_GRAMMAR_PATH = Path(__file__).with_name("process.lark")

DEFAULT_COMMANDS = ("search", "summarize", "ask", "analyze", "read", "save", "list", "echo", "mcp_connect", "mcp", "mcp_list", "mcp_close")

SYSTEM_PROMPT = """You translate natural-language requests into a CSP-style process description.

Notation:
- An event is a command name, optionally followed by arguments: search!"topic"
- e -> P runs event e, then process P
- P ; Q runs P, then Q, feeding P's output to Q
- P ||| Q runs P and Q in parallel
- merge combines the results of the preceding parallel composition;
  merge!"labeled" or merge!"join" select another combination style
- SKIP ends a process successfully
- Define the entry process as MAIN; other named processes may be referenced from it
- Lines starting with -- are comments

Available commands: {commands}

Rules:
1. Output ONLY the process description, no explanation
2. Use double quotes for every argument
3. Keep it simple - minimum commands needed
4. Use ||| when several independent things are needed, then merge

Examples:
- "search golang and summarize" ->
  MAIN = search!"golang" -> summarize -> SKIP
- "compare AWS and GCP" ->
  MAIN = (search!"AWS strengths" -> analyze -> SKIP ||| search!"GCP strengths" -> analyze -> SKIP) ; merge -> ask!"compare" -> SKIP
- "read notes.md and save a summary" ->
  MAIN = read!"notes.md" -> summarize -> save!"summary.md" -> SKIP
"""

_FENCE_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n?|\n?```\s*$")

_process_parser = None


def _load_parser() -> Lark:
    global _process_parser
    if _process_parser is None:
        grammar = PROCESS_GRAMMAR_PATH.read_text(encoding="utf-8")
        _process_parser = Lark(grammar, start="start", parser="lalr", lexer="basic")
    return _process_parser


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE_RE.sub("", text.strip()).strip()


class ProcessLowering:
    """Lowers a parsed process description to task graph nodes."""

    def __init__(self, tree: Tree, source: str = ""):
        self.tree = tree
        self.source = source
        self.ids = IdAllocator()
        self.defs: Dict[str, Tree] = {}
        self.channels: Set[str] = set()
        self._stack: List[str] = []

    def lower(self) -> TaskGraph:
        entry: Optional[Tree] = None
        for ch in self.tree.children:
            match ch.data:
                case "channel_decl":
                    self.channels.update(str(t) for t in ch.children[1:])
                case "process_def":
                    name = str(ch.children[0])
                    if name in self.defs:
                        raise TranslationError(f"process '{name}' is defined twice", text=self.source)
                    self.defs[name] = ch.children[1]
                case "seq":
                    entry = ch
        if entry is None:
            if not self.defs:
                raise TranslationError("process description defines no process", text=self.source)
            entry_name = "MAIN" if "MAIN" in self.defs else list(self.defs)[-1]
            self._stack.append(entry_name)
            entry = self.defs[entry_name]
        stages: List[Node] = []
        self._collect(entry, stages)
        if not stages:
            raise TranslationError("process description contains no commands", text=self.source)
        pipeline = fold_stages(stages, self.ids, in_branch=False)
        return TaskGraph(pipelines=(pipeline,), source=self.source)

    def _collect(self, node: Tree, out: List[Node]) -> None:
        match node.data:
            case "seq":
                for par in node.children:
                    self._collect(par, out)
            case "par":
                if len(node.children) == 1:
                    self._collect(node.children[0], out)
                    return
                self._parallel(node, out)
            case "prefix":
                *events, terminal = node.children
                for ev in events:
                    self._event(ev, out)
                self._terminal(terminal, out)
            case _:
                raise TranslationError(f"unexpected construct '{node.data}'", text=self.source)

    def _parallel(self, node: Tree, out: List[Node]) -> None:
        branches = []
        for prefix in node.children:
            sub: List[Node] = []
            self._collect(prefix, sub)
            if sub:
                branches.append(fold_stages(sub, self.ids, in_branch=True))
        if not branches:
            return
        if len(branches) == 1:
            out.append(branches[0])
            return
        first = node.children[0]
        line, column = _position(first)
        out.append(ParallelGroup(branches=tuple(branches), node_id=self.ids.next(), line=line, column=column))

    def _terminal(self, terminal, out: List[Node]) -> None:
        if isinstance(terminal, Token):
            # SKIP / STOP end the process without producing a node
            return
        if terminal.data == "seq":
            self._collect(terminal, out)
            return
        name = str(terminal.children[0])
        payloads = [t for t in terminal.children[1:] if isinstance(t, Token)]
        if name in self.defs and not payloads:
            self._inline(name, out)
        else:
            self._event(terminal, out)

    def _inline(self, name: str, out: List[Node]) -> None:
        if name in self._stack:
            chain = " -> ".join(self._stack + [name])
            raise TranslationError(f"recursive process reference: {chain}", text=self.source)
        self._stack.append(name)
        try:
            self._collect(self.defs[name], out)
        finally:
            self._stack.pop()

    def _event(self, ev: Tree, out: List[Node]) -> None:
        name_tok = ev.children[0]
        name = str(name_tok).lower()
        args = tuple(unquote(t.value) for t in ev.children[1:] if isinstance(t, Token))
        if name == "merge":
            if not out or not isinstance(out[-1], ParallelGroup):
                raise TranslationError("merge does not follow a parallel composition", text=self.source)
            mode = args[0].strip().lower() if args else "concat"
            self._check_mode(mode)
            out.append(close_group(out[-1], self.ids, mode=mode, explicit=True, pos=(name_tok.line, name_tok.column)))
            return
        if self.channels and str(name_tok) not in self.channels:
            logger.debug("event '{}' is not a declared channel", name_tok)
        out.append(Command(name=name, args=args, node_id=self.ids.next(), line=name_tok.line, column=name_tok.column))

    def _check_mode(self, mode: str) -> None:
        from .merge import MERGE_MODES
        if mode not in MERGE_MODES:
            raise TranslationError(f"unknown merge mode '{mode}'", text=self.source)


def _position(node) -> tuple:
    if isinstance(node, Token):
        return node.line, node.column
    for tok in node.scan_values(lambda v: isinstance(v, Token)):
        return tok.line, tok.column
    return 0, 0


def parse_process(text: str) -> TaskGraph:
    """Parse process notation into a validated TaskGraph.

    Raises TranslationError for anything that does not parse or validate.
    """
    from .graph_engine import validate

    try:
        tree = _load_parser().parse(text)
    except UnexpectedInput as e:
        raise TranslationError(f"invalid process notation at line {e.line}, column {e.column}", text=text) from e
    graph = ProcessLowering(tree, source=text).lower()
    try:
        validate(graph)
    except GraphError as e:
        raise TranslationError(f"translated graph is invalid: {e}", text=text) from e
    return graph


def render_script(graph: TaskGraph) -> str:
    """Equivalent AgentScript text for a graph."""
    return graph.to_script()


@dataclass(frozen=True)
class Translation:
    intent: str
    text: str
    graph: TaskGraph

    @property
    def script(self) -> str:
        return render_script(self.graph)


class Translator:
    def __init__(self, generator: Optional[TextGenerator] = None, commands: Optional[Iterable[str]] = None,
                 provider: Optional[str] = None):
        self.generator = generator
        self.provider = provider
        self.commands = sorted(commands) if commands is not None else list(DEFAULT_COMMANDS)

    def _generator(self) -> TextGenerator:
        if self.generator is None:
            self.generator = select_provider(self.provider)
        if self.generator is None:
            raise TranslationError("no AI provider configured for translation")
        return self.generator

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(commands=", ".join(self.commands))

    def translate(self, intent: str) -> Translation:
        if not intent.strip():
            raise TranslationError("nothing to translate")
        generator = self._generator()
        prompt = f"Convert this to a process description:\n{intent.strip()}"
        try:
            raw = generator.generate(prompt, system=self.system_prompt())
        except ProviderError as e:
            raise TranslationError(f"translation failed: {e}") from e
        except Exception as e:
            raise TranslationError(f"translation failed: {type(e).__name__}: {e}") from e
        text = strip_fences(raw or "")
        if not text:
            raise TranslationError("translator returned no output", text=raw)
        graph = parse_process(text)
        logger.debug("translated {!r} into {} command(s)", intent, len(graph.commands()))
        return Translation(intent=intent, text=text, graph=graph)

    def translate_safe(self, intent: str) -> Optional[Translation]:
        try:
            return self.translate(intent)
        except TranslationError as e:
            logger.warning("translation of {!r} failed: {}", intent, e)
            return None
