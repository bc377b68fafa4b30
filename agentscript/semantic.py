from __future__ import annotations
from typing import List, Optional, Set

from lark import Token, Tree

from .errors import DanglingMergeError, EmptyParallelError, ParseError, UnknownCommandError
from .lowering import unquote
from .merge import MERGE_MODES


def _first_token(node: Tree) -> Optional[Token]:
    for ch in node.children:
        if isinstance(ch, Token):
            return ch
    return None


class SemanticAnalyzer:
    """Walks the lark parse tree and checks what the grammar cannot express:
    - parallel blocks contain at least one pipeline
    - merge only closes a directly preceding parallel block
    - merge modes are known
    - (strict mode) every command name is a known command
    """

    def __init__(self, tree: Tree, known_commands: Optional[Set[str]] = None):
        self.tree = tree
        self.known_commands = {c.lower() for c in known_commands} if known_commands is not None else None
        self.command_names: List[str] = []

    def analyze(self) -> None:
        for node in self.tree.find_data("parallel"):
            if not any(isinstance(ch, Tree) and ch.data == "pipeline" for ch in node.children):
                kw = _first_token(node)
                raise EmptyParallelError(
                    "parallel block has no branches",
                    kw.line if kw else None,
                    kw.column if kw else None,
                )

        for pipeline in self.tree.find_data("pipeline"):
            stages = [ch for ch in pipeline.children if isinstance(ch, Tree)]
            for i, stage in enumerate(stages):
                if stage.data != "merge":
                    continue
                kw = _first_token(stage)
                if i == 0 or stages[i - 1].data != "parallel":
                    raise DanglingMergeError("merge has no parallel block to close", kw.line, kw.column)
                mode = self._merge_mode(stage)
                if mode not in MERGE_MODES:
                    raise ParseError(
                        f"unknown merge mode '{mode}' (expected one of {sorted(MERGE_MODES)})",
                        kw.line,
                        kw.column,
                    )

        for cmd in self.tree.find_data("command"):
            name_tok = cmd.children[0]
            name = str(name_tok).lower()
            self.command_names.append(name)
            if self.known_commands is not None and name not in self.known_commands:
                raise UnknownCommandError(
                    f"unknown command '{name}' (line {name_tok.line}, column {name_tok.column})",
                    command=name,
                )

        if not self.command_names:
            raise ParseError("script contains no commands")

    @staticmethod
    def _merge_mode(stage: Tree) -> str:
        for ch in stage.children:
            if isinstance(ch, Token) and ch.type == "STRING":
                return unquote(ch.value).strip().lower()
        return "concat"
