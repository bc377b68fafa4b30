from __future__ import annotations
from pathlib import Path
from typing import Iterable, List, Optional, Union

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedInput

from .ast import TaskGraph
from .errors import (
    MalformedArgumentError,
    MissingPipeTargetError,
    ParseError,
    UnterminatedBlockError,
)

GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")

_parser = None


def _load_parser() -> Lark:
    global _parser
    if _parser is None:
        grammar = GRAMMAR_PATH.read_text(encoding="utf-8")
        # basic lexer so the token stream is available for error classification
        _parser = Lark(grammar, start="start", parser="lalr", lexer="basic")
    return _parser


def _read_source(source: Union[str, Path]) -> str:
    if isinstance(source, Path):
        return source.read_text(encoding="utf-8")
    return str(source)


def parse(source: Union[str, Path]) -> Tree:
    """Tokenize and parse script text into a lark tree.

    Syntax failures are raised as the matching ``ParseError`` subtype.
    """
    text = _read_source(source)
    parser = _load_parser()
    try:
        tokens = list(parser.lex(text))
    except UnexpectedCharacters as e:
        raise _character_error(e) from e
    try:
        return parser.parse(text)
    except UnexpectedInput as e:
        raise _classify(e, tokens) from e


def parse_script(
    source: Union[str, Path],
    strict: bool = False,
    known_commands: Optional[Iterable[str]] = None,
) -> TaskGraph:
    """Parse, analyze, lower and validate a script in one pass.

    Either a complete TaskGraph is returned or an error is raised; no partial
    graph ever leaves this function.
    """
    from .graph_engine import validate
    from .lowering import Lowering
    from .semantic import SemanticAnalyzer

    text = _read_source(source)
    tree = parse(text)
    SemanticAnalyzer(tree, known_commands=set(known_commands or ()) if strict else None).analyze()
    graph = Lowering(tree, source=text).lower()
    validate(graph)
    return graph


# ---------- Error classification ----------

def _character_error(e: UnexpectedCharacters) -> ParseError:
    if e.char == '"':
        return MalformedArgumentError("unterminated quoted argument", e.line, e.column)
    if e.char == "'":
        return MalformedArgumentError("arguments must be quoted with double quotes", e.line, e.column)
    return ParseError(f"unexpected character {e.char!r}", e.line, e.column)


def _open_braces(tokens: List[Token]) -> List[Token]:
    stack: List[Token] = []
    for tok in tokens:
        if tok.type == "_LBRACE":
            stack.append(tok)
        elif tok.type == "_RBRACE" and stack:
            stack.pop()
    return stack


def _classify(e: UnexpectedInput, tokens: List[Token]) -> ParseError:
    token = getattr(e, "token", None)
    at_end = isinstance(e, UnexpectedEOF) or (token is not None and token.type == "$END")

    if at_end:
        if tokens and tokens[-1].type == "_ARROW":
            last = tokens[-1]
            return MissingPipeTargetError("'->' has no right-hand side", last.line, last.column)
        if tokens and tokens[-1].type == "PARALLEL":
            last = tokens[-1]
            return UnterminatedBlockError("'parallel' is missing its '{ ... }' block", last.line, last.column)
        open_ = _open_braces(tokens)
        if open_:
            return UnterminatedBlockError("parallel block is never closed", open_[-1].line, open_[-1].column)
        return ParseError("unexpected end of script")

    idx = next((i for i, t in enumerate(tokens) if t.start_pos == token.start_pos), None)
    prev = tokens[idx - 1] if idx else None
    line, column = token.line, token.column

    if prev is not None and prev.type == "_ARROW" and token.type in ("_ARROW", "_RBRACE", "_LBRACE"):
        return MissingPipeTargetError("'->' has no right-hand side", prev.line, prev.column)
    if prev is not None and prev.type == "PARALLEL":
        return ParseError("expected '{' after 'parallel'", line, column)
    if token.type == "STRING":
        return MalformedArgumentError("quoted argument is not attached to a command", line, column)
    if token.type == "_RBRACE" and idx is not None and not _open_braces(tokens[:idx]):
        return ParseError("unmatched '}'", line, column)
    if token.type == "_LBRACE":
        return ParseError("'{' is only valid after 'parallel'", line, column)
    if token.type == "_ARROW":
        return MissingPipeTargetError("'->' has no left-hand side", line, column)
    return ParseError(f"unexpected {token.value!r}", line, column)
