#!/usr/bin/env python
import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger

from .config import EngineConfig
from .errors import AgentScriptError
from .graph_engine import to_dict
from .logs import configure_logging, configure_tracing
from .runtime import Runtime
from .translator import Translator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentscript",
        description="AgentScript - a pipeline language for commanding AI agents",
        epilog='example: agentscript -e \'search "golang" -> summarize -> save "notes.md"\'',
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("-e", "--execute", metavar="SCRIPT", help="Execute script text directly")
    source.add_argument("-f", "--file", metavar="FILE", help="Execute a script file")
    source.add_argument("-n", "--natural", metavar="TEXT", help="Translate a natural-language request, show the script, run it")
    parser.add_argument("words", nargs="*", help="Script text (same as -e)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--dry-run", action="store_true", help="Walk the graph without invoking any command")
    parser.add_argument("--strict", action="store_true", help="Reject unknown commands at parse time")
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="Per-command deadline")
    parser.add_argument("--check", action="store_true", help="Parse only and print the task graph")
    parser.add_argument("--trace", action="store_true", help="Print OpenTelemetry spans to stderr")
    return parser


def _script_source(args: argparse.Namespace):
    if args.file:
        path = Path(args.file)
        if not path.is_file():
            raise AgentScriptError(f"Could not find script file '{args.file}'")
        return path
    if args.execute:
        return args.execute
    if args.words:
        return " ".join(args.words)
    return None


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    if args.trace:
        configure_tracing()

    try:
        config = EngineConfig.from_env(
            strict=True if args.strict else None,
            dry_run=True if args.dry_run else None,
            command_timeout_s=args.timeout,
        )
        rt = Runtime(config=config)

        if args.natural:
            translation = Translator(commands=rt.registry.names(), provider=config.ai_provider).translate(args.natural)
            print(f"DSL: {translation.script}\n")
            graph = translation.graph
        else:
            source = _script_source(args)
            if source is None:
                parser.print_help()
                return 1
            graph = rt.load(source)

        if args.check:
            print(graph.to_script())
            print(json.dumps(to_dict(graph), indent=2))
            return 0

        result = rt.run(graph)
        logger.debug("metrics: {}", result.metrics)
        print(result.text)
        return 0
    except AgentScriptError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
