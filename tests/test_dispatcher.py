import asyncio

import pytest

from agentscript.dispatcher import CommandRegistry, FunctionHandler, dispatch
from agentscript.errors import DispatchError, HandlerError, ToolConnectionError, UnknownCommandError
from agentscript.parser import parse_script
from agentscript.types import CommandResult, ExecutionContext, ValueTag


def run_dispatch(registry, name, args=(), ctx=None):
    return asyncio.run(dispatch(registry, name, args, ctx or ExecutionContext()))


@pytest.fixture
def registry():
    reg = CommandRegistry()

    @reg.command("upper", min_args=0, max_args=1)
    def upper(args, ctx):
        return (args[0] if args else ctx.input_text).upper()

    @reg.command("fetch")
    async def fetch(args, ctx):
        await asyncio.sleep(0)
        return {"items": list(args)}

    return reg


class TestRegistry:
    def test_names_are_case_insensitive(self, registry):
        assert "UPPER" in registry
        assert isinstance(registry.resolve("Upper"), FunctionHandler)
        assert registry.names() == {"upper", "fetch"}

    def test_unknown_command(self, registry):
        with pytest.raises(UnknownCommandError) as exc:
            registry.resolve("nope")
        assert exc.value.command == "nope"

    def test_duplicate_registration(self, registry):
        with pytest.raises(DispatchError, match="already registered"):
            registry.register("upper", FunctionHandler(lambda a, c: "", "upper"))
        registry.register("upper", FunctionHandler(lambda a, c: "x", "upper"), replace=True)
        assert run_dispatch(registry, "upper").text == "x"

    def test_handler_must_have_invoke(self, registry):
        with pytest.raises(DispatchError, match="no invoke"):
            registry.register("bad", object())

    def test_frozen_registry(self, registry):
        registry.freeze()
        with pytest.raises(DispatchError, match="frozen"):
            registry.register("late", FunctionHandler(lambda a, c: "", "late"))
        thawed = registry.copy()
        assert not thawed.frozen
        thawed.register("late", FunctionHandler(lambda a, c: "", "late"))
        assert "late" not in registry

    def test_check_graph(self, registry):
        registry.check(parse_script('upper "x" -> fetch'))
        graph = parse_script('upper -> missing')
        with pytest.raises(UnknownCommandError) as exc:
            registry.check(graph)
        assert exc.value.node_id == graph.commands()[1].node_id


class TestDispatch:
    def test_sync_handler(self, registry):
        result = run_dispatch(registry, "upper", ("abc",))
        assert result.text == "ABC"
        assert result.tag == ValueTag.Text

    def test_sync_handler_reads_input(self, registry):
        ctx = ExecutionContext(value=CommandResult(text="from before"))
        assert run_dispatch(registry, "upper", (), ctx).text == "FROM BEFORE"

    def test_async_handler_with_data(self, registry):
        result = run_dispatch(registry, "fetch", ("a", "b"))
        assert result.data == {"items": ["a", "b"]}
        assert result.tag == ValueTag.Data

    def test_arity(self, registry):
        with pytest.raises(DispatchError, match=r"'upper' takes 0-1 argument\(s\), got 2"):
            run_dispatch(registry, "upper", ("a", "b"))

    def test_exact_arity_message(self):
        reg = CommandRegistry()
        reg.command("pair", min_args=2, max_args=2)(lambda a, c: "")
        with pytest.raises(DispatchError, match="takes 2 argument"):
            run_dispatch(reg, "pair", ("a",))

    def test_exceptions_become_handler_errors(self):
        reg = CommandRegistry()

        @reg.command("boom")
        def boom(args, ctx):
            raise KeyError("missing")

        with pytest.raises(HandlerError) as exc:
            run_dispatch(reg, "boom")
        assert exc.value.command == "boom"
        assert isinstance(exc.value.__cause__, KeyError)

    def test_engine_errors_pass_through(self):
        reg = CommandRegistry()

        @reg.command("offline")
        async def offline(args, ctx):
            raise ToolConnectionError("down", kind=ToolConnectionError.NOT_READY)

        with pytest.raises(ToolConnectionError) as exc:
            run_dispatch(reg, "offline")
        assert exc.value.kind == ToolConnectionError.NOT_READY

    def test_failure_result(self):
        reg = CommandRegistry()
        reg.command("nope")(lambda a, c: CommandResult.failure("auth", "bad key"))
        with pytest.raises(HandlerError, match="bad key"):
            run_dispatch(reg, "nope")

    def test_none_is_empty(self):
        reg = CommandRegistry()
        reg.command("quiet")(lambda a, c: None)
        assert run_dispatch(reg, "quiet").tag == ValueTag.Empty

    def test_class_handler(self):
        class Greeter:
            async def invoke(self, args, context):
                return f"hello {args[0]}"

        reg = CommandRegistry()
        reg.register("greet", Greeter())
        assert run_dispatch(reg, "greet", ("world",)).text == "hello world"
