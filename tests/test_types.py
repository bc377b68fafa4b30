import asyncio

import pytest
from pydantic import ValidationError

from agentscript.merge import MERGE_MODES, aggregate, concat, join, labeled
from agentscript.types import BranchResults, CommandResult, ExecutionContext, ValueTag


def branches(*texts, labels=()):
    return BranchResults(results=tuple(CommandResult(text=t) for t in texts), labels=labels)


class TestCommandResult:
    def test_coerce(self):
        assert CommandResult.coerce("hi").text == "hi"
        assert CommandResult.coerce(b"bytes").text == "bytes"
        assert CommandResult.coerce(None).tag == ValueTag.Empty
        assert CommandResult.coerce([1, 2]).data == [1, 2]
        same = CommandResult(text="x")
        assert CommandResult.coerce(same) is same

    def test_tags(self):
        assert CommandResult(text="x").tag == ValueTag.Text
        assert CommandResult(data={"a": 1}).tag == ValueTag.Data
        assert CommandResult().tag == ValueTag.Empty
        assert CommandResult.failure("io", "gone").tag == ValueTag.Failure

    def test_as_text(self):
        assert CommandResult(text="t", data=[1]).as_text() == "t"
        assert CommandResult(data="raw").as_text() == "raw"
        assert CommandResult(data={"a": 1}).as_text() == '{\n  "a": 1\n}'

    def test_immutable(self):
        result = CommandResult(text="x")
        with pytest.raises(ValidationError):
            result.text = "y"


class TestMerge:
    def test_concat(self):
        assert concat(branches("a", "b")).text == "=== Branch 1 ===\na\n\n=== Branch 2 ===\nb"

    def test_join(self):
        merged = join(branches("a", "b"))
        assert merged.text == "a\n\nb"
        assert merged.meta == {"merge": "join", "branches": 2}

    def test_labeled_falls_back_to_position(self):
        merged = labeled(branches("a", "b", labels=("first",)))
        assert [item["label"] for item in merged.data] == ["first", "branch2"]

    def test_no_branch_is_dropped(self):
        # empty outputs still occupy their slot
        merged = aggregate(branches("", "b", ""), "labeled")
        assert [item["text"] for item in merged.data] == ["", "b", ""]

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="Unknown merge mode"):
            aggregate(branches("a"), "zip")

    def test_modes(self):
        assert sorted(MERGE_MODES) == ["concat", "join", "labeled"]


class TestExecutionContext:
    def test_fork_isolates_value_and_env(self):
        shared = object()
        ctx = ExecutionContext(value=CommandResult(text="x", data={"k": [1]}), connections=shared, env={"A": "1"})
        child = ctx.fork(2)
        child.env["A"] = "2"
        child.value.data["k"].append(2)
        assert ctx.env == {"A": "1"}
        assert ctx.value.data == {"k": [1]}
        assert child.connections is shared
        assert child.branch_path == (2,)
        assert child.fork(1).branch_path == (2, 1)

    def test_fork_isolates_branch_results(self):
        value = BranchResults(
            (CommandResult(text="a", data={"k": "orig"}), CommandResult(text="b", data={"k": "two"})),
            ("first", "second"),
        )
        ctx = ExecutionContext(value=value)
        child = ctx.fork(1)
        child.value.results[0].data["k"] = "MUTATED"
        assert ctx.value.results[0].data == {"k": "orig"}
        assert child.value.labels == ("first", "second")
        assert child.value.results[1].text == "b"

    def test_input_views(self):
        ctx = ExecutionContext(value=branches("a", "b"))
        assert ctx.input_data == ["a", "b"]
        assert ctx.input_text.startswith("=== Branch 1 ===")
        assert ExecutionContext().input_text == ""
        assert ExecutionContext().input_data is None

    def test_cancelled(self):
        async def check():
            event = asyncio.Event()
            ctx = ExecutionContext(cancel_event=event)
            assert not ctx.cancelled
            event.set()
            assert ctx.cancelled

        asyncio.run(check())
