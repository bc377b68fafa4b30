import pytest

from agentscript import handlers
from agentscript.cache import ResultCache
from agentscript.config import EngineConfig
from agentscript.errors import DispatchError, HandlerError
from agentscript.handlers import LLM, default_registry
from agentscript.runtime import Runtime

from conftest import FakeGenerator


@pytest.fixture
def workdir(tmp_path, no_provider_env):
    return tmp_path


def runtime(workdir, generator=None, cache=None):
    config = EngineConfig(workdir=workdir, cache_ttl_s=0)
    return Runtime(default_registry(generator=generator, cache=cache, config=config), config=config)


class TestFiles:
    def test_read_relative_to_workdir(self, workdir):
        (workdir / "notes.md").write_text("hello notes", encoding="utf-8")
        assert runtime(workdir).run('read "notes.md"').text == "hello notes"

    def test_save_writes_input(self, workdir):
        result = runtime(workdir).run('echo "payload" -> save "out/result.txt"')
        target = workdir / "out" / "result.txt"
        assert target.read_text(encoding="utf-8") == "payload"
        assert result.text == str(target)

    def test_list(self, workdir):
        (workdir / "b.txt").write_text("", encoding="utf-8")
        (workdir / "a_dir").mkdir()
        result = runtime(workdir).run('list')
        assert result.text == "a_dir/\nb.txt"
        assert result.value.data == ["a_dir", "b.txt"]

    def test_missing_file(self, workdir):
        with pytest.raises(HandlerError, match="FileNotFoundError"):
            runtime(workdir).run('read "nope.txt"')

    def test_arity_is_checked(self, workdir):
        with pytest.raises(DispatchError):
            runtime(workdir).run('read')


class TestLLMCommands:
    def test_ask_with_context(self, workdir):
        gen = FakeGenerator("answer")
        result = runtime(workdir, gen).run('echo "some facts" -> ask "what now?"')
        assert result.text == "answer"
        assert gen.prompts[0][0] == "what now?\n\nContext:\nsome facts"

    def test_ask_without_context(self, workdir):
        gen = FakeGenerator()
        runtime(workdir, gen).run('ask "hello"')
        assert gen.prompts[0][0] == "hello"

    def test_summarize(self, workdir):
        gen = FakeGenerator("short")
        assert runtime(workdir, gen).run('echo "long text" -> summarize').text == "short"
        assert gen.prompts[0][0] == "Summarize the following content concisely:\n\nlong text"

    def test_analyze_focus(self, workdir):
        gen = FakeGenerator()
        runtime(workdir, gen).run('echo "data" -> analyze "costs"')
        assert gen.prompts[0][0] == "Analyze the following focusing on costs:\n\ndata"

    def test_search_falls_back_to_model(self, workdir):
        gen = FakeGenerator("facts")
        assert runtime(workdir, gen).run('search "golang"').text == "facts"
        assert gen.prompts[0][0] == "Please provide information about: golang"

    def test_search_uses_serpapi_when_configured(self, workdir, monkeypatch):
        monkeypatch.setenv("SERPAPI_API_KEY", "k")
        seen = {}

        def fake_search(query, api_key):
            seen.update(query=query, api_key=api_key)
            return "- result"

        monkeypatch.setattr(handlers, "_serpapi_search", fake_search)
        gen = FakeGenerator()
        assert runtime(workdir, gen).run('search "golang"').text == "- result"
        assert seen == {"query": "golang", "api_key": "k"}
        assert gen.prompts == []

    def test_no_provider(self, workdir):
        with pytest.raises(HandlerError, match="no AI provider configured"):
            runtime(workdir).run('ask "hi"')

    def test_parallel_calls_share_one_generator(self, workdir):
        gen = FakeGenerator(lambda prompt: prompt.upper())
        result = runtime(workdir, gen).run('parallel { ask "a" ask "b" } -> merge "join"')
        assert result.text == "A\n\nB"
        assert sorted(p for p, _ in gen.prompts) == ["a", "b"]


class TestCaching:
    def test_llm_results_are_cached(self, tmp_path):
        gen = FakeGenerator("cached answer")
        llm = LLM(gen, ResultCache(tmp_path))
        assert llm.complete("ask", "q") == "cached answer"
        gen.reply = "new answer"
        assert llm.complete("ask", "q") == "cached answer"
        assert len(gen.prompts) == 1

    def test_registry_builds_cache_from_config(self, tmp_path, no_provider_env):
        config = EngineConfig(workdir=tmp_path, cache_dir=tmp_path / "cache", cache_ttl_s=60)
        gen = FakeGenerator("x")
        reg = default_registry(generator=gen, config=config)
        Runtime(reg, config=config).run('ask "q"')
        Runtime(reg.copy(), config=config).run('ask "q"')
        assert len(gen.prompts) == 1
        assert list((tmp_path / "cache").glob("ask_*.json"))


def test_echo(workdir):
    rt = runtime(workdir)
    assert rt.run('echo "x"').text == "x"
    assert rt.run('echo', input="passed through").text == "passed through"


def test_default_command_set():
    names = default_registry(generator=FakeGenerator()).names()
    assert {"read", "save", "list", "ask", "summarize", "analyze", "search", "echo",
            "mcp_connect", "mcp", "mcp_list", "mcp_close"} <= names
