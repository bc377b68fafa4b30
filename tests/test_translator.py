import pytest

from agentscript.ast import Merge, ParallelGroup, Pipe
from agentscript.errors import ProviderError, TranslationError
from agentscript.parser import parse_script
from agentscript.translator import Translator, parse_process, render_script, strip_fences

from conftest import FakeGenerator


def translate(reply, intent="do the thing"):
    return Translator(generator=FakeGenerator(reply)).translate(intent)


class TestTranslate:
    def test_sequential_description(self):
        result = translate('MAIN = search!"golang" -> summarize -> SKIP')
        assert result.graph == parse_script('search "golang" -> summarize')
        assert result.script == 'search "golang" -> summarize'
        assert result.intent == "do the thing"

    def test_prompt_carries_intent_and_commands(self):
        gen = FakeGenerator('MAIN = echo -> SKIP')
        Translator(generator=gen, commands=["echo", "search"]).translate("  search golang  ")
        prompt, system = gen.prompts[0]
        assert prompt.endswith("\nsearch golang")
        assert "Available commands: echo, search" in system

    def test_code_fences_are_stripped(self):
        result = translate('```csp\nMAIN = read!"a.txt" -> SKIP\n```')
        assert result.graph.command_sequence() == [("read", ("a.txt",))]
        assert result.text == 'MAIN = read!"a.txt" -> SKIP'

    def test_parallel_with_merge(self):
        reply = 'MAIN = (search!"AWS" -> analyze -> SKIP ||| search!"GCP" -> analyze -> SKIP) ; merge -> ask!"compare" -> SKIP'
        result = translate(reply)
        expected = parse_script('parallel { search "AWS" -> analyze  search "GCP" -> analyze } -> merge -> ask "compare"')
        assert result.graph == expected
        (pipe,) = result.graph.pipelines
        assert isinstance(pipe.producer, Merge)
        assert pipe.producer.explicit

    def test_merge_mode(self):
        result = translate('MAIN = (a -> SKIP ||| b -> SKIP) ; merge!"labeled" -> SKIP')
        (merge,) = result.graph.pipelines
        assert isinstance(merge, Merge)
        assert merge.mode == "labeled"

    def test_bare_sequence_without_definition(self):
        result = translate('read!"x" -> summarize')
        assert result.graph.command_sequence() == [("read", ("x",)), ("summarize", ())]

    def test_event_names_are_lowercased(self):
        result = translate('MAIN = SEARCH!"x" -> SKIP')
        assert result.graph.commands()[0].name == "search"

    def test_invalid_output_is_rejected(self):
        with pytest.raises(TranslationError) as exc:
            translate("Sure! Here is your pipeline: search golang")
        assert exc.value.text == "Sure! Here is your pipeline: search golang"

    def test_empty_output(self):
        with pytest.raises(TranslationError, match="no output"):
            translate("```\n```")

    def test_provider_failure(self):
        gen = FakeGenerator(error=ProviderError("quota exceeded"))
        with pytest.raises(TranslationError, match="quota exceeded"):
            Translator(generator=gen).translate("x")

    def test_unexpected_generator_failure(self):
        gen = FakeGenerator(error=RuntimeError("socket closed"))
        with pytest.raises(TranslationError, match="RuntimeError: socket closed"):
            Translator(generator=gen).translate("x")

    def test_empty_intent(self):
        gen = FakeGenerator()
        with pytest.raises(TranslationError):
            Translator(generator=gen).translate("   ")
        assert gen.prompts == []

    def test_translate_safe(self):
        assert Translator(generator=FakeGenerator("not ||| valid (")).translate_safe("x") is None
        assert Translator(generator=FakeGenerator("MAIN = a -> SKIP")).translate_safe("x") is not None

    def test_no_provider(self, monkeypatch):
        monkeypatch.setattr("agentscript.translator.select_provider", lambda forced=None: None)
        with pytest.raises(TranslationError, match="no AI provider"):
            Translator().translate("x")

    def test_configured_provider_is_used(self, monkeypatch):
        seen = []
        gen = FakeGenerator("MAIN = a -> SKIP")

        def fake_select(forced=None):
            seen.append(forced)
            return gen

        monkeypatch.setattr("agentscript.translator.select_provider", fake_select)
        Translator(provider="gemini").translate("x")
        assert seen == ["gemini"]


class TestProcessNotation:
    def test_named_processes_are_inlined(self):
        text = '''
        -- gather two sources, then summarize
        channel search, summarize, save
        GATHER = search!"a" -> SKIP ||| search!"b" -> SKIP
        MAIN = GATHER ; merge -> summarize -> save!"out.md" -> SKIP
        '''
        graph = parse_process(text)
        assert graph == parse_script('parallel { search "a" search "b" } -> merge -> summarize -> save "out.md"')

    def test_last_definition_is_the_entry_without_main(self):
        graph = parse_process('A = read!"x" -> SKIP\nB = A ; summarize')
        assert graph.command_sequence() == [("read", ("x",)), ("summarize", ())]

    def test_recursion_is_rejected(self):
        with pytest.raises(TranslationError, match="recursive process reference"):
            parse_process('LOOP = echo -> LOOP\nMAIN = LOOP')

    def test_duplicate_definition(self):
        with pytest.raises(TranslationError, match="defined twice"):
            parse_process('A = echo\nA = read!"x"')

    def test_skip_only(self):
        with pytest.raises(TranslationError, match="no commands"):
            parse_process("MAIN = SKIP")

    def test_merge_without_parallel(self):
        with pytest.raises(TranslationError, match="merge does not follow"):
            parse_process("MAIN = a -> merge -> SKIP")

    def test_unknown_merge_mode(self):
        with pytest.raises(TranslationError, match="unknown merge mode"):
            parse_process('MAIN = (a ||| b) ; merge!"zip"')

    def test_unmerged_group_inside_sequence_gets_implicit_merge(self):
        graph = parse_process("MAIN = (a ||| b) ; c")
        (pipe,) = graph.pipelines
        assert isinstance(pipe, Pipe)
        assert isinstance(pipe.producer, Merge)
        assert pipe.producer.explicit is False

    def test_trailing_group_stays_unmerged(self):
        graph = parse_process("MAIN = a ||| b")
        (group,) = graph.pipelines
        assert isinstance(group, ParallelGroup)

    def test_single_branch_is_not_a_group(self):
        graph = parse_process("MAIN = (a -> SKIP ||| SKIP) ; b")
        assert graph == parse_script("a -> b")

    def test_escaped_payload(self):
        graph = parse_process(r'MAIN = ask!"say \"hi\"" -> SKIP')
        assert graph.commands()[0].args == ('say "hi"',)

    def test_rendered_script_parses_to_the_same_graph(self):
        graph = parse_process('MAIN = (search!"a" -> analyze ||| search!"b") ; merge!"join" -> save!"r.md"')
        assert parse_script(render_script(graph)) == graph


def test_strip_fences():
    assert strip_fences("```\nMAIN = a\n```") == "MAIN = a"
    assert strip_fences("  MAIN = a  ") == "MAIN = a"
    assert strip_fences("```csp\nMAIN = a") == "MAIN = a"
