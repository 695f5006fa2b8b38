"""
提示词组装服务测试
"""
import pytest

from core.exceptions import TemplateNotFoundError
from core.schemas import (
    ChunkAnalysis, ChunkMetadata, ContextWindow, ContextualElement, DynamicPrompt, NarrativeContext,
    NarrativeElement, PromptConstraint, PromptContext, PromptTemplate, StoryAnalysisThought, TextChunk, TextFocus
)
from services.prompt_service import DynamicPromptManager


def _element(type_, content, importance, relation="setup"):
    return ContextualElement(id=content, type=type_, content=content, importance=importance, relation_to_focus=relation)


FOCUS = TextFocus(type="scene", id="focus-1", content="The duel at dawn.", critical_elements=("Anna", "the duel"))


@pytest.fixture
def prompts():
    return DynamicPromptManager()


class TestTemplates:

    def test_library_loaded_from_yaml(self, prompts):
        templates = prompts.get_templates()
        assert {"edit", "expand", "analyze", "revise"} <= set(templates)
        assert templates["edit"].required_context == ("character", "plot")
        assert templates["edit"].optional_context == ("setting", "theme")

    def test_unknown_template_raises(self, prompts):
        with pytest.raises(TemplateNotFoundError):
            prompts.create_prompt("poem", FOCUS, ContextWindow((), (), FOCUS), [])
        with pytest.raises(LookupError):
            prompts.create_prompt("poem", FOCUS, ContextWindow((), (), FOCUS), [])

    def test_add_template_never_overwrites(self, prompts):
        custom = PromptTemplate(purpose="edit", base_structure="{focus}", required_context=("character",))
        original = prompts.get_templates()["edit"]

        assert prompts.add_template("edit", custom) is False
        assert prompts.get_templates()["edit"] == original

        assert prompts.add_template("tighten", {
            "purpose": "edit", "baseStructure": "Tighten:\n{focus}", "requiredContext": ["character"],
        }) is True
        assert prompts.get_templates()["tighten"].required_context == ("character",)


class TestCreatePrompt:

    def test_required_context_included_regardless_of_relevance(self, prompts):
        window = ContextWindow(
            before=(_element("character", "Anna", 1), _element("location", "harbor", 1)),
            after=(_element("conflict", "the duel", 2),),
            current_focus=FOCUS,
        )
        prompt = prompts.create_prompt("edit", FOCUS, window, [])

        assert isinstance(prompt, DynamicPrompt)
        assert prompt.contextual_elements == (
            PromptContext(type="character", content="Anna", relevance=0.1, timeframe="past"),
            PromptContext(type="plot", content="the duel", relevance=0.2, timeframe="future"),
        )

    def test_optional_context_threshold(self, prompts):
        window = ContextWindow(
            before=(_element("location", "exactly", 7.0), _element("time", "above", 7.1)),
            after=(_element("symbol", "raven", 9),),
            current_focus=FOCUS,
        )
        prompt = prompts.create_prompt("edit", FOCUS, window, [])
        contents = [c.content for c in prompt.contextual_elements]
        assert "exactly" not in contents
        assert "above" in contents
        assert "raven" in contents

    def test_optional_history_threshold(self, prompts):
        prompts.update_context_history("focus-1", PromptContext("setting", "at 0.7", 0.7, "past"))
        prompts.update_context_history("focus-1", PromptContext("setting", "at 0.71", 0.71, "past"))
        prompt = prompts.create_prompt("edit", FOCUS, ContextWindow((), (), FOCUS), [])
        assert [c.content for c in prompt.contextual_elements] == ["at 0.71"]

    def test_required_history_threshold(self, prompts):
        prompts.update_context_history("focus-1", {"type": "character", "content": "low", "relevance": 0.5})
        prompts.update_context_history("focus-1", {"type": "character", "content": "high", "relevance": 0.6})
        prompts.update_context_history("other", {"type": "character", "content": "elsewhere", "relevance": 0.9})
        prompt = prompts.create_prompt("edit", FOCUS, ContextWindow((), (), FOCUS), [])
        assert [c.content for c in prompt.contextual_elements] == ["high"]

    def test_unmapped_element_types_are_ignored(self, prompts):
        window = ContextWindow(before=(_element("object", "key", 10),), after=(), current_focus=FOCUS)
        assert prompts.create_prompt("edit", FOCUS, window, []).contextual_elements == ()

    def test_constraints_merged_by_rule(self, prompts):
        prompts.add_global_constraint(PromptConstraint("continuity", "Keep timeline", "global version", "global"))
        local = [
            PromptConstraint("continuity", "Keep timeline", "local version", "local"),
            {"type": "style", "rule": "Short sentences", "explanation": "", "scope": "local"},
            {"type": "character", "rule": "Anna stays wary", "scope": "local"},
            {"type": "plot", "rule": "Duel must end", "scope": "local"},
        ]
        prompt = prompts.create_prompt("edit", FOCUS, ContextWindow((), (), FOCUS), local)

        assert [c.rule for c in prompt.constraints] == ["Keep timeline", "Short sentences", "Anna stays wary", "Duel must end"]
        assert prompt.constraints[0].explanation == "global version"
        assert prompt.objectives == (
            "Maintain consistency with Anna, the duel",
            "Preserve continuity: Keep timeline",
            "Adhere to style: Short sentences",
            "Keep characterization consistent: Anna stays wary",
            "Advance the plot coherently: Duel must end",
        )
        assert [c.rule for c in prompts.get_global_constraints()] == ["Keep timeline"]

    def test_add_global_constraint_deduplicates(self, prompts):
        first = PromptConstraint("style", "Past tense", "", "global")
        assert prompts.add_global_constraint(first) is True
        assert prompts.add_global_constraint(PromptConstraint("plot", "Past tense", "other", "global")) is False
        assert prompts.get_global_constraints() == [first]

    def test_base_prompt_from_template(self, prompts):
        prompt = prompts.create_prompt("expand", FOCUS, ContextWindow((), (), FOCUS), [])
        assert prompt.base_prompt == prompts.get_templates()["expand"].base_structure

    def test_focus_as_dict(self, prompts):
        prompt = prompts.create_prompt(
            "analyze", {"type": "scene", "id": "x", "content": "c", "criticalElements": ["storm"]},
            ContextWindow((), (), FOCUS), [],
        )
        assert prompt.objectives[0] == "Maintain consistency with storm"


class TestIntegrateChunkAnalysis:

    def _analysis(self, elements, key_events=("Anna draws her sword.",), characters=("Ben", "Anna")):
        chunk = TextChunk(
            id="chunk-7", content="Anna draws her sword.", start_position=100, end_position=121,
            characters=set(characters), key_events=list(key_events),
        )
        return ChunkAnalysis(chunk=chunk, metadata=ChunkMetadata(word_count=4, token_count=6),
                             contextual_elements=elements)

    def test_split_at_midpoint(self, prompts):
        elements = [
            NarrativeElement("location", "hall", 140, 150, 6),
            NarrativeElement("character", "Anna", 100, 100, 6),
            NarrativeElement("event", "duel", 110, 130, 5),
            NarrativeElement("character", "Ben", 120, 120, 4),
            NarrativeElement("time", "dawn", 160, 170, 6),
        ]
        window = prompts.integrate_chunk_analysis(self._analysis(elements))

        # 按给定顺序切分，不按出现位置重排
        assert [e.content for e in window.before] == ["hall", "Anna"]
        assert [e.content for e in window.after] == ["Ben", "dawn"]
        assert [e.relation_to_focus for e in window.before] == ["setup", "development"]
        assert [e.relation_to_focus for e in window.after] == ["development", "callback"]
        assert window.before[0].importance == 6
        assert len({e.id for e in window.before + window.after}) == 4

    def test_split_keeps_given_order(self, prompts):
        elements = [
            NarrativeElement("character", "A", 100, 110, 6),
            NarrativeElement("character", "B", 0, 10, 6),
            NarrativeElement("character", "C", 50, 60, 6),
        ]
        window = prompts.integrate_chunk_analysis(self._analysis(elements))

        assert [e.content for e in window.before] == ["A"]
        assert [e.content for e in window.after] == ["C"]

    def test_focus_from_chunk(self, prompts):
        window = prompts.integrate_chunk_analysis(self._analysis([]))
        assert window.before == () and window.after == ()
        assert window.current_focus == TextFocus(
            type="scene", id="chunk-7", content="Anna draws her sword.", critical_elements=("Anna draws her sword.",)
        )

    def test_critical_elements_fall_back_to_characters(self, prompts):
        window = prompts.integrate_chunk_analysis(self._analysis([], key_events=()))
        assert window.current_focus.critical_elements == ("Anna", "Ben")

    def test_single_element_is_dropped(self, prompts):
        window = prompts.integrate_chunk_analysis(
            self._analysis([NarrativeElement("character", "Anna", 100, 100, 6)])
        )
        assert window.before == () and window.after == ()


def _story(number, total, text="step", **kwargs):
    return StoryAnalysisThought(thought=text, thought_number=number, total_thoughts=total, **kwargs)


class TestSequentialPrompt:

    def test_relevance_by_distance(self, prompts):
        history = [_story(1, 4, "first"), _story(2, 4, "second")]
        prompt = prompts.create_sequential_prompt(_story(3, 4), history)

        relevance = {c.content: c.relevance for c in prompt.contextual_elements}
        assert relevance["first"] == pytest.approx(0.5)
        assert relevance["second"] == pytest.approx(0.75)
        assert all(c.timeframe == "past" for c in prompt.contextual_elements)

    def test_relevance_floor(self, prompts):
        prompt = prompts.create_sequential_prompt(_story(10, 10), [_story(1, 10, "old")])
        assert prompt.contextual_elements[0].relevance == pytest.approx(0.1)

    def test_revision_and_shared_elements_bonus(self, prompts):
        shared = NarrativeContext(characters=("Ann",), theme=("loss",))
        history = [
            _story(1, 4, "first", narrative_context=shared),
            _story(2, 4, "second", narrative_context=NarrativeContext(characters=("Ann",))),
        ]
        current = _story(3, 4, "third", is_revision=True, revises_thought=1, narrative_context=shared)
        prompt = prompts.create_sequential_prompt(current, history)

        past = {c.content: c.relevance for c in prompt.contextual_elements if c.timeframe == "past"}
        assert past["first"] == pytest.approx(1.0)
        assert past["second"] == pytest.approx(0.85)

    def test_later_thoughts_excluded(self, prompts):
        history = [_story(1, 3, "one"), _story(2, 3, "two"), _story(3, 3, "three")]
        prompt = prompts.create_sequential_prompt(_story(2, 3, "two"), history)
        assert [c.content for c in prompt.contextual_elements] == ["one"]

    def test_thought_types(self, prompts):
        history = [
            _story(1, 6, "about people", narrative_context=NarrativeContext(characters=("Ann",))),
            _story(2, 6, "about events", narrative_context=NarrativeContext(plot_points=("duel",))),
            _story(3, 6, "the theme of loss"),
            _story(4, 6, "the setting is bleak"),
            _story(5, 6, "something else"),
        ]
        prompt = prompts.create_sequential_prompt(_story(6, 6), history)
        assert [c.type for c in prompt.contextual_elements] == ["character", "plot", "theme", "setting", "plot"]

    def test_present_elements_and_objectives(self, prompts):
        context = NarrativeContext(theme=("loss",), characters=("Ann", "Ben"), plot_points=("duel",))
        prompt = prompts.create_sequential_prompt(_story(2, 3, narrative_context=context), [])

        present = [(c.type, c.content, c.relevance) for c in prompt.contextual_elements]
        assert present == [("theme", "loss", 1.0), ("character", "Ann", 1.0), ("character", "Ben", 1.0), ("plot", "duel", 1.0)]
        assert all(c.timeframe == "present" for c in prompt.contextual_elements)
        assert prompt.objectives == (
            "Build upon analysis step 2 of 3",
            "Analyze thematic elements: loss",
            "Consider character dynamics: Ann, Ben",
            "Examine plot developments: duel",
        )
        assert [c.rule for c in prompt.constraints] == ["Sequential Progression"]
        assert prompt.constraints[0].scope == "global"

    def test_revision_constraint_and_objective(self, prompts):
        prompt = prompts.create_sequential_prompt(_story(3, 3, is_revision=True, revises_thought=1), [])
        assert [c.rule for c in prompt.constraints] == ["Sequential Progression", "Revision Coherence"]
        assert prompt.constraints[1].scope == "local"
        assert prompt.objectives[-1] == "Revise and improve analysis step 1"

    def test_base_prompt_and_dict_input(self, prompts):
        prompt = prompts.create_sequential_prompt(
            {"thought": "now", "thoughtNumber": 2, "totalThoughts": 2},
            [{"thought": "before", "thoughtNumber": 1, "totalThoughts": 2}],
        )
        assert prompt.base_prompt.startswith("Based on the previous analysis:")
        assert prompt.contextual_elements[0].content == "before"


class TestRenderPrompt:

    def test_placeholders_filled(self, prompts):
        prompts.add_global_constraint(PromptConstraint("style", "Past tense", "Narration stays in past tense", "global"))
        window = ContextWindow(before=(_element("character", "Anna", 8),), after=(), current_focus=FOCUS)
        prompt = prompts.create_prompt("edit", FOCUS, window, [])
        text = prompts.render_prompt(prompt, FOCUS)

        assert "Revise the following section:" in text
        assert "The duel at dawn." in text
        assert "Anna" in text
        assert "- Past tense: Narration stays in past tense" in text
        assert "Maintain consistency with Anna, the duel" in text
        assert "{context}" not in text and "{focus}" not in text and "{constraints}" not in text

    def test_empty_blocks(self, prompts):
        prompt = prompts.create_sequential_prompt(_story(1, 1), [])
        text = prompts.render_prompt(prompt, "Next step")
        assert "(none)" in text
        assert "Next step" in text
