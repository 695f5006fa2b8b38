"""
提示词组装服务 (Dynamic Prompt Manager)
维护模板注册表、全局约束与上下文历史，把块索引结果或推理日志组装成结构化提示词。
本服务只负责组装输入，不调用任何模型生成文本。
"""
from __future__ import annotations
import uuid
import logging
from typing import Dict, Iterable, List, Optional, Union

from langchain_core.prompts import PromptTemplate as ChainPromptTemplate

from core.exceptions import TemplateNotFoundError, ValidationError
from core.schemas import (
    ChunkAnalysis, ContextWindow, ContextualElement, DynamicPrompt, PromptConstraint,
    PromptContext, PromptTemplate, StoryAnalysisThought, TextFocus
)
from prompts import get_global_constraints, get_sequential_base, get_template_library

logger = logging.getLogger(__name__)

# 元素原始类型 -> 粗粒度上下文类别
ELEMENT_CATEGORIES = {
    "character": "character",
    "dialogue": "character",
    "event": "plot",
    "conflict": "plot",
    "location": "setting",
    "time": "setting",
    "symbol": "theme",
    "motif": "theme",
}

OBJECTIVE_TEMPLATES = {
    "continuity": "Preserve continuity: {rule}",
    "character": "Keep characterization consistent: {rule}",
    "plot": "Advance the plot coherently: {rule}",
    "style": "Adhere to style: {rule}",
}

REQUIRED_HISTORY_RELEVANCE = 0.5
OPTIONAL_RELEVANCE = 0.7

SEQUENTIAL_PROGRESSION = PromptConstraint(
    type="plot",
    rule="Sequential Progression",
    explanation="Build upon previous analytical steps while maintaining logical progression",
    scope="global",
)
REVISION_COHERENCE = PromptConstraint(
    type="plot",
    rule="Revision Coherence",
    explanation="Ensure revisions maintain consistency with established elements while improving identified issues",
    scope="local",
)


def _as_constraint(value) -> PromptConstraint:
    return value if isinstance(value, PromptConstraint) else PromptConstraint.from_dict(value)


def _as_thought(value) -> StoryAnalysisThought:
    return value if isinstance(value, StoryAnalysisThought) else StoryAnalysisThought.from_dict(value)


class DynamicPromptManager:
    """
    提示词组装器。
    模板只增不改；全局约束按 rule 去重；上下文历史按 focus id 累积。
    """

    def __init__(self, templates: Optional[Dict[str, PromptTemplate]] = None,
                 global_constraints: Optional[Iterable[PromptConstraint]] = None,
                 sequential_base: Optional[str] = None):
        self._templates: Dict[str, PromptTemplate] = dict(templates) if templates is not None else get_template_library()
        self._global_constraints: List[PromptConstraint] = []
        self._constraint_rules = set()
        for constraint in (global_constraints if global_constraints is not None else get_global_constraints()):
            self.add_global_constraint(constraint)
        self._sequential_base = sequential_base or get_sequential_base()
        self._context_history: Dict[str, List[PromptContext]] = {}
        logger.debug(f"提示词组装器已初始化，模板: {list(self._templates.keys())}")

    # --- 注册表维护 ---

    def add_global_constraint(self, constraint: Union[PromptConstraint, dict]) -> bool:
        constraint = _as_constraint(constraint)
        if constraint.rule in self._constraint_rules:
            return False
        self._constraint_rules.add(constraint.rule)
        self._global_constraints.append(constraint)
        return True

    def add_template(self, name: str, template: Union[PromptTemplate, dict]) -> bool:
        """注册新模板；同名模板已存在时不覆盖，返回 False。"""
        if name in self._templates:
            logger.warning(f"模板 '{name}' 已存在，忽略本次注册。")
            return False
        self._templates[name] = template if isinstance(template, PromptTemplate) else PromptTemplate.from_dict(template)
        logger.info(f"已注册模板 '{name}'。")
        return True

    def update_context_history(self, focus_id: str, context: Union[PromptContext, dict]):
        context = context if isinstance(context, PromptContext) else PromptContext.from_dict(context)
        self._context_history.setdefault(focus_id, []).append(context)

    def get_templates(self) -> Dict[str, PromptTemplate]:
        return dict(self._templates)

    def get_global_constraints(self) -> List[PromptConstraint]:
        return list(self._global_constraints)

    # --- 基于块索引的组装 ---

    def create_prompt(self, template_name: str, focus: Union[TextFocus, dict],
                      context_window: Union[ContextWindow, dict],
                      local_constraints: Iterable[Union[PromptConstraint, dict]] = ()) -> DynamicPrompt:
        """
        按模板组装提示词。

        Args:
            template_name (str): 已注册的模板名。
            focus (TextFocus): 当前焦点段落。
            context_window (ContextWindow): 焦点前后的上下文元素，也接受同结构的字典。
            local_constraints: 本次调用附加的约束。

        Raises:
            TemplateNotFoundError: 模板未注册。
        """
        template = self._templates.get(template_name)
        if template is None:
            logger.error(f"模板 '{template_name}' 未注册。")
            raise TemplateNotFoundError(f"Template '{template_name}' not found")
        if isinstance(focus, dict):
            focus = TextFocus.from_dict(focus)
        if isinstance(context_window, dict):
            context_window = ContextWindow.from_dict(context_window)

        elements = []
        for category in template.required_context:
            elements.extend(self._get_context_for_type(category, context_window, focus))
        for category in template.optional_context:
            elements.extend(
                e for e in self._get_context_for_type(category, context_window, focus)
                if e.relevance > OPTIONAL_RELEVANCE
            )

        constraints = self._merge_constraints(local_constraints)
        return DynamicPrompt(
            base_prompt=template.base_structure,
            contextual_elements=tuple(elements),
            constraints=tuple(constraints),
            objectives=tuple(self._derive_objectives(focus, constraints)),
        )

    def integrate_chunk_analysis(self, analysis: ChunkAnalysis) -> ContextWindow:
        """
        把一个块的上下文元素转换为上下文窗口。
        元素保持索引结果中的原有顺序，按位置在中点处切分，中点元素本身被丢弃。
        """
        ordered = list(analysis.contextual_elements)
        midpoint = len(ordered) // 2

        def _convert(element, side_relation):
            relation = "development" if element.first_mention == element.last_mention else side_relation
            return ContextualElement(
                id=str(uuid.uuid4()),
                type=element.type,
                content=element.name,
                importance=element.significance,
                relation_to_focus=relation,
            )

        chunk = analysis.chunk
        critical = list(chunk.key_events) or sorted(chunk.characters) or sorted(chunk.locations)
        return ContextWindow(
            before=tuple(_convert(e, "setup") for e in ordered[:midpoint]),
            after=tuple(_convert(e, "callback") for e in ordered[midpoint + 1:]),
            current_focus=TextFocus(
                type="scene",
                id=chunk.id,
                content=chunk.content,
                critical_elements=tuple(critical),
            ),
        )

    # --- 基于推理日志的组装 ---

    def create_sequential_prompt(self, thought: Union[StoryAnalysisThought, dict],
                                 thought_history: Iterable[Union[StoryAnalysisThought, dict]] = ()) -> DynamicPrompt:
        thought = _as_thought(thought)
        if not thought.total_thoughts or thought.total_thoughts < 1:
            raise ValidationError(f"total_thoughts 必须为正整数，收到 '{thought.total_thoughts}'。")

        elements = []
        for past in map(_as_thought, thought_history):
            if past.thought and past.thought_number < thought.thought_number:
                elements.append(PromptContext(
                    type=self._determine_thought_type(past),
                    content=past.thought,
                    relevance=self._calculate_thought_relevance(past, thought),
                    timeframe="past",
                ))

        ctx = thought.narrative_context
        if ctx is not None:
            for category, names in (("theme", ctx.theme), ("character", ctx.characters), ("plot", ctx.plot_points)):
                elements.extend(PromptContext(type=category, content=n, relevance=1.0, timeframe="present") for n in names)

        constraints = [SEQUENTIAL_PROGRESSION]
        if thought.is_revision:
            constraints.append(REVISION_COHERENCE)

        return DynamicPrompt(
            base_prompt=self._sequential_base,
            contextual_elements=tuple(elements),
            constraints=tuple(constraints),
            objectives=tuple(self._derive_analysis_objectives(thought)),
        )

    # --- 渲染 ---

    def render_prompt(self, prompt: DynamicPrompt, focus: Union[TextFocus, str]) -> str:
        """
        用 LangChain PromptTemplate 填充 base_prompt 中的 {context} / {focus} / {constraints}，
        得到交给外部生成器的最终文本。
        """
        focus_text = focus.content if isinstance(focus, TextFocus) else str(focus)
        context_lines = [
            f"- [{c.type}, {c.timeframe}, relevance {c.relevance:.2f}] {c.content}"
            for c in prompt.contextual_elements
        ]
        constraint_lines = [
            f"- {c.rule}: {c.explanation}" if c.explanation else f"- {c.rule}"
            for c in prompt.constraints
        ]
        constraint_lines.extend(f"- {objective}" for objective in prompt.objectives)

        template = ChainPromptTemplate.from_template(prompt.base_prompt)
        return template.format(
            context="\n".join(context_lines) or "(none)",
            focus=focus_text,
            constraints="\n".join(constraint_lines) or "(none)",
        )

    # --- 内部实现 ---

    def _get_context_for_type(self, category: str, window: ContextWindow, focus: TextFocus) -> List[PromptContext]:
        elements = [self._to_prompt_context(e, "past") for e in window.before if self._matches_type(e, category)]
        elements += [self._to_prompt_context(e, "future") for e in window.after if self._matches_type(e, category)]
        elements += [
            ctx for ctx in self._context_history.get(focus.id, [])
            if ctx.type == category and ctx.relevance > REQUIRED_HISTORY_RELEVANCE
        ]
        return elements

    @staticmethod
    def _matches_type(element: ContextualElement, category: str) -> bool:
        return ELEMENT_CATEGORIES.get(element.type) == category

    @staticmethod
    def _to_prompt_context(element: ContextualElement, timeframe: str) -> PromptContext:
        return PromptContext(
            type=ELEMENT_CATEGORIES.get(element.type, "plot"),
            content=element.content,
            relevance=element.importance / 10,
            timeframe=timeframe,
        )

    def _merge_constraints(self, local_constraints) -> List[PromptConstraint]:
        merged, seen = [], set()
        for constraint in self._global_constraints + [_as_constraint(c) for c in local_constraints]:
            if constraint.rule not in seen:
                seen.add(constraint.rule)
                merged.append(constraint)
        return merged

    @staticmethod
    def _derive_objectives(focus: TextFocus, constraints: List[PromptConstraint]) -> List[str]:
        objectives = [f"Maintain consistency with {', '.join(focus.critical_elements)}"]
        for constraint in constraints:
            template = OBJECTIVE_TEMPLATES.get(constraint.type, "Address {rule}")
            objectives.append(template.format(rule=constraint.rule))
        return objectives

    @staticmethod
    def _determine_thought_type(thought: StoryAnalysisThought) -> str:
        content = thought.thought.lower()
        ctx = thought.narrative_context
        if ctx is not None and ctx.characters:
            return "character"
        if ctx is not None and ctx.plot_points:
            return "plot"
        if "theme" in content or (ctx is not None and ctx.theme):
            return "theme"
        if "location" in content or "setting" in content:
            return "setting"
        return "plot"

    @staticmethod
    def _count_shared_elements(a: StoryAnalysisThought, b: StoryAnalysisThought) -> int:
        if a.narrative_context is None or b.narrative_context is None:
            return 0
        ca, cb = a.narrative_context, b.narrative_context
        count = 0
        for left, right in ((ca.characters, cb.characters), (ca.theme, cb.theme), (ca.plot_points, cb.plot_points)):
            left = set(left)
            count += sum(1 for item in right if item in left)
        return count

    def _calculate_thought_relevance(self, past: StoryAnalysisThought, current: StoryAnalysisThought) -> float:
        distance = current.thought_number - past.thought_number
        relevance = max(0.1, 1 - distance / current.total_thoughts)
        if current.revises_thought == past.thought_number:
            relevance += 0.3
        relevance += 0.1 * self._count_shared_elements(past, current)
        return min(1.0, relevance)

    @staticmethod
    def _derive_analysis_objectives(thought: StoryAnalysisThought) -> List[str]:
        objectives = [f"Build upon analysis step {thought.thought_number} of {thought.total_thoughts}"]
        ctx = thought.narrative_context
        if ctx is not None:
            if ctx.theme:
                objectives.append(f"Analyze thematic elements: {', '.join(ctx.theme)}")
            if ctx.characters:
                objectives.append(f"Consider character dynamics: {', '.join(ctx.characters)}")
            if ctx.plot_points:
                objectives.append(f"Examine plot developments: {', '.join(ctx.plot_points)}")
        if thought.is_revision:
            objectives.append(f"Revise and improve analysis step {thought.revises_thought}")
        return objectives
