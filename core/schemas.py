"""
业务对象定义 (Schemas)
定义分块、推理日志与提示词组装各层间传递的强类型数据结构，确保数据流透明且可预测。
需要在创建后保持只读的对象使用 frozen dataclass，序列字段使用 tuple。
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any, Set, Tuple

from core.exceptions import ValidationError

CONTEXT_CATEGORIES = ("character", "plot", "setting", "theme")
CONSTRAINT_TYPES = ("continuity", "character", "plot", "style")


def _pick(data: dict, *keys, default=None):
    """按顺序取第一个存在的键，兼容 snake_case 与 camelCase 两种写法。"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


# --- 分块层 ---

@dataclass
class ChunkingOptions:
    """
    分块参数。所有字段均为必填，核心层内部不提供隐式默认值。
    预设值由配置层 (config.loader.get_chunking_options) 提供。
    """
    max_chunk_size: int
    overlap_size: int
    preserve_scenes: bool
    preserve_chapters: bool
    context_window: int

    def __post_init__(self):
        if not isinstance(self.max_chunk_size, int) or self.max_chunk_size <= 0:
            raise ValidationError(f"max_chunk_size 必须为正整数，收到 '{self.max_chunk_size}'。")
        if not isinstance(self.overlap_size, int) or self.overlap_size < 0:
            raise ValidationError(f"overlap_size 必须为非负整数，收到 '{self.overlap_size}'。")
        if not isinstance(self.context_window, int) or self.context_window < 0:
            raise ValidationError(f"context_window 必须为非负整数，收到 '{self.context_window}'。")

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkingOptions":
        required = {
            "max_chunk_size": ("max_chunk_size", "maxChunkSize"),
            "overlap_size": ("overlap_size", "overlapSize"),
            "preserve_scenes": ("preserve_scenes", "preserveScenes"),
            "preserve_chapters": ("preserve_chapters", "preserveChapters"),
            "context_window": ("context_window", "contextWindow"),
        }
        params = {}
        for name, keys in required.items():
            value = _pick(data, *keys)
            if value is None:
                raise ValidationError(f"分块参数缺少必填字段 '{name}'。")
            params[name] = value
        params["preserve_scenes"] = bool(params["preserve_scenes"])
        params["preserve_chapters"] = bool(params["preserve_chapters"])
        return cls(**params)

    def to_dict(self):
        return asdict(self)


@dataclass
class TextChunk:
    """
    手稿的一个连续片段。偏移量为源文本中的字符位置，[start_position, end_position] 为闭区间，
    按位置定位块时两端都算在块内。
    每次调用 chunk_manuscript 时重新生成，不跨调用保留。
    """
    id: str
    content: str
    start_position: int
    end_position: int
    index: int = 0
    characters: Set[str] = field(default_factory=set)
    locations: Set[str] = field(default_factory=set)
    timeframe: str = ""
    key_events: List[str] = field(default_factory=list)
    overlap_context: str = ""
    scene_index: int = 0
    chapter_index: int = 0


@dataclass
class ChunkMetadata:
    word_count: int
    token_count: int
    significant_elements: Dict[str, List[str]] = field(default_factory=dict)
    contextual_references: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NarrativeElement:
    """块级上下文元素：在某个块中被识别出的角色、地点、物件、事件或时间。"""
    type: str
    name: str
    first_mention: int
    last_mention: int
    significance: float
    references: List[str] = field(default_factory=list)


@dataclass
class ChunkAnalysis:
    """与 TextChunk 一一对应的索引结果"""
    chunk: TextChunk
    metadata: ChunkMetadata
    contextual_elements: List[NarrativeElement] = field(default_factory=list)
    related_chunks: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class EntityExtraction:
    """实体抽取协作方的输出"""
    people: Tuple[str, ...] = ()
    places: Tuple[str, ...] = ()
    dates: Tuple[str, ...] = ()
    sentiment_score: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "EntityExtraction":
        def _names(value):
            if not value:
                return ()
            if isinstance(value, str):
                value = [value]
            seen = []
            for item in value:
                item = str(item).strip()
                if item and item not in seen:
                    seen.append(item)
            return tuple(seen)

        return cls(
            people=_names(_pick(data, "people", "characters")),
            places=_names(_pick(data, "places", "locations")),
            dates=_names(_pick(data, "dates")),
            sentiment_score=float(_pick(data, "sentiment_score", "sentimentScore", "sentiment", default=0.0)),
        )


# --- 提示词层 ---

@dataclass(frozen=True)
class TextFocus:
    type: str
    id: str
    content: str
    critical_elements: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "TextFocus":
        return cls(
            type=_pick(data, "type", default="scene"),
            id=str(_pick(data, "id", default="")),
            content=_pick(data, "content", default=""),
            critical_elements=tuple(_pick(data, "critical_elements", "criticalElements", default=())),
        )


@dataclass(frozen=True)
class ContextualElement:
    """提示词层的上下文元素，创建后只读"""
    id: str
    type: str
    content: str
    importance: float
    relation_to_focus: str

    @classmethod
    def from_dict(cls, data: dict) -> "ContextualElement":
        return cls(
            id=str(_pick(data, "id", default="")),
            type=data["type"],
            content=data["content"],
            importance=float(_pick(data, "importance", default=0)),
            relation_to_focus=_pick(data, "relation_to_focus", "relationToFocus", default="development"),
        )


@dataclass(frozen=True)
class ContextWindow:
    before: Tuple[ContextualElement, ...]
    after: Tuple[ContextualElement, ...]
    current_focus: TextFocus

    @classmethod
    def from_dict(cls, data: dict) -> "ContextWindow":
        def _elements(items):
            return tuple(e if isinstance(e, ContextualElement) else ContextualElement.from_dict(e) for e in items or ())

        focus = _pick(data, "current_focus", "currentFocus")
        if isinstance(focus, dict):
            focus = TextFocus.from_dict(focus)
        return cls(before=_elements(data.get("before")), after=_elements(data.get("after")), current_focus=focus)


@dataclass(frozen=True)
class PromptContext:
    type: str
    content: str
    relevance: float
    timeframe: str

    @classmethod
    def from_dict(cls, data: dict) -> "PromptContext":
        return cls(
            type=data["type"],
            content=data["content"],
            relevance=float(data["relevance"]),
            timeframe=data.get("timeframe", "past"),
        )


@dataclass(frozen=True)
class PromptConstraint:
    type: str
    rule: str
    explanation: str
    scope: str

    @classmethod
    def from_dict(cls, data: dict) -> "PromptConstraint":
        return cls(
            type=data["type"],
            rule=data["rule"],
            explanation=data.get("explanation", ""),
            scope=data.get("scope", "local"),
        )


@dataclass(frozen=True)
class PromptTemplate:
    """
    提示词模板。base_structure 中的 {context} / {focus} / {constraints}
    占位符由 DynamicPromptManager.render_prompt 填充。
    """
    purpose: str
    base_structure: str
    required_context: Tuple[str, ...] = ()
    optional_context: Tuple[str, ...] = ()
    constraints: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "PromptTemplate":
        return cls(
            purpose=data["purpose"],
            base_structure=_pick(data, "base_structure", "baseStructure"),
            required_context=tuple(_pick(data, "required_context", "requiredContext", default=())),
            optional_context=tuple(_pick(data, "optional_context", "optionalContext", default=())),
            constraints=tuple(_pick(data, "constraints", default=())),
        )


@dataclass(frozen=True)
class DynamicPrompt:
    """组装结果，每次调用返回一个新的只读对象"""
    base_prompt: str
    contextual_elements: Tuple[PromptContext, ...] = ()
    constraints: Tuple[PromptConstraint, ...] = ()
    objectives: Tuple[str, ...] = ()

    def to_dict(self):
        return asdict(self)


# --- 推理日志层 ---

@dataclass(frozen=True)
class NarrativeContext:
    scene: Optional[TextFocus] = None
    theme: Tuple[str, ...] = ()
    characters: Tuple[str, ...] = ()
    plot_points: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "NarrativeContext":
        scene = data.get("scene")
        if isinstance(scene, dict):
            scene = TextFocus.from_dict(scene)
        return cls(
            scene=scene,
            theme=tuple(_pick(data, "theme", "themes", default=())),
            characters=tuple(_pick(data, "characters", default=())),
            plot_points=tuple(_pick(data, "plot_points", "plotPoints", default=())),
        )


@dataclass(frozen=True)
class StoryAnalysisThought:
    """
    推理日志中的一个思考节点。追加到分支后不可变。
    next_thought_needed 仅为调用方声明的提示，不影响日志行为。
    """
    thought: str
    thought_number: int
    total_thoughts: int
    next_thought_needed: bool = False
    is_revision: bool = False
    revises_thought: Optional[int] = None
    narrative_context: Optional[NarrativeContext] = None

    @classmethod
    def from_dict(cls, data: dict) -> "StoryAnalysisThought":
        ctx = _pick(data, "narrative_context", "narrativeContext")
        if isinstance(ctx, dict):
            ctx = NarrativeContext.from_dict(ctx)
        return cls(
            thought=data.get("thought"),
            thought_number=_pick(data, "thought_number", "thoughtNumber"),
            total_thoughts=_pick(data, "total_thoughts", "totalThoughts"),
            next_thought_needed=bool(_pick(data, "next_thought_needed", "nextThoughtNeeded", default=False)),
            is_revision=bool(_pick(data, "is_revision", "isRevision", default=False)),
            revises_thought=_pick(data, "revises_thought", "revisesThought"),
            narrative_context=ctx,
        )

    def to_dict(self):
        return asdict(self)
