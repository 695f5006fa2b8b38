"""
分块与关系索引服务 (Chunk Service)
把手稿切分为有边界的块，为每个块抽取实体与元数据，并建立块之间的关联图。
支持按字符位置检索邻近块的分析结果。
"""
from __future__ import annotations
import re
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Union

from core.exceptions import ExtractionError, ValidationError
from core.schemas import (
    ChunkAnalysis, ChunkMetadata, ChunkingOptions, EntityExtraction,
    NarrativeElement, TextChunk
)
from infra.nlp.entities import EntityExtractor, HeuristicEntityExtractor
from infra.storage import graph_store
from infra.utils.text_splitters import (
    ManuscriptTextSplitter, estimate_token_count, split_sentences
)

logger = logging.getLogger(__name__)

MAX_KEY_EVENTS = 5

PAST_MARKERS_RE = re.compile(
    r"\b(remembered|recalled|once|used to|years ago|long ago|had been|back then|memory of)\b", re.IGNORECASE
)
FUTURE_MARKERS_RE = re.compile(
    r"\b(would|someday|one day|promised|warned|warning|will|soon|tomorrow|vowed|foretold)\b", re.IGNORECASE
)
CHANGE_MARKERS_RE = re.compile(
    r"\b(realized|realised|decided|became|changed|learned|understood|no longer|for the first time)\b", re.IGNORECASE
)
ARTICLE_NOUN_RE = re.compile(r"\b(?:the|a|an|his|her|their|its)\s+([a-z][a-z'-]{2,})\b")


class ContextChunkManager:
    """
    块存储与关系索引。
    每次调用 chunk_manuscript 都会清空并重建全部块状态，不跨调用累积。
    """

    def __init__(self, extractor: Optional[EntityExtractor] = None):
        self._extractor = extractor or HeuristicEntityExtractor()
        self._chunks: Dict[str, TextChunk] = {}
        self._analyses: Dict[str, ChunkAnalysis] = {}
        self._contextual_elements: Dict[str, NarrativeElement] = {}
        self._graph = graph_store.build_relation_graph([])

    # --- 分块主流程 ---

    def chunk_manuscript(self, text: str, options: Union[ChunkingOptions, dict]) -> List[TextChunk]:
        """
        将手稿切分为块并完成索引。

        Args:
            text (str): 手稿全文。
            options (ChunkingOptions | dict): 分块参数，全部必填。

        Returns:
            List[TextChunk]: 按顺序排列的块。
        """
        options = self._coerce_options(options)
        self._reset()

        chunks = ManuscriptTextSplitter(options).create_chunks(text)

        analyses = []
        for chunk in chunks:
            analysis = self._analyze_chunk(chunk)
            self._adjust_for_contextual_elements(chunk, analysis)
            analyses.append(analysis)

        for analysis in analyses:
            self._chunks[analysis.chunk.id] = analysis.chunk
            self._analyses[analysis.chunk.id] = analysis
            self._extract_contextual_elements(analysis)

        self._build_chunk_relationships()
        logger.info(f"手稿切分完成: {len(chunks)} 个块, {self._graph.number_of_edges()} 条关联。")
        return list(self._chunks.values())

    def get_context_for_position(self, position: int, window_size: int = 2) -> List[ChunkAnalysis]:
        """
        获取某个字符位置附近的块分析结果。

        position 是源文本中的字符偏移，先换算为所在块的序号，再取序号相差
        不超过 window_size 的所有块，按与 position 的边界距离升序返回。
        """
        if window_size < 0:
            raise ValidationError(f"window_size 必须为非负整数，收到 '{window_size}'。")
        if not self._chunks:
            return []

        target_index = self._get_chunk_index_for_position(position)
        relevant = [
            analysis for analysis in self._analyses.values()
            if abs(analysis.chunk.index - target_index) <= window_size
        ]
        return sorted(relevant, key=lambda a: self._boundary_distance(a.chunk, position))

    # --- 查询接口 ---

    def get_chunks(self) -> List[TextChunk]:
        return list(self._chunks.values())

    def get_chunk(self, chunk_id: str) -> Optional[TextChunk]:
        return self._chunks.get(chunk_id)

    def get_analysis(self, chunk_id: str) -> Optional[ChunkAnalysis]:
        return self._analyses.get(chunk_id)

    def get_related_chunks(self, chunk_id: str) -> List[ChunkAnalysis]:
        analysis = self._analyses.get(chunk_id)
        if not analysis:
            return []
        return [self._analyses[cid] for cid in analysis.related_chunks]

    def get_contextual_elements(self) -> Dict[str, NarrativeElement]:
        """按名称索引的上下文元素缓存（跨块合并后的首末提及位置）"""
        return dict(self._contextual_elements)

    def get_graph_stats(self) -> Dict:
        return graph_store.get_graph_stats(self._graph)

    def export_graph(self, path: str):
        graph_store.save_graph(path, self._graph)

    @staticmethod
    def load_graph(path: str):
        """读取已导出的关系图，不影响当前块状态"""
        return graph_store.load_graph(path)

    # --- 内部实现 ---

    @staticmethod
    def _coerce_options(options) -> ChunkingOptions:
        if isinstance(options, ChunkingOptions):
            return options
        if isinstance(options, dict):
            return ChunkingOptions.from_dict(options)
        raise ValidationError(f"无法识别的分块参数类型: {type(options).__name__}")

    def _reset(self):
        self._chunks.clear()
        self._analyses.clear()
        self._contextual_elements.clear()
        self._graph = graph_store.build_relation_graph([])

    def _run_extraction(self, chunk: TextChunk) -> EntityExtraction:
        try:
            result = self._extractor(chunk.content)
        except ExtractionError:
            raise
        except Exception as e:
            logger.error(f"块 {chunk.id} 的实体抽取失败: {e}", exc_info=True)
            raise ExtractionError(f"块 {chunk.id} 的实体抽取失败: {e}") from e
        if isinstance(result, dict):
            return EntityExtraction.from_dict(result)
        return result

    def _analyze_chunk(self, chunk: TextChunk) -> ChunkAnalysis:
        entities = self._run_extraction(chunk)
        chunk.characters.update(entities.people)
        chunk.locations.update(entities.places)

        sentences = [chunk.content[s:e] for s, e in split_sentences(chunk.content)]
        events = self._extract_events(sentences, entities)
        chunk.key_events = events
        chunk.timeframe = entities.dates[0] if entities.dates else ""

        metadata = ChunkMetadata(
            word_count=len(chunk.content.split()),
            token_count=estimate_token_count(chunk.content),
            significant_elements={
                "characters": list(entities.people),
                "locations": list(entities.places),
                "objects": self._extract_significant_objects(chunk.content),
                "events": list(events),
            },
            contextual_references={
                "past_events": [s for s in sentences if PAST_MARKERS_RE.search(s)],
                "future_setups": [s for s in sentences if FUTURE_MARKERS_RE.search(s)],
                "character_arcs": self._extract_character_arcs(sentences, entities.people),
            },
        )

        return ChunkAnalysis(
            chunk=chunk,
            metadata=metadata,
            contextual_elements=self._identify_contextual_elements(chunk, metadata, entities.dates),
            related_chunks=[],
        )

    @staticmethod
    def _extract_events(sentences: List[str], entities: EntityExtraction) -> List[str]:
        """提及任一人物或地点的句子视为关键事件"""
        names = list(entities.people) + list(entities.places)
        events = []
        for sentence in sentences:
            if any(name in sentence for name in names):
                events.append(sentence)
            if len(events) >= MAX_KEY_EVENTS:
                break
        return events

    @staticmethod
    def _extract_significant_objects(content: str) -> List[str]:
        """块内重复出现（至少两次）的冠词后名词"""
        counts: Dict[str, int] = {}
        for m in ARTICLE_NOUN_RE.finditer(content):
            word = m.group(1)
            counts[word] = counts.get(word, 0) + 1
        return [word for word, count in counts.items() if count >= 2]

    @staticmethod
    def _extract_character_arcs(sentences: List[str], people) -> Dict[str, str]:
        arcs = {}
        for name in people:
            for sentence in sentences:
                if name in sentence and CHANGE_MARKERS_RE.search(sentence):
                    arcs[name] = sentence
                    break
        return arcs

    @staticmethod
    def _mentions(chunk: TextChunk, name: str) -> List[int]:
        return [chunk.start_position + m.start() for m in re.finditer(re.escape(name), chunk.content)]

    def _identify_contextual_elements(self, chunk: TextChunk, metadata: ChunkMetadata, dates) -> List[NarrativeElement]:
        significant = metadata.significant_elements
        typed_names = (
            [("character", n) for n in significant["characters"]]
            + [("location", n) for n in significant["locations"]]
            + [("time", n) for n in dates]
            # 反复出现的物件作为象征 (symbol) 归入主题类别
            + [("symbol", n) for n in significant["objects"]]
        )

        elements = []
        for element_type, name in typed_names:
            mentions = self._mentions(chunk, name)
            positions = mentions or [chunk.start_position]
            elements.append(NarrativeElement(
                type=element_type,
                name=name,
                first_mention=positions[0],
                last_mention=positions[-1],
                significance=min(10, 4 + 2 * len(mentions)),
                references=[chunk.id],
            ))

        for event in significant["events"]:
            position = chunk.start_position + max(chunk.content.find(event), 0)
            elements.append(NarrativeElement(
                type="event",
                name=event,
                first_mention=position,
                last_mention=position,
                significance=5,
                references=[chunk.id],
            ))
        return elements

    def _adjust_for_contextual_elements(self, chunk: TextChunk, analysis: ChunkAnalysis):
        """
        保证命名元素不会被块边界截断。
        块边界只落在段落或句子之间，名称不会跨越边界，因此这里不需要移动边界。
        """
        logger.debug(f"块 {chunk.id} 含 {len(analysis.contextual_elements)} 个上下文元素，边界无需调整。")

    def _extract_contextual_elements(self, analysis: ChunkAnalysis):
        """按名称合并进元素缓存，记录跨块的首末提及位置"""
        for element in analysis.contextual_elements:
            existing = self._contextual_elements.get(element.name)
            if existing is None:
                self._contextual_elements[element.name] = replace(element, references=list(element.references))
                continue
            self._contextual_elements[element.name] = replace(
                existing,
                first_mention=min(existing.first_mention, element.first_mention),
                last_mention=max(existing.last_mention, element.last_mention),
                significance=max(existing.significance, element.significance),
                references=existing.references + [r for r in element.references if r not in existing.references],
            )

    def _build_chunk_relationships(self):
        self._graph = graph_store.build_relation_graph(list(self._analyses.values()))
        for chunk_id, analysis in self._analyses.items():
            analysis.related_chunks = graph_store.get_related_chunk_ids(self._graph, chunk_id)

    @staticmethod
    def _boundary_distance(chunk: TextChunk, position: int) -> int:
        return min(abs(position - chunk.start_position), abs(position - chunk.end_position))

    def _get_chunk_index_for_position(self, position: int) -> int:
        """所在块的序号；位置落在块间空隙或文本之外时取边界最近的块"""
        nearest = None
        for chunk in self._chunks.values():
            if chunk.start_position <= position <= chunk.end_position:
                return chunk.index
            if nearest is None or self._boundary_distance(chunk, position) < self._boundary_distance(nearest, position):
                nearest = chunk
        return nearest.index
