"""
手稿切分器 (Manuscript Text Splitter)
一个 LangChain 兼容的文本切分器：按段落累积成块，遵守场景分隔与章节标题边界，
并保证块边界只落在段落或句子之间。
"""
import math
import re
import uuid
import logging
from typing import Iterator, List, NamedTuple, Tuple

from langchain_text_splitters import TextSplitter

from core.schemas import ChunkingOptions, TextChunk

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

SCENE_BREAK_RE = re.compile(r"^[\s]*[*#\-_]{3,}[\s]*$")
CHAPTER_BREAK_RE = re.compile(r"^Chapter\s+\d+", re.IGNORECASE)
PARAGRAPH_RE = re.compile(r"[^\n]+")
SENTENCE_RE = re.compile(r"[^.!?。！？\n]*(?:[.!?。！？]+[\"'”’)\]]*|(?=\n)|$)")


def estimate_token_count(text: str) -> int:
    """粗略估算 token 数（每 4 个字符约 1 个 token）"""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def is_scene_break(text: str) -> bool:
    return bool(SCENE_BREAK_RE.match(text))


def is_chapter_break(text: str) -> bool:
    return bool(CHAPTER_BREAK_RE.match(text))


def split_sentences(text: str) -> List[Tuple[int, int]]:
    """
    返回文本中每个句子的 (start, end) 偏移，已去掉首尾空白。
    换行同样视为句子边界。
    """
    spans = []
    for m in SENTENCE_RE.finditer(text):
        segment = m.group(0)
        if not segment.strip():
            continue
        start = m.start() + (len(segment) - len(segment.lstrip()))
        end = m.start() + len(segment.rstrip())
        spans.append((start, end))
    return spans


class _Unit(NamedTuple):
    """切分的最小单位：一个段落，或超长段落中的一组句子"""
    content: str
    start: int
    end: int
    continues_paragraph: bool


class ManuscriptTextSplitter(TextSplitter):
    """
    按段落累积的手稿切分器。

    新块的开启条件：
    - 当前块的 token 估算值已达到 max_chunk_size；
    - preserve_scenes 时，下一段是场景分隔行（如 "***"）；
    - preserve_chapters 时，下一段以 "Chapter <数字>" 开头。
    """

    def __init__(self, options: ChunkingOptions, **kwargs):
        kwargs.setdefault("chunk_size", options.max_chunk_size)
        kwargs.setdefault("chunk_overlap", min(options.overlap_size, options.max_chunk_size))
        kwargs.setdefault("length_function", estimate_token_count)
        super().__init__(**kwargs)
        self.options = options

    def split_text(self, text: str) -> List[str]:
        return [chunk.content for chunk in self.create_chunks(text)]

    def create_chunks(self, text: str) -> List[TextChunk]:
        """
        将文本切分为有序的 TextChunk 序列。空文本返回空列表。
        """
        if not text or not text.strip():
            return []

        chunks = self._create_initial_chunks(text)
        previous = None
        for chunk in chunks:
            self._adjust_to_complete_sentences(chunk)
            if self.options.overlap_size > 0 and previous is not None:
                self._add_chunk_overlap(chunk, previous, self.options.overlap_size)
            previous = chunk

        logger.debug(f"通过 ManuscriptTextSplitter 将文本切分为 {len(chunks)} 个块。")
        return chunks

    # --- 第一遍：按自然边界累积 ---

    def _iter_units(self, text: str) -> Iterator[_Unit]:
        for m in PARAGRAPH_RE.finditer(text):
            raw = m.group(0)
            if not raw.strip():
                continue
            start = m.start() + (len(raw) - len(raw.lstrip()))
            end = m.start() + len(raw.rstrip())
            paragraph = text[start:end]
            if estimate_token_count(paragraph) > self.options.max_chunk_size:
                yield from self._split_oversized_paragraph(paragraph, start)
            else:
                yield _Unit(paragraph, start, end, False)

    def _split_oversized_paragraph(self, paragraph: str, offset: int) -> Iterator[_Unit]:
        """超长段落按句子分组，每组不超过 max_chunk_size（单句超长时独立成组）"""
        spans = split_sentences(paragraph)
        group_start = None
        group_end = None
        first = True
        for start, end in spans:
            if group_start is None:
                group_start, group_end = start, end
                continue
            if estimate_token_count(paragraph[group_start:end]) > self.options.max_chunk_size:
                yield _Unit(paragraph[group_start:group_end], offset + group_start, offset + group_end, not first)
                first = False
                group_start = start
            group_end = end
        if group_start is not None:
            yield _Unit(paragraph[group_start:group_end], offset + group_start, offset + group_end, not first)

    def _should_start_new_chunk(self, current: TextChunk, unit: _Unit) -> bool:
        if current is None:
            return True
        if unit.continues_paragraph:
            return True
        if estimate_token_count(current.content) >= self.options.max_chunk_size:
            return True
        if self.options.preserve_scenes and is_scene_break(unit.content):
            return True
        if self.options.preserve_chapters and is_chapter_break(unit.content):
            return True
        return False

    def _create_initial_chunks(self, text: str) -> List[TextChunk]:
        chunks = []
        current = None
        scene_index = 0
        chapter_index = 0

        for unit in self._iter_units(text):
            if not unit.continues_paragraph:
                if is_chapter_break(unit.content):
                    chapter_index += 1
                    scene_index = 0
                elif is_scene_break(unit.content):
                    scene_index += 1

            if self._should_start_new_chunk(current, unit):
                if current is not None:
                    chunks.append(current)
                current = TextChunk(
                    id=str(uuid.uuid4()),
                    content=unit.content,
                    start_position=unit.start,
                    end_position=unit.end,
                    index=len(chunks),
                    scene_index=scene_index,
                    chapter_index=chapter_index,
                )
            else:
                current.content += "\n" + unit.content
                current.end_position = unit.end

        if current is not None:
            chunks.append(current)
        return chunks

    # --- 第二遍：边界修整 ---

    def _adjust_to_complete_sentences(self, chunk: TextChunk):
        """
        块边界只会落在段落之间或超长段落的句子之间，这里只需去掉尾部空白，
        使块内容以完整句子（或完整段落）结束。
        """
        chunk.content = chunk.content.rstrip()

    def _add_chunk_overlap(self, chunk: TextChunk, previous: TextChunk, overlap_size: int):
        """
        把上一块末尾约 overlap_size 个 token 的文本放入 overlap_context。
        块内容与偏移保持不变。
        """
        n_chars = overlap_size * CHARS_PER_TOKEN
        tail = previous.content[-n_chars:]
        if len(previous.content) > n_chars:
            # 从下一个词开始，避免截断单词
            cut = re.search(r"\s", tail)
            tail = tail[cut.end():] if cut else tail
        chunk.overlap_context = tail.strip()
