"""
实体抽取协作方 (Entity Extraction)
给定一段文本，返回人物、地点、日期列表以及情感得分。
提供离线的启发式实现与基于 LangChain 链的 LLM 实现，两者对外接口一致：
    extractor(text) -> EntityExtraction
"""
from __future__ import annotations
import re
import logging
from typing import Callable, List, Union

from core.schemas import EntityExtraction
from core.exceptions import ExtractionError, ConfigurationError

logger = logging.getLogger(__name__)

EntityExtractor = Callable[[str], Union[EntityExtraction, dict]]

MONTHS = (
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
)
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# 句首常见的大写词，不视为人名
NON_NAME_WORDS = {
    "A", "An", "The", "This", "That", "These", "Those", "There", "Here",
    "He", "She", "It", "They", "We", "I", "You", "His", "Her", "Its", "Their", "Our", "My", "Your",
    "Him", "Them", "Me", "Us",
    "And", "But", "Or", "So", "Yet", "Then", "When", "While", "As", "If", "Because", "Although",
    "After", "Before", "Once", "Now", "Still", "Just", "Only", "Even", "Perhaps", "Maybe",
    "In", "At", "On", "Of", "To", "From", "By", "With", "Without", "Into", "Through", "Across",
    "Under", "Over", "Inside", "Outside", "Near", "Toward", "Towards", "Behind", "Beyond",
    "What", "Who", "Why", "How", "Where", "Which", "Whose",
    "Yes", "No", "Not", "Oh", "Ah", "Well", "Mr", "Mrs", "Ms", "Dr",
    "Chapter", "Part", "Book", "Act", "Scene", "Prologue", "Epilogue", "Paragraph",
    "Every", "Each", "All", "Some", "Many", "Most", "Nothing", "Something", "Everything", "Someone",
}

PLACE_PREPOSITIONS = r"(?:in|at|to|from|near|into|through|across|toward|towards|inside|outside|beyond|within)"

NAME_RUN_RE = re.compile(r"\b[A-Z][a-z][\w'’-]*(?:\s+[A-Z][a-z][\w'’-]*)*")
PLACE_RE = re.compile(
    PLACE_PREPOSITIONS + r"\s+(?:the\s+)?([A-Z][a-z][\w'’-]*(?:\s+[A-Z][a-z][\w'’-]*)*)"
)
DATE_RE = re.compile(
    r"\b(?:(?:" + "|".join(MONTHS) + r")(?:\s+\d{1,2}(?:st|nd|rd|th)?)?(?:,?\s+\d{4})?"
    r"|(?:" + "|".join(WEEKDAYS) + r")"
    r"|\d{1,2}/\d{1,2}/\d{2,4}"
    r"|(?:1[5-9]|20)\d{2})\b"
)
WORD_RE = re.compile(r"[a-z']+")

POSITIVE_WORDS = {
    "happy", "joy", "joyful", "love", "loved", "smile", "smiled", "laugh", "laughed", "hope",
    "hopeful", "warm", "bright", "kind", "gentle", "calm", "peace", "peaceful", "delight",
    "delighted", "safe", "proud", "glad", "beautiful", "triumph", "relief", "relieved",
}
NEGATIVE_WORDS = {
    "sad", "fear", "afraid", "dark", "darkness", "cold", "angry", "anger", "hate", "hated",
    "cry", "cried", "death", "dead", "die", "died", "pain", "grief", "terror", "terrified",
    "lost", "alone", "warning", "threat", "blood", "scream", "screamed", "dread", "whispered",
}


def _unique(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def _strip_possessive(name: str) -> str:
    return re.sub(r"['’]s$", "", name)


class HeuristicEntityExtractor:
    """
    基于正则与词表的离线实体抽取器。
    准确率不是本系统的关注点，它只需给出稳定、可复现的结果。
    """

    def extract_places(self, text: str) -> List[str]:
        return _unique([_strip_possessive(m.group(1)) for m in PLACE_RE.finditer(text)])

    def extract_dates(self, text: str) -> List[str]:
        return _unique([m.group(0) for m in DATE_RE.finditer(text)])

    def extract_people(self, text: str, places: List[str] = None) -> List[str]:
        places = set(places or [])
        calendar_words = set(MONTHS) | set(WEEKDAYS)
        people = []
        for match in NAME_RUN_RE.finditer(text):
            words = [_strip_possessive(w) for w in match.group(0).split()]
            # 去掉句首的功能词，例如 "Then John" -> "John"
            while words and words[0] in NON_NAME_WORDS:
                words = words[1:]
            words = [w for w in words if w not in calendar_words]
            if not words:
                continue
            name = " ".join(words)
            if name in places or name in NON_NAME_WORDS:
                continue
            people.append(name)
        return _unique(people)

    def sentiment_score(self, text: str) -> float:
        words = WORD_RE.findall(text.lower())
        positive = sum(1 for w in words if w in POSITIVE_WORDS)
        negative = sum(1 for w in words if w in NEGATIVE_WORDS)
        total = positive + negative
        if total == 0:
            return 0.0
        return (positive - negative) / total

    def __call__(self, text: str) -> EntityExtraction:
        places = self.extract_places(text)
        return EntityExtraction(
            people=tuple(self.extract_people(text, places)),
            places=tuple(places),
            dates=tuple(self.extract_dates(text)),
            sentiment_score=self.sentiment_score(text),
        )


class LLMEntityExtractor:
    """通过 prompt | llm | JsonOutputParser 链完成实体抽取"""

    def __init__(self, llm=None, chain=None):
        self._llm = llm
        self._chain = chain

    @property
    def chain(self):
        if self._chain is None:
            from chains.knowledge import create_entity_extraction_chain
            self._chain = create_entity_extraction_chain(self._llm)
        return self._chain

    def __call__(self, text: str) -> EntityExtraction:
        try:
            result = self.chain.invoke({"text": text})
        except Exception as e:
            logger.error(f"LLM 实体抽取失败: {e}", exc_info=True)
            raise ExtractionError(f"LLM 实体抽取失败: {e}") from e
        if not isinstance(result, dict):
            logger.error(f"LLM 实体抽取返回了非对象结果: {result!r}")
            raise ExtractionError(f"LLM 实体抽取返回了非对象结果: {type(result).__name__}")
        return EntityExtraction.from_dict(result)


def get_entity_extractor(config: dict = None) -> EntityExtractor:
    """
    根据配置中的 extraction.backend 选择实体抽取器。
    """
    if config is None:
        from config.loader import load_config
        config = load_config()
    backend = (config.get("extraction") or {}).get("backend", "heuristic")
    if backend == "heuristic":
        return HeuristicEntityExtractor()
    if backend == "llm":
        return LLMEntityExtractor()
    logger.error(f"未知的实体抽取后端: '{backend}'")
    raise ConfigurationError(f"错误: 未知的实体抽取后端 '{backend}'。")
