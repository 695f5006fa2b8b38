"""
共享测试夹具
"""
import pytest

from core.schemas import ChunkingOptions
from prompts.manager import force_reload_prompts

MANUSCRIPT = (
    "Anna walked to the harbor.\n"
    "***\n"
    "Ben waited at the harbor.\n"
    "***\n"
    "Anna met Ben in 1990.\n"
    "***\n"
    "The rain fell."
)


def make_options(**overrides) -> ChunkingOptions:
    params = dict(
        max_chunk_size=1000,
        overlap_size=0,
        preserve_scenes=True,
        preserve_chapters=True,
        context_window=2,
    )
    params.update(overrides)
    return ChunkingOptions(**params)


def make_extractor(people=(), places=(), dates=()):
    """只识别给定名单的确定性抽取器，返回 dict 以覆盖归一化路径"""
    def _extract(text):
        return {
            "people": [p for p in people if p in text],
            "places": [p for p in places if p in text],
            "dates": [d for d in dates if d in text],
            "sentiment_score": 0.0,
        }
    return _extract


@pytest.fixture
def options():
    return make_options()


@pytest.fixture
def manuscript():
    return MANUSCRIPT


@pytest.fixture
def harbor_extractor():
    return make_extractor(people=("Anna", "Ben"), places=("harbor",), dates=("1990",))


@pytest.fixture(autouse=True)
def _fresh_prompt_cache(monkeypatch):
    """每个用例都从默认提示词库开始"""
    monkeypatch.delenv("MANUSCRIPT_PROMPTS_PATH", raising=False)
    force_reload_prompts()
    yield
    force_reload_prompts()
