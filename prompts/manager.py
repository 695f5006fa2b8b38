"""
Prompt Manager
动态加载并管理 config/prompts.yaml 中的组装器模板、全局约束与链模板。
支持运行时热重载。
"""
import yaml
import os
import logging
from typing import Dict, List
from langchain_core.prompts import PromptTemplate as ChainPromptTemplate

from core.exceptions import ConfigurationError
from core.schemas import PromptTemplate, PromptConstraint

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "prompts.yaml"
)

def get_prompts_path() -> str:
    """Prompts 文件路径，可由环境变量 MANUSCRIPT_PROMPTS_PATH 覆盖。"""
    return os.getenv("MANUSCRIPT_PROMPTS_PATH", DEFAULT_PROMPTS_PATH)

# --- 热重载缓存层 ---
class PromptCache:
    def __init__(self, path: str = None):
        self._path = path
        self._cache = {}
        self._loaded_path = None
        self._last_modified_time = 0

    @property
    def path(self) -> str:
        return self._path or get_prompts_path()

    def get_prompts(self) -> dict:
        """获取 Prompts，如果文件被修改（或路径变化）则重新加载。"""
        path = self.path
        try:
            current_mtime = os.path.getmtime(path)
            if path != self._loaded_path or current_mtime > self._last_modified_time:
                logger.info(f"检测到 {path} 文件变更，正在热重载...")
                with open(path, 'r', encoding='utf-8') as f:
                    self._cache = yaml.safe_load(f) or {}
                self._loaded_path = path
                self._last_modified_time = current_mtime
                logger.info("热重载完成！")
        except FileNotFoundError:
            logger.error(f"未找到 Prompts 文件: {path}")
            self._cache = {}
            self._loaded_path = None
        except yaml.YAMLError as e:
            # 保留旧缓存
            logger.error(f"加载或重载 Prompts 失败: {e}", exc_info=True)

        return self._cache

    def reset(self):
        self._last_modified_time = 0
        self._loaded_path = None

# 创建一个全局的缓存实例
_prompt_cache = PromptCache()


def get_prompt_template(prompt_key: str) -> ChainPromptTemplate:
    """
    根据 Key 获取 chains 分区中的一个 LangChain PromptTemplate 对象 (支持热重载)。

    Args:
        prompt_key (str): 在 prompts.yaml 的 chains 分区中定义的键。

    Returns:
        PromptTemplate: LangChain 模板对象。
    """
    prompts = _prompt_cache.get_prompts()
    template_str = (prompts.get("chains") or {}).get(prompt_key)

    if not template_str:
        raise ConfigurationError(f"Prompt key '{prompt_key}' not found in {_prompt_cache.path}")

    return ChainPromptTemplate.from_template(template_str)


def get_template_library() -> Dict[str, PromptTemplate]:
    """返回 templates 分区中定义的所有组装器模板。"""
    prompts = _prompt_cache.get_prompts()
    library = {}
    for name, raw in (prompts.get("templates") or {}).items():
        try:
            library[name] = PromptTemplate.from_dict(raw)
        except (KeyError, TypeError) as e:
            logger.error(f"模板 '{name}' 定义不完整: {e}")
            raise ConfigurationError(f"错误: 模板 '{name}' 定义不完整: {e}")
    return library


def get_global_constraints() -> List[PromptConstraint]:
    """返回 global_constraints 分区中预置的全局约束。"""
    prompts = _prompt_cache.get_prompts()
    return [PromptConstraint.from_dict(raw) for raw in (prompts.get("global_constraints") or [])]


def get_sequential_base() -> str:
    """顺序分析提示词的基础骨架。"""
    base = _prompt_cache.get_prompts().get("sequential_base")
    if not base:
        raise ConfigurationError(f"'sequential_base' not found in {_prompt_cache.path}")
    return base


def force_reload_prompts():
    """手动强制重载 Prompts"""
    _prompt_cache.reset() # 下次调用就会强制刷新
    logger.info("已请求手动重载 Prompts。")
