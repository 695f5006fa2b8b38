"""
工作流协调中心 (Workflow)
系统的 Facade 层：ManuscriptSession 把分块索引、推理日志与提示词组装三个服务绑定为一个分析会话，
run_step 负责把外部工具层的请求分发到具体服务。
"""
from __future__ import annotations
import logging
from typing import Iterable, Optional, Union

from core.exceptions import (
    ContextOperationError, ExtractionError, TemplateNotFoundError, ValidationError
)
from core.schemas import ChunkingOptions, ContextWindow, DynamicPrompt

from services.chunk_service import ContextChunkManager
from services.thinking_service import SequentialStoryThinking
from services.prompt_service import DynamicPromptManager

logger = logging.getLogger(__name__)

# 这些错误属于调用方可以处理的业务语义，原样抛出
PROPAGATED_ERRORS = (ValidationError, TemplateNotFoundError, ExtractionError, ContextOperationError)


class ManuscriptSession:
    """
    一个分析会话。会话内的三个管理器互不加锁，多线程宿主需要为每个活动会话各建一个实例。
    """

    def __init__(self, chunker: ContextChunkManager = None, thinking: SequentialStoryThinking = None,
                 prompts: DynamicPromptManager = None, options: Optional[ChunkingOptions] = None):
        self.chunker = chunker or ContextChunkManager()
        self.thinking = thinking or SequentialStoryThinking()
        self.prompts = prompts or DynamicPromptManager()
        self.options = options

    @classmethod
    def from_config(cls, preset: str = "default", config: dict = None) -> "ManuscriptSession":
        """根据配置文件选择实体抽取后端与分块预设"""
        from config.loader import load_config, get_chunking_options
        from infra.nlp.entities import get_entity_extractor

        config = config if config is not None else load_config()
        return cls(
            chunker=ContextChunkManager(get_entity_extractor(config)),
            options=get_chunking_options(preset, config),
        )

    def save_preset(self, preset: str, path: str = None):
        """把会话当前的分块参数写入用户配置，作为可复用的预设。"""
        from config.loader import load_user_config, save_user_config

        if self.options is None:
            raise ValidationError("会话没有分块参数，无法保存预设。")
        user_config = load_user_config(path)
        user_config.setdefault("chunking", {})[preset] = self.options.to_dict()
        save_user_config(user_config, path)
        logger.info(f"分块预设 '{preset}' 已保存。")

    def chunk(self, text: str, options: Union[ChunkingOptions, dict, None] = None):
        options = options or self.options
        if options is None:
            raise ValidationError("未提供分块参数，且会话没有默认分块参数。")
        chunks = self.chunker.chunk_manuscript(text, options)
        if isinstance(options, ChunkingOptions):
            self.options = options
        return chunks

    def prompt_for_position(self, position: int, template_name: str, local_constraints: Iterable = (),
                            window_size: Optional[int] = None) -> DynamicPrompt:
        """
        分块索引 -> 提示词组装。
        距离 position 最近的块作为焦点，窗口内其余块的元素按块顺序并入前后文。
        """
        if window_size is None:
            window_size = self.options.context_window if self.options else 2
        analyses = self.chunker.get_context_for_position(position, window_size)
        if not analyses:
            raise ContextOperationError("尚未切分手稿，无法定位上下文。")

        focus_analysis = analyses[0]
        window = self.prompts.integrate_chunk_analysis(focus_analysis)
        before, after = list(window.before), list(window.after)
        for analysis in analyses[1:]:
            neighbour = self.prompts.integrate_chunk_analysis(analysis)
            elements = neighbour.before + neighbour.after
            if analysis.chunk.index < focus_analysis.chunk.index:
                before.extend(elements)
            else:
                after.extend(elements)

        window = ContextWindow(before=tuple(before), after=tuple(after), current_focus=window.current_focus)
        return self.prompts.create_prompt(template_name, window.current_focus, window, local_constraints)

    def prompt_for_current_thought(self) -> DynamicPrompt:
        """推理日志 -> 提示词组装：以当前分支最后一个节点为焦点"""
        history = self.thinking.get_thought_history()
        if not history:
            raise ContextOperationError(f"分支 '{self.thinking.current_branch}' 中还没有任何思考。")
        return self.prompts.create_sequential_prompt(history[-1], history[:-1])


def bootstrap(preset: str = "default", dotenv_path: str = None, log_dir: str = None,
              log_to_file: bool = True) -> ManuscriptSession:
    """
    宿主进程的启动入口：加载 .env，初始化日志，再按配置创建会话。
    """
    from config import load_environment
    from core.logger import setup_logging

    load_environment(dotenv_path)
    setup_logging(log_dir, to_file=log_to_file)
    logger.info(f"会话启动，分块预设: {preset}")
    return ManuscriptSession.from_config(preset)


def _integrate(session: ManuscriptSession, chunk_id: str) -> ContextWindow:
    analysis = session.chunker.get_analysis(chunk_id)
    if analysis is None:
        raise ContextOperationError(f"块 '{chunk_id}' 不存在。")
    return session.prompts.integrate_chunk_analysis(analysis)


STEPS = {
    # 1. 分块与索引
    "chunk_manuscript": lambda s, p: s.chunk(p["text"], p.get("options")),
    "get_context_for_position": lambda s, p: s.chunker.get_context_for_position(
        p["position"], p.get("window_size", 2)),
    # 2. 推理日志
    "process_thought": lambda s, p: s.thinking.process_thought(p["thought"]),
    "get_branches": lambda s, p: s.thinking.get_branches(),
    "switch_branch": lambda s, p: s.thinking.switch_branch(p["name"]),
    "get_thought_history": lambda s, p: s.thinking.get_thought_history(),
    "get_branch_history": lambda s, p: s.thinking.get_branch_history(p["name"]),
    "merge_branches": lambda s, p: s.thinking.merge_branches(p["source"], p["target"], p["at_thought"]),
    # 3. 提示词组装
    "create_prompt": lambda s, p: s.prompts.create_prompt(
        p["template_name"], p["focus"], p["context_window"], p.get("local_constraints", ())),
    "integrate_chunk_analysis": lambda s, p: _integrate(s, p["chunk_id"]),
    "create_sequential_prompt": lambda s, p: s.prompts.create_sequential_prompt(
        p["thought"], p.get("thought_history", ())),
    "add_global_constraint": lambda s, p: s.prompts.add_global_constraint(p["constraint"]),
    "add_template": lambda s, p: s.prompts.add_template(p["name"], p["template"]),
    "update_context_history": lambda s, p: s.prompts.update_context_history(p["focus_id"], p["context"]),
    "render_prompt": lambda s, p: s.prompts.render_prompt(p["prompt"], p["focus"]),
    # 4. 组合流程
    "prompt_for_position": lambda s, p: s.prompt_for_position(
        p["position"], p["template_name"], p.get("local_constraints", ()), p.get("window_size")),
    "prompt_for_current_thought": lambda s, p: s.prompt_for_current_thought(),
    "save_preset": lambda s, p: s.save_preset(p["preset"], p.get("path")),
}


def run_step(step_name: str, session: ManuscriptSession, **payload):
    """
    业务逻辑统一入口点。

    Args:
        step_name: 步骤名称（见 STEPS）
        session: 当前分析会话
        **payload: 步骤参数

    Raises:
        ValueError: 未知的步骤名称。
        ContextOperationError: 步骤执行中出现未预期的错误。
    """
    handler = STEPS.get(step_name)
    if handler is None:
        raise ValueError(f"未知的步骤名称: {step_name}")

    logger.info(f"路由请求: {step_name} (参数: {sorted(payload.keys())})")
    try:
        return handler(session, payload)
    except PROPAGATED_ERRORS:
        raise
    except Exception as e:
        logger.error(f"执行 {step_name} 失败: {e}", exc_info=True)
        raise ContextOperationError(f"业务执行失败: {e}") from e
