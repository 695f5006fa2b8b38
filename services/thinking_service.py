"""
顺序推理日志服务 (Sequential Story Thinking)
以分支方式记录分析性"思考"节点：修订即分叉，合并生成新分支。
分支一经写入便不再原地修改，所有分叉与合并都通过切片复制生成新的元组。
"""
from __future__ import annotations
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple, Union

from core.exceptions import ValidationError
from core.schemas import StoryAnalysisThought

logger = logging.getLogger(__name__)

MAIN_BRANCH = "main"


class SequentialStoryThinking:
    """
    可分支的推理日志。
    "main" 分支隐式存在（为空），首次写入时才真正出现在分支列表中。
    """

    def __init__(self):
        self._branches: Dict[str, Tuple[StoryAnalysisThought, ...]] = {}
        self._current_branch = MAIN_BRANCH
        self._revision_counter = 0
        self._merge_counter = 0
        self.last_merged_branch: Optional[str] = None

    @property
    def current_branch(self) -> str:
        return self._current_branch

    def process_thought(self, data: Union[StoryAnalysisThought, dict]) -> StoryAnalysisThought:
        """
        校验并记录一个思考节点。

        修订节点会以当前分支前 revises_thought - 1 个节点为前缀新建分支，
        并切换到该分支；原分支保持不变。普通节点追加到当前分支。

        Returns:
            StoryAnalysisThought: 实际写入的节点（total_thoughts 可能已被上调）。
        """
        thought = data if isinstance(data, StoryAnalysisThought) else StoryAnalysisThought.from_dict(data)
        self._validate_thought(thought)

        history = self.get_thought_history()
        total = max(thought.total_thoughts, thought.thought_number)
        if history:
            total = max(total, history[-1].total_thoughts)
        if total != thought.total_thoughts:
            thought = replace(thought, total_thoughts=total)

        if thought.is_revision:
            self._revision_counter += 1
            branch_name = f"revision-{self._revision_counter}"
            self._branches[branch_name] = history[:thought.revises_thought - 1] + (thought,)
            self._current_branch = branch_name
            logger.info(f"思考 #{thought.thought_number} 修订了 #{thought.revises_thought}，新建分支 '{branch_name}'。")
        else:
            self._branches[self._current_branch] = history + (thought,)
            logger.debug(f"思考 #{thought.thought_number} 已追加到分支 '{self._current_branch}'。")

        return thought

    def get_branches(self) -> List[str]:
        return list(self._branches.keys())

    def switch_branch(self, name: str) -> bool:
        if name not in self._branches:
            logger.warning(f"切换失败，分支 '{name}' 不存在。")
            return False
        self._current_branch = name
        return True

    def get_thought_history(self) -> Tuple[StoryAnalysisThought, ...]:
        return self._branches.get(self._current_branch, ())

    def get_branch_history(self, name: str) -> Optional[Tuple[StoryAnalysisThought, ...]]:
        return self._branches.get(name)

    def merge_branches(self, source: str, target: str, at_thought: int) -> bool:
        """
        合并两个分支：保留 source 的前 at_thought - 1 个节点，从第 at_thought 步起改用 target 的节点。
        结果以新名称保存，两个输入分支都不变，当前分支不切换。
        """
        if not isinstance(at_thought, int) or at_thought < 1:
            raise ValidationError(f"at_thought 必须为正整数，收到 '{at_thought}'。")

        source_history = self._branches.get(source)
        target_history = self._branches.get(target)
        if source_history is None or target_history is None:
            logger.warning(f"合并失败，分支 '{source}' 或 '{target}' 不存在。")
            return False

        self._merge_counter += 1
        merged_name = f"merge-{self._merge_counter}"
        self._branches[merged_name] = source_history[:at_thought - 1] + target_history[at_thought - 1:]
        self.last_merged_branch = merged_name
        logger.info(f"分支 '{source}' 与 '{target}' 已在第 {at_thought} 步合并为 '{merged_name}'。")
        return True

    @staticmethod
    def _validate_thought(thought: StoryAnalysisThought):
        if not isinstance(thought.thought, str) or not thought.thought.strip():
            raise ValidationError("thought 必须为非空字符串。")
        if not isinstance(thought.thought_number, int) or thought.thought_number < 1:
            raise ValidationError(f"thought_number 必须为正整数，收到 '{thought.thought_number}'。")
        if not isinstance(thought.total_thoughts, int) or thought.total_thoughts < thought.thought_number:
            raise ValidationError(
                f"total_thoughts ({thought.total_thoughts}) 必须大于等于 thought_number ({thought.thought_number})。"
            )
        if thought.is_revision and not thought.revises_thought:
            raise ValidationError("修订节点必须指定 revises_thought。")
        if thought.revises_thought is not None:
            if not isinstance(thought.revises_thought, int) or thought.revises_thought < 1:
                raise ValidationError(f"revises_thought 必须为正整数，收到 '{thought.revises_thought}'。")
            if thought.revises_thought >= thought.thought_number:
                raise ValidationError("不能修订尚未出现的思考。")
