"""
知识抽取链模块 (Knowledge Chains)
定义从手稿片段中抽取人物、地点、日期与情感倾向的 AI 处理链。
"""
from langchain_core.output_parsers import JsonOutputParser
from infra.llm.factory import get_llm
from prompts import get_prompt_template
import logging

logger = logging.getLogger(__name__)

def create_entity_extraction_chain(llm=None):
    """创建实体抽取链，未提供 llm 时从 steps.entity_extractor 获取"""
    prompt = get_prompt_template("entity_extraction")
    llm = llm if llm is not None else get_llm("entity_extractor", temperature=0.1)
    return prompt | llm | JsonOutputParser()
