"""
配置加载器 (Config Loader)
负责加载内置的 config.yaml 与用户的 user_config.yaml，并按分区合并。
"""
import yaml
import os
import logging

from core.exceptions import ConfigurationError, ValidationError
from core.schemas import ChunkingOptions

logger = logging.getLogger(__name__)

CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.yaml")

# 用户配置中这些分区会覆盖或扩展基础配置
MERGEABLE_SECTIONS = ("chunking", "models", "steps", "providers", "extraction")


def get_user_config_path() -> str:
    """用户配置路径，可由环境变量 MANUSCRIPT_USER_CONFIG 覆盖。"""
    return os.getenv("MANUSCRIPT_USER_CONFIG", os.path.abspath("user_config.yaml"))


def _load_yaml(file_path: str) -> dict:
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if data else {}
    except yaml.YAMLError as e:
        logger.error(f"解析 {file_path} 文件失败: {e}", exc_info=True)
        raise ConfigurationError(f"错误: 解析 {file_path} 文件失败: {e}")


def _merge_configs(base_config: dict, user_config: dict) -> dict:
    """
    合并基础配置和用户配置。
    字典类型的分区逐键更新，其余键直接覆盖。
    """
    merged_config = dict(base_config)

    for section in MERGEABLE_SECTIONS:
        if section in user_config:
            merged_config[section] = dict(merged_config.get(section) or {})
            merged_config[section].update(user_config[section] or {})

    for key, value in user_config.items():
        if key not in MERGEABLE_SECTIONS:
            merged_config[key] = value

    return merged_config


def load_user_config(path: str = None) -> dict:
    """
    加载并解析 user_config.yaml 文件，不存在时返回空字典。
    """
    path = path or get_user_config_path()
    if not os.path.exists(path):
        return {}
    return _load_yaml(path)


def load_config(config_path: str = None, user_config_path: str = None) -> dict:
    """
    加载并解析 config.yaml 和 user_config.yaml 文件，并进行合并。
    """
    config_path = config_path or CONFIG_PATH
    if not os.path.exists(config_path):
        logger.warning(f"配置文件 {config_path} 未找到，返回默认空配置。")
        base_config = {}
    else:
        base_config = _load_yaml(config_path)

    user_config = load_user_config(user_config_path)
    return _merge_configs(base_config, user_config)


def save_user_config(user_config_data: dict, path: str = None):
    """
    将用户配置字典写回到 user_config.yaml 文件。

    Args:
        user_config_data (dict): 要保存的用户配置数据（例如 chunking 预设）。
    """
    path = path or get_user_config_path()
    try:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(user_config_data, f, allow_unicode=True, sort_keys=False)
        logger.info(f"用户配置已成功保存到 {path}。")
    except OSError as e:
        logger.error(f"写入 {path} 文件失败: {e}", exc_info=True)
        raise IOError(f"错误: 写入 {path} 文件失败: {e}")


def get_chunking_options(preset: str = "default", config: dict = None) -> ChunkingOptions:
    """
    根据预设名称构建分块参数。

    Args:
        preset (str): config.yaml 中 'chunking' 分区下的预设名。
        config (dict): 已加载的配置，未提供时重新加载。

    Returns:
        ChunkingOptions: 分块参数对象。
    """
    config = config if config is not None else load_config()
    preset_config = (config.get("chunking") or {}).get(preset)
    if not preset_config:
        logger.error(f"在配置的 'chunking' 分区中找不到预设 '{preset}'。")
        raise ConfigurationError(f"错误: 在配置的 'chunking' 分区中找不到预设 '{preset}'。")
    try:
        return ChunkingOptions.from_dict(preset_config)
    except ValidationError as e:
        logger.error(f"分块预设 '{preset}' 不合法: {e}")
        raise ConfigurationError(f"错误: 分块预设 '{preset}' 不合法: {e}")
