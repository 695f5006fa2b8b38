"""
管理和提供 LLM（大语言模型）实例。
完全由 config.yaml 中的 steps / models / providers 分区驱动，目前仅供 LLM 实体抽取使用。
"""
import os
import importlib
import logging
from config.loader import load_config
from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

def _get_class_from_path(class_path: str):
    """根据字符串路径动态导入类。"""
    try:
        module_path, class_name = class_path.rsplit(".", 1)
        module = importlib.import_module(module_path)
        return getattr(module, class_name)
    except (ImportError, AttributeError, ValueError) as e:
        logger.error(f"无法从路径 '{class_path}' 动态导入类: {e}", exc_info=True)
        raise ConfigurationError(f"无法从路径 '{class_path}' 动态导入类: {e}")

def _build_constructor_params(model_id: str, user_model_config: dict, template_params: dict, temperature: float) -> dict:
    constructor_params = {"temperature": temperature}
    for param_name, param_type in template_params.items():
        user_value = user_model_config.get(param_name)
        if user_value is None:
            continue
        if param_type == "string":
            constructor_params[param_name] = user_value
        elif param_type in ("secret_env", "url_env"):
            env_var_value = os.getenv(user_value)
            if not env_var_value:
                logger.error(f"模型 '{model_id}' 需要设置环境变量 '{user_value}'，但它未被设置。")
                raise ConfigurationError(f"错误: 需要为模型 '{model_id}' 设置环境变量 '{user_value}'，但它未被设置。")
            # 'api_key_env' -> 'api_key'
            constructor_params[param_name.replace("_env", "")] = env_var_value
    return constructor_params

def get_llm(alias: str, temperature: float = 0.7, config: dict = None):
    """
    根据别名从配置文件获取并实例化一个 LangChain LLM 实例。

    Args:
        alias (str): 步骤的别名 (e.g., "entity_extractor")。
        temperature (float): 控制模型创造力的参数。
        config (dict): 已加载的配置，未提供时重新加载。

    Returns:
        A LangChain chat model instance.
    """
    config = config if config is not None else load_config()

    # 1. 从步骤别名找到模型ID
    model_id = (config.get("steps") or {}).get(alias)
    if not model_id:
        logger.error(f"在配置的 'steps' 部分找不到别名 '{alias}'。")
        raise ConfigurationError(f"错误: 在配置的 'steps' 部分找不到别名 '{alias}'。")

    # 2. 从模型ID找到模型的用户配置
    user_model_config = (config.get("models") or {}).get(model_id)
    if not user_model_config:
        logger.error(f"在配置的 'models' 部分找不到模型ID '{model_id}'。")
        raise ConfigurationError(f"错误: 在配置的 'models' 部分找不到模型ID '{model_id}'。")

    # 3. 从用户配置找到提供商模板
    template_id = user_model_config.get("template")
    provider_template = (config.get("providers") or {}).get(template_id) if template_id else None
    if not provider_template:
        logger.error(f"模型 '{model_id}' 的提供商模板 '{template_id}' 不存在。")
        raise ConfigurationError(f"错误: 模型 '{model_id}' 的提供商模板 '{template_id}' 不存在。")

    # 4. 动态导入模型类
    class_path = provider_template.get("class")
    if not class_path:
        logger.error(f"提供商模板 '{template_id}' 中缺少 'class' 路径。")
        raise ConfigurationError(f"错误: 提供商模板 '{template_id}' 中缺少 'class' 路径。")
    LLMClass = _get_class_from_path(class_path)

    # 5. 准备构造函数参数
    constructor_params = _build_constructor_params(
        model_id, user_model_config, provider_template.get("params", {}), temperature
    )

    logger.info(f"正在实例化模型: {model_id} (类: {LLMClass.__name__})")

    # 6. 实例化并返回
    try:
        return LLMClass(**constructor_params)
    except Exception as e:
        logger.error(f"实例化模型 '{model_id}' 失败: {e}", exc_info=True)
        raise ConfigurationError(f"实例化模型 '{model_id}' 失败: {e}")
