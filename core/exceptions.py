"""
自定义异常类
用于在分块、推理日志与提示词组装各层之间传递具有明确语义的错误信息。
"""

class ValidationError(ValueError):
    """当输入数据（思考节点、分块参数等）不合法时发生错误，在任何状态变更之前抛出"""
    pass

class TemplateNotFoundError(LookupError):
    """当请求的提示词模板未注册时发生错误"""
    pass

class ExtractionError(Exception):
    """当实体抽取协作方（启发式或 LLM）执行失败时发生错误"""
    pass

class ConfigurationError(Exception):
    """当应用配置不正确或缺失时发生错误"""
    pass

class ContextOperationError(Exception):
    """当业务步骤执行过程中出现未预期的错误"""
    pass
