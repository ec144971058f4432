"""自定义异常类定义"""

class LLMLogException(Exception):
    """对话采集服务基础异常类"""
    def __init__(self, message: str, status_code: int = 500, error_type: str = "internal_error"):
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(self.message)


class LLMLogConfigurationError(LLMLogException):
    """配置错误异常"""
    def __init__(self, message: str = "服务配置不完整或无效"):
        super().__init__(message, status_code=500, error_type="configuration_error")


class PlatformNotSupportedError(LLMLogException):
    """不支持的平台或接口路径"""
    def __init__(self, target: str):
        message = f"不支持的平台或接口: {target}"
        super().__init__(message, status_code=400, error_type="invalid_platform")


class InvalidCapturePayloadError(LLMLogException):
    """采集数据格式错误"""
    def __init__(self, message: str = "采集数据格式无效"):
        super().__init__(message, status_code=400, error_type="invalid_payload")


class ConversationNotFoundError(LLMLogException):
    """对话记录不存在"""
    def __init__(self, conversation_id):
        message = f"对话记录不存在: {conversation_id}"
        super().__init__(message, status_code=404, error_type="not_found")


class StorageError(LLMLogException):
    """存储层操作失败"""
    def __init__(self, message: str = "数据库操作失败"):
        super().__init__(message, status_code=500, error_type="storage_error")
