"""异常类测试"""
from llmlog.core.exceptions import (
    LLMLogException,
    LLMLogConfigurationError,
    PlatformNotSupportedError,
    InvalidCapturePayloadError,
    ConversationNotFoundError,
    StorageError
)


def test_base_exception_defaults():
    error = LLMLogException("出错了")
    assert error.status_code == 500
    assert error.error_type == "internal_error"
    assert str(error) == "出错了"


def test_configuration_error():
    """测试配置错误"""
    error = LLMLogConfigurationError("配置无效")
    assert error.status_code == 500
    assert error.message == "配置无效"
    assert error.error_type == "configuration_error"


def test_platform_not_supported_error():
    """测试不支持的平台错误"""
    error = PlatformNotSupportedError("/api/unknown")
    assert error.status_code == 400
    assert "/api/unknown" in error.message
    assert error.error_type == "invalid_platform"


def test_invalid_capture_payload_error():
    error = InvalidCapturePayloadError()
    assert error.status_code == 400
    assert error.error_type == "invalid_payload"


def test_conversation_not_found_error():
    """测试对话不存在错误"""
    error = ConversationNotFoundError(42)
    assert error.status_code == 404
    assert "42" in error.message
    assert error.error_type == "not_found"


def test_storage_error():
    error = StorageError()
    assert error.status_code == 500
    assert error.error_type == "storage_error"
    assert isinstance(error, LLMLogException)
