"""平台注册表测试"""
from llmlog.providers.base_provider import PlatformProvider
from llmlog.providers.registry import create_registry


def test_default_registry_contains_enabled_platforms():
    registry = create_registry()
    assert registry.keys() == ["chatgpt", "claude", "tongyi", "deepseek", "gemini", "kimi", "doubao"]
    for provider in registry:
        assert isinstance(provider, PlatformProvider)


def test_match_by_path():
    registry = create_registry()
    assert registry.match("/backend-api/f/conversation").config.name == "ChatGPT"
    assert registry.match("/api/organizations/ab12/chat_conversations/cd34").config.name == "Claude"
    assert registry.match("/dialog/conversation").config.name == "Tongyi"
    assert registry.match("/api/v0/chat/completion").config.name == "DeepSeek"
    assert registry.match("/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate").config.name == "Gemini"
    assert registry.match("/apiv2/kimi.chat.v1.ChatService/Chat").config.name == "Kimi"
    assert registry.match("/api/chat/cq1/completion/stream").config.name == "Kimi"
    assert registry.match("/samantha/chat/completion").config.name == "Doubao"
    assert registry.match("/static/app.js") is None


def test_unknown_platform_keys_are_ignored():
    registry = create_registry(enabled=["chatgpt", "myspace"])
    assert registry.keys() == ["chatgpt"]


def test_get_platform_config():
    registry = create_registry()
    assert registry.get_platform_config("ChatGPT") == {
        "name": "ChatGPT",
        "apiEndpoint": "/backend-api/f/conversation",
    }
    assert registry.get_platform_config("claude")["apiEndpoint"].startswith("^/api/organizations/")
    assert registry.get_platform_config("gemini")["name"] == "Gemini"
    assert registry.get_platform_config("myspace") is None


def test_adapters_do_not_share_state():
    first = create_registry()
    second = create_registry()
    assert first.get("claude").recent_conversations is not second.get("claude").recent_conversations
