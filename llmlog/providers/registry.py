import logging
from typing import Dict, Iterable, List, Optional

from llmlog.core.config import settings
from llmlog.providers.base_provider import PlatformProvider
from llmlog.providers.chatgpt_provider import ChatGPTProvider
from llmlog.providers.claude_provider import ClaudeProvider, Notifier
from llmlog.providers.deepseek_provider import DeepSeekProvider
from llmlog.providers.doubao_provider import DoubaoProvider
from llmlog.providers.gemini_provider import GeminiProvider
from llmlog.providers.kimi_provider import KimiProvider
from llmlog.providers.tongyi_provider import TongyiProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """按接口路径把拦截到的请求路由到对应的平台适配器"""

    def __init__(self, providers: Dict[str, PlatformProvider]):
        self._providers = dict(providers)

    def __iter__(self):
        return iter(self._providers.values())

    def keys(self) -> List[str]:
        return list(self._providers)

    def get(self, key: str) -> Optional[PlatformProvider]:
        return self._providers.get(key.lower())

    def match(self, path: str) -> Optional[PlatformProvider]:
        for provider in self._providers.values():
            if provider.config.matches(path):
                return provider
        return None

    def get_platform_config(self, key: str) -> Optional[dict]:
        provider = self.get(key)
        if provider is None:
            return None
        return {"name": provider.config.name, "apiEndpoint": provider.config.describe()}


def create_registry(notifier: Optional[Notifier] = None, enabled: Optional[Iterable[str]] = None) -> ProviderRegistry:
    factories = {
        "chatgpt": ChatGPTProvider,
        "claude": lambda: ClaudeProvider(notifier=notifier),
        "tongyi": TongyiProvider,
        "deepseek": DeepSeekProvider,
        "gemini": GeminiProvider,
        "kimi": KimiProvider,
        "doubao": DoubaoProvider,
    }
    providers = {}
    for key in (enabled if enabled is not None else settings.ENABLED_PLATFORMS):
        factory = factories.get(key.lower())
        if factory is None:
            logger.warning(f"未知的平台配置项，已忽略: {key}")
            continue
        providers[key.lower()] = factory()
    return ProviderRegistry(providers)
