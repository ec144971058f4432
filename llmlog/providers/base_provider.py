import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Pattern, Protocol, Union, runtime_checkable

from llmlog.utils.http_objects import CapturedRequest, CapturedResponse


@dataclass(frozen=True)
class PlatformConfig:
    """平台声明：名称与需要拦截的接口（精确路径或正则）"""
    name: str
    api_endpoint: Union[str, Pattern[str]]
    # 为 True 时对话通过通知消息上报，采集流程不再自行保存
    notifies: bool = False

    def matches(self, path: str) -> bool:
        if isinstance(self.api_endpoint, re.Pattern):
            return self.api_endpoint.search(path) is not None
        return path == self.api_endpoint

    def describe(self) -> str:
        if isinstance(self.api_endpoint, re.Pattern):
            return self.api_endpoint.pattern
        return self.api_endpoint


@dataclass
class ParseResult:
    text: str = ""
    id: Optional[str] = None
    # 通过 notifier 上报时，保存流程返回的结果
    saved: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {"text": self.text, "id": self.id}


@runtime_checkable
class PlatformProvider(Protocol):
    """各平台适配器的统一接口"""

    config: PlatformConfig

    async def parse_request(self, request: CapturedRequest) -> str:
        ...

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        ...

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        ...
