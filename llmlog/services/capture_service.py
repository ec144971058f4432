import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.concurrency import run_in_threadpool

from llmlog.core.config import settings
from llmlog.core.dedup import DuplicateCache
from llmlog.core.exceptions import InvalidCapturePayloadError, PlatformNotSupportedError
from llmlog.providers.claude_provider import CONVERSATION_UPDATE
from llmlog.providers.registry import ProviderRegistry, create_registry
from llmlog.storage.conversation_store import ConversationStore
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse

# 设置日志记录器
logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CaptureService:
    """采集流程：路由到平台适配器 -> 解析请求与响应 -> 组装对话记录 -> 去重 -> 入库"""

    def __init__(
        self,
        store: ConversationStore,
        registry: Optional[ProviderRegistry] = None,
        duplicate_cache: Optional[DuplicateCache] = None,
    ):
        self.store = store
        self.registry = registry or create_registry(notifier=self.handle_conversation_update)
        self.recent_conversations = duplicate_cache or DuplicateCache(
            window_seconds=settings.DUPLICATE_WINDOW_SECONDS,
            max_entries=settings.MAX_TRACKED_CONVERSATIONS,
        )

    async def process_exchange(self, request: CapturedRequest, response: CapturedResponse) -> Dict[str, Any]:
        provider = self.registry.match(request.path)
        if provider is None:
            raise PlatformNotSupportedError(request.path)

        config = provider.config
        logger.info(f"捕获到 {config.name} 接口调用: {request.path}")

        user_prompt = await provider.parse_request(request)
        result = await provider.parse_response(response)

        if config.notifies:
            # 对话数据已经通过通知消息上报，保存结果随 ParseResult 带回
            saved = result.saved if isinstance(result.saved, dict) else None
            return {
                "status": saved.get("status", "success") if saved else "success",
                "data": {
                    "platform": config.name,
                    "notified": True,
                    **result.to_dict(),
                    "saved": saved.get("data") if saved else None,
                },
            }

        conversation_url = response.page_url or request.page_url
        origin = response.origin or request.origin
        if result.id and origin:
            conversation_url = provider.build_conversation_url(origin, result.id)

        conversation_data = {
            "platform": config.name,
            "prompt": user_prompt,
            "response": result.text,
            "url": conversation_url,
            "createdAt": _now_iso(),
            "title": self._title_for(provider, user_prompt),
        }
        return await self.save(conversation_data)

    @staticmethod
    def _title_for(provider, user_prompt: str) -> str:
        generate_title = getattr(provider, "generate_title", None)
        if callable(generate_title):
            return generate_title(user_prompt)
        return user_prompt[:settings.TITLE_MAX_LENGTH]

    async def handle_conversation_update(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """notifier 回调：接收平台适配器主动上报的对话"""
        if not isinstance(message, dict) or message.get("type") != CONVERSATION_UPDATE:
            raise InvalidCapturePayloadError(f"未知的消息类型: {message.get('type') if isinstance(message, dict) else message!r}")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            raise InvalidCapturePayloadError("对话更新消息缺少 payload")
        logger.info(f"收到平台上报的对话更新 (platform={payload.get('platform')})")
        return await self.save(payload)

    async def save(self, conversation_data: Dict[str, Any]) -> Dict[str, Any]:
        content_key = ":".join((
            str(conversation_data.get("platform") or ""),
            str(conversation_data.get("prompt") or ""),
            str(conversation_data.get("response") or ""),
        ))
        if self.recent_conversations.is_duplicate(content_key):
            logger.info(
                f"采集流程检测到重复对话，跳过保存 "
                f"(platform={conversation_data.get('platform')}, prompt={str(conversation_data.get('prompt'))[:50]}...)"
            )
            return {"status": "success", "data": {"id": self.recent_conversations.get(content_key), "duplicate": True}}

        result = await run_in_threadpool(self.store.save_conversation, conversation_data)
        if result.get("status") == "success":
            self.recent_conversations.record(content_key, result["data"]["id"])
        return result
