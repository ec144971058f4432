import inspect
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from llmlog.core.config import settings
from llmlog.core.dedup import DuplicateCache
from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse

# 设置日志记录器
logger = logging.getLogger(__name__)

CONVERSATION_UPDATE = "LLMLOG_CONVERSATION_UPDATE"

Notifier = Callable[[Dict[str, Any]], Union[None, Awaitable[Any]]]


def _join_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    return "\n".join(item.get("text") or "" for item in content if isinstance(item, dict))


class ClaudeProvider:
    """Claude 的请求里没有提示词，一问一答都从完整的会话 JSON 中取最后两条消息。

    新的一轮对话通过 notifier 以 LLMLOG_CONVERSATION_UPDATE 消息上报；
    同一内容在去重窗口内再次出现时只返回结果，不再上报。
    """

    config = PlatformConfig(
        name="Claude",
        api_endpoint=re.compile(r"^/api/organizations/[a-f0-9-]+/chat_conversations/[a-f0-9-]+$"),
        notifies=True,
    )

    def __init__(self, notifier: Optional[Notifier] = None, duplicate_cache: Optional[DuplicateCache] = None):
        self.notifier = notifier
        self.recent_conversations = duplicate_cache or DuplicateCache(
            window_seconds=settings.DUPLICATE_WINDOW_SECONDS,
            max_entries=settings.MAX_TRACKED_CONVERSATIONS,
        )

    async def parse_request(self, request: CapturedRequest) -> str:
        return ""

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        logger.debug("开始解析 Claude 响应...")
        conversation_id = None
        try:
            data = await response.clone().json()
            conversation_id = data.get("uuid")
            chat_messages: List[Dict[str, Any]] = data.get("chat_messages") or []

            if len(chat_messages) >= 2:
                last_two = chat_messages[-2:]
                user_message = next((m for m in last_two if m.get("sender") == "human"), None)
                assistant_message = next((m for m in last_two if m.get("sender") == "assistant"), None)

                if user_message and assistant_message:
                    user_prompt = _join_text(user_message.get("content"))
                    ai_response = _join_text(assistant_message.get("content"))

                    content_key = f"{user_prompt}:{ai_response}"
                    if self.recent_conversations.check_and_record(content_key):
                        logger.info(f"Claude 对话在去重窗口内重复出现，跳过通知 (conversation_id={conversation_id})")
                        return ParseResult(text=ai_response, id=conversation_id)

                    saved = await self._notify({
                        "type": CONVERSATION_UPDATE,
                        "payload": {
                            "platform": self.config.name,
                            "prompt": user_prompt,
                            "response": ai_response,
                            "url": response.page_url,
                            "createdAt": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                            "title": user_prompt[:settings.TITLE_MAX_LENGTH],
                        },
                    })
                    return ParseResult(text=ai_response, id=conversation_id, saved=saved)
        except Exception as e:
            logger.error(f"解析 Claude 响应失败: {e}", exc_info=True)

        logger.info("未能从 Claude 响应中提取对话数据。")
        return ParseResult(text="", id=conversation_id)

    async def _notify(self, message: Dict[str, Any]) -> Optional[Any]:
        if self.notifier is None:
            logger.debug("未配置 notifier，丢弃 Claude 对话更新消息")
            return None
        try:
            result = self.notifier(message)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.error(f"发送 Claude 对话更新消息失败: {e}", exc_info=True)
            return None

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/chat/{conversation_id}"
