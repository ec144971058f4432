import json
import logging
import re
from typing import Any, Dict, Optional

from llmlog.core.config import settings
from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import split_sse_records

# 设置日志记录器
logger = logging.getLogger(__name__)

MESSAGE_EVENT = 2001
DEFAULT_TITLE = "Doubao Conversation"
HTML_TAG = re.compile(r"<[^>]*>")
WHITESPACE = re.compile(r"\s+")


def _loads(value: Any) -> Any:
    if not isinstance(value, str):
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


class DoubaoProvider:
    """豆包：消息内容本身是 JSON 字符串 ({"text": ...})，请求与响应都需要再解析一层。

    响应中 event_type=2001 的事件携带消息，is_delta 为 True 时追加，
    为 False 时整体替换，is_finish 为 True 时结束。
    """

    config = PlatformConfig(name="Doubao", api_endpoint="/samantha/chat/completion")

    def generate_title(self, prompt: str) -> str:
        """去掉 HTML 与多余空白后截断，过长时尽量在词边界处截断"""
        if not isinstance(prompt, str) or not prompt.strip():
            return DEFAULT_TITLE

        title = WHITESPACE.sub(" ", prompt.strip())
        title = HTML_TAG.sub("", title)
        title = title.replace("<", "").replace(">", "")

        limit = settings.TITLE_MAX_LENGTH
        if len(title) > limit:
            title = title[:limit].strip()
            last_space = title.rfind(" ")
            if last_space > 30:
                title = title[:last_space]
            title += "..."

        if len(title) < 3:
            return DEFAULT_TITLE
        return title

    async def parse_request(self, request: CapturedRequest) -> str:
        try:
            request_body = await request.clone().json()
        except Exception as e:
            logger.error(f"解析豆包请求失败: {e}")
            return ""

        messages = request_body.get("messages") if isinstance(request_body, dict) else None
        if not isinstance(messages, list) or not messages:
            logger.warning("豆包请求中没有 messages")
            return ""

        user_message = messages[0]
        content = user_message.get("content") if isinstance(user_message, dict) else None
        if not content:
            logger.warning("豆包请求的首条消息没有 content")
            return ""

        content_data = _loads(content)
        if content_data is None:
            # content 不是 JSON 时直接作为提示词
            return content if isinstance(content, str) else ""
        if isinstance(content_data, dict) and isinstance(content_data.get("text"), str) and content_data["text"]:
            return content_data["text"]
        logger.warning("豆包消息内容中没有 text 字段")
        return ""

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        try:
            response_text = await response.clone().text()
        except Exception as e:
            logger.error(f"读取豆包响应失败: {e}", exc_info=True)
            return ParseResult(text="", id=None)

        full_text = ""
        conversation_id: Optional[str] = None
        for data_string in split_sse_records(response_text):
            event = _loads(data_string)
            if not isinstance(event, dict):
                logger.warning(f"无法解析豆包事件: {data_string[:200]}")
                continue
            if event.get("event_type") != MESSAGE_EVENT or not event.get("event_data"):
                continue

            message_data = _loads(event["event_data"])
            if not isinstance(message_data, dict):
                logger.warning("豆包事件的 event_data 不是合法 JSON")
                continue

            if message_data.get("conversation_id"):
                conversation_id = message_data["conversation_id"]

            text = self._message_text(message_data)
            if text:
                if message_data.get("is_delta") is True:
                    full_text += text
                elif message_data.get("is_delta") is False:
                    full_text = text

            if message_data.get("is_finish") is True:
                break

        return ParseResult(text=full_text, id=conversation_id)

    @staticmethod
    def _message_text(message_data: Dict[str, Any]) -> Optional[str]:
        message = message_data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not content:
            return None
        content_data = _loads(content)
        if not isinstance(content_data, dict):
            logger.warning("豆包消息内容不是合法 JSON")
            return None
        text = content_data.get("text")
        return text if isinstance(text, str) else None

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/chat/{conversation_id}"
