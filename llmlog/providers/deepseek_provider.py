import json
import logging
from typing import Any, Optional

from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import split_sse_records

# 设置日志记录器
logger = logging.getLogger(__name__)


class DeepSeekProvider:
    """DeepSeek 的会话 ID 只出现在请求里，回复从第一条 response/content APPEND 开始累积"""

    config = PlatformConfig(name="DeepSeek", api_endpoint="/api/v0/chat/completion")

    def __init__(self):
        self._current_session_id: Optional[str] = None

    async def parse_request(self, request: CapturedRequest) -> str:
        try:
            request_body = await request.clone().json()
            if request_body.get("prompt"):
                self._current_session_id = request_body.get("chat_session_id")
                return request_body["prompt"]
        except Exception as e:
            logger.error(f"解析 DeepSeek 请求失败: {e}", exc_info=True)
        return ""

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        session_id, self._current_session_id = self._current_session_id, None
        try:
            sse_stream = await response.clone().text()
        except Exception as e:
            logger.error(f"读取 DeepSeek 响应失败: {e}", exc_info=True)
            return ParseResult(text="", id=None)

        full_text = ""
        start_capturing = False
        for data_string in split_sse_records(sse_stream):
            try:
                data = json.loads(data_string)
            except json.JSONDecodeError:
                logger.warning(f"无法解析 DeepSeek SSE 数据块: {data_string[:200]}")
                continue
            if not isinstance(data, dict):
                continue

            if data.get("p") == "response/content" and data.get("o") == "APPEND":
                start_capturing = True

            if start_capturing and isinstance(data.get("v"), str):
                full_text += data["v"]

        return ParseResult(text=full_text, id=session_id)

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/a/chat/s/{conversation_id}"
