import json
import logging
from typing import Any, Dict, Optional, Tuple

from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import iter_sse_data

# 设置日志记录器
logger = logging.getLogger(__name__)

FIRST_PART_PATH = "/message/content/parts/0"

APPEND = "append"
REPLACE = "replace"


class ChatGPTProvider:
    config = PlatformConfig(name="ChatGPT", api_endpoint="/backend-api/f/conversation")

    async def parse_request(self, request: CapturedRequest) -> str:
        """提取请求中最近一条用户消息的文本"""
        try:
            request_body = await request.clone().json()
            messages = request_body.get("messages") or []
            for message in reversed(messages):
                author = message.get("author") or {}
                if author.get("role") != "user":
                    continue
                parts = (message.get("content") or {}).get("parts")
                if isinstance(parts, list):
                    return "\n".join(part for part in parts if isinstance(part, str))
                break
        except Exception as e:
            logger.error(f"解析 ChatGPT 请求失败: {e}", exc_info=True)
        return ""

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        """读取完整的 SSE 流并重建助手回复"""
        full_text = ""
        conversation_id: Optional[str] = None

        try:
            reader = response.clone().body.get_reader()
            try:
                async for data_string in iter_sse_data(reader):
                    try:
                        data = json.loads(data_string)
                    except json.JSONDecodeError:
                        # 部分记录本身就不是 JSON（例如 "v1"），属于正常噪声
                        logger.warning(f"无法解析 SSE 数据块或不是相关消息: {data_string[:200]}")
                        continue
                    if not isinstance(data, dict):
                        continue

                    if data.get("conversation_id"):
                        conversation_id = data["conversation_id"]

                    action, text = self._classify(data)
                    if action == REPLACE:
                        full_text = text
                    elif action == APPEND:
                        full_text += text
            finally:
                reader.release_lock()
        except Exception as e:
            logger.error(f"读取 ChatGPT 响应流失败: {e}", exc_info=True)
            return ParseResult(text="", id=None)

        logger.debug(f"ChatGPT 响应重建完成，长度={len(full_text)}, conversation_id={conversation_id}")
        return ParseResult(text=full_text, id=conversation_id)

    def _classify(self, data: Dict[str, Any]) -> Tuple[Optional[str], str]:
        """按优先级识别记录格式，返回 (动作, 文本)；无法识别的记录返回 (None, "")"""
        value = data.get("v")

        # 格式1: {"p": "/message/content/parts/0", "o": "append", "v": "text"}
        if data.get("p") == FIRST_PART_PATH and data.get("o") == "append" and isinstance(value, str):
            return APPEND, value

        # 格式2: {"v": "text"}
        if isinstance(value, str) and value and "p" not in data and "o" not in data:
            return APPEND, value

        # 格式3: {"p": "", "o": "patch", "v": [ ... ]}
        if data.get("o") == "patch" and isinstance(value, list):
            pieces = [
                op["v"] for op in value
                if isinstance(op, dict)
                and op.get("p") == FIRST_PART_PATH
                and op.get("o") == "append"
                and isinstance(op.get("v"), str)
            ]
            return APPEND, "".join(pieces)

        # 格式4: 完整的助手消息，替换此前累积的内容
        message = data.get("message")
        if isinstance(message, dict) \
                and (message.get("author") or {}).get("role") == "assistant" \
                and message.get("status") == "finished_successfully":
            parts = (message.get("content") or {}).get("parts")
            if isinstance(parts, list) and parts:
                return REPLACE, "".join(part for part in parts if isinstance(part, str))

        return None, ""

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/c/{conversation_id}"
