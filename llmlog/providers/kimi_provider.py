import json
import logging
import re
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlsplit

from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import split_sse_records

# 设置日志记录器
logger = logging.getLogger(__name__)

CHAT_SERVICE_PATH = "/apiv2/kimi.chat.v1.ChatService/Chat"
# Connect 协议的信封：1 字节标志 + 4 字节大端长度
ENVELOPE_HEADER_SIZE = 5
END_STREAM_FLAG = 0x02
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def iter_envelopes(raw: bytes) -> Iterator[bytes]:
    """按 Connect 信封切分二进制流，跳过结束帧，截断的尾帧丢弃"""
    offset = 0
    while offset + ENVELOPE_HEADER_SIZE <= len(raw):
        flags = raw[offset]
        length = int.from_bytes(raw[offset + 1:offset + ENVELOPE_HEADER_SIZE], "big")
        start = offset + ENVELOPE_HEADER_SIZE
        end = start + length
        if end > len(raw):
            logger.warning(f"Kimi 响应帧不完整 (需要 {length} 字节, 剩余 {len(raw) - start} 字节)")
            return
        if not flags & END_STREAM_FLAG:
            yield raw[start:end]
        offset = end


class KimiProvider:
    """Kimi 同时存在两套接口：

    - 新接口 (ChatService/Chat) 使用 Connect 二进制信封，请求体前可能带信封头，
      会话 ID 在请求 JSON 的 chat_id / conversation_id 中，回复由 op=append 的 block 累积；
    - 旧接口 (/api/chat/<id>/completion/...) 是普通 SSE，会话 ID 在 URL 中，
      回复由 event=cmpl 的 text 累积。
    """

    config = PlatformConfig(
        name="Kimi",
        api_endpoint=re.compile(r"^/(apiv2/kimi\.chat\.v1\.ChatService/Chat|api/chat/.+/completion/)"),
    )

    def __init__(self):
        self._current_conversation_id: Optional[str] = None

    async def parse_request(self, request: CapturedRequest) -> str:
        is_new_format = CHAT_SERVICE_PATH in request.url
        try:
            request_body = self._load_json(await request.clone().text())
        except Exception as e:
            logger.error(f"解析 Kimi 请求失败: {e}", exc_info=True)
            return ""
        if not isinstance(request_body, dict):
            logger.warning("Kimi 请求体不是 JSON 对象")
            return ""

        if is_new_format:
            self._current_conversation_id = request_body.get("chat_id") or request_body.get("conversation_id")
            user_message = self._new_format_message(request_body)
        else:
            self._current_conversation_id = self._conversation_id_from_url(request.url)
            user_message = self._old_format_message(request_body)

        if not user_message:
            logger.warning("Kimi 请求中没有可识别的用户消息")
        return user_message

    @staticmethod
    def _load_json(text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # 二进制信封头之后才是 JSON
            start = text.find("{")
            if start == -1:
                raise
            return json.loads(text[start:])

    @staticmethod
    def _old_format_message(request_body: Dict[str, Any]) -> str:
        messages = request_body.get("messages")
        if isinstance(messages, list):
            for message in messages:
                if isinstance(message, dict) and message.get("role") == "user":
                    content = message.get("content")
                    return content if isinstance(content, str) else ""
        return ""

    @classmethod
    def _new_format_message(cls, request_body: Dict[str, Any]) -> str:
        message = request_body.get("message")
        blocks = message.get("blocks") if isinstance(message, dict) else None
        if isinstance(blocks, list) and blocks and isinstance(blocks[0], dict):
            text = blocks[0].get("text")
            if isinstance(text, dict) and isinstance(text.get("content"), str) and text["content"]:
                return text["content"]
        return cls._old_format_message(request_body)

    @staticmethod
    def _conversation_id_from_url(url: str) -> Optional[str]:
        parts = urlsplit(url).path.split("/")
        if "chat" in parts:
            index = parts.index("chat")
            if index + 1 < len(parts) and parts[index + 1]:
                return parts[index + 1]
        return None

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        conversation_id, self._current_conversation_id = self._current_conversation_id, None

        reader = response.clone().body.get_reader()
        chunks = []
        try:
            while True:
                done, value = await reader.read()
                if done:
                    break
                if value:
                    chunks.append(value)
            raw = b"".join(chunks)
        except Exception as e:
            logger.error(f"读取 Kimi 响应流失败: {e}", exc_info=True)
            try:
                raw = (await response.clone().text()).encode("utf-8")
            except Exception as fallback_error:
                logger.error(f"Kimi 响应回退解析失败: {fallback_error}", exc_info=True)
                return ParseResult(text="", id=None)
        finally:
            reader.release_lock()

        if raw[:1] in (b"\x00", bytes([END_STREAM_FLAG])):
            full_text = self._process_envelopes(raw)
        else:
            full_text = self._process_sse(raw.decode("utf-8", errors="replace"))

        return ParseResult(text=CONTROL_CHARS.sub("", full_text), id=conversation_id)

    def _process_envelopes(self, raw: bytes) -> str:
        full_text = ""
        for payload in iter_envelopes(raw):
            data = self._parse_json(payload.decode("utf-8", errors="replace"))
            if data is None:
                continue
            if data.get("op") == "append":
                block = data.get("block")
                text = block.get("text") if isinstance(block, dict) else None
                content = text.get("content") if isinstance(text, dict) else None
                if isinstance(content, str):
                    full_text += content
            elif data.get("op") == "set" or data.get("done"):
                continue
            elif isinstance(data.get("text"), str):
                full_text += data["text"]
        return full_text

    def _process_sse(self, sse_stream: str) -> str:
        full_text = ""
        for data_string in split_sse_records(sse_stream):
            data = self._parse_json(data_string)
            if data and data.get("event") == "cmpl" and isinstance(data.get("text"), str):
                full_text += data["text"]
        return full_text

    @staticmethod
    def _parse_json(data_string: str) -> Optional[Dict[str, Any]]:
        start = data_string.find("{")
        if start == -1:
            return None
        try:
            data = json.loads(data_string[start:])
        except json.JSONDecodeError:
            logger.warning(f"无法解析 Kimi 数据块: {data_string[:200]}")
            return None
        return data if isinstance(data, dict) else None

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/chat/{conversation_id}"
