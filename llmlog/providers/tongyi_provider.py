import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from llmlog.core.config import settings
from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import iter_sse_data, split_sse_records

# 设置日志记录器
logger = logging.getLogger(__name__)

PLUGIN_CALL_MARKER = "pluginCall"
FINISHED = "finished"
THINK = "think"
TEXT = "text"


class TongyiProvider:
    """通义千问：流中的每条记录都是某条消息的完整快照

    in_progress 记录会被后续记录覆盖，只有 msgStatus=finished 的记录参与结果。
    think 类型记录的 contents 中混有思考过程与真正的回答，
    只取其中 contentType=text、不含插件调用且长度达标的条目。
    """

    config = PlatformConfig(name="Tongyi", api_endpoint="/dialog/conversation")

    def __init__(self, min_content_length: Optional[int] = None):
        self.min_content_length = (
            settings.TONGYI_MIN_CONTENT_LENGTH if min_content_length is None else min_content_length
        )

    async def parse_request(self, request: CapturedRequest) -> str:
        try:
            request_body = await request.clone().json()
            contents = request_body.get("contents")
            if isinstance(contents, list):
                user_message = next(
                    (m for m in contents if isinstance(m, dict) and m.get("role") == "user"), None
                )
                if user_message and isinstance(user_message.get("content"), str):
                    return user_message["content"]
        except Exception as e:
            logger.error(f"解析通义请求失败: {e}", exc_info=True)
        return ""

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        reader = response.clone().body.get_reader()
        records = []
        try:
            async for data_string in iter_sse_data(reader):
                records.append(data_string)
        except Exception as e:
            logger.error(f"读取通义响应流失败: {e}", exc_info=True)
            # 流读取失败时退回到缓冲的完整响应体
            try:
                text = await response.clone().text()
                return self._process_records(split_sse_records(text))
            except Exception as fallback_error:
                logger.error(f"通义响应回退解析失败: {fallback_error}", exc_info=True)
                return ParseResult(text="", id=None)
        finally:
            reader.release_lock()

        return self._process_records(records)

    def _process_records(self, records: Iterable[str]) -> ParseResult:
        session_id = None
        finished: Dict[str, str] = {}

        for data_string in records:
            try:
                data = json.loads(data_string)
            except json.JSONDecodeError:
                logger.warning(f"无法解析通义 SSE 数据块: {data_string[:200]}")
                continue
            if not isinstance(data, dict):
                continue

            if data.get("sessionId"):
                session_id = data["sessionId"]

            if data.get("msgStatus") != FINISHED:
                continue

            content_type, text = self._extract_finished_text(data)
            if text is not None:
                finished[content_type] = text

        text = finished.get(TEXT) or finished.get(THINK) or ""
        if not text:
            logger.debug("通义响应中没有可用的已完成记录")
            return ParseResult(text="", id=None)
        return ParseResult(text=text, id=session_id)

    def _extract_finished_text(self, data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        contents = data.get("contents")
        if not isinstance(contents, list) or not contents:
            return "", None

        if data.get("contentType") == THINK:
            for entry in contents:
                if not isinstance(entry, dict) or entry.get("contentType") != TEXT:
                    continue
                content = entry.get("content")
                if self._is_answer(content):
                    return THINK, content
            # 后出现的已完成 think 记录只含噪声时覆盖之前的回答
            logger.debug("think 记录中没有符合条件的回答内容")
            return THINK, ""

        first = contents[0]
        content = first.get("content") if isinstance(first, dict) else None
        if not isinstance(content, str) or not content or PLUGIN_CALL_MARKER in content:
            return TEXT, None
        return TEXT, content

    def _is_answer(self, content: Any) -> bool:
        if not isinstance(content, str):
            return False
        if PLUGIN_CALL_MARKER in content:
            return False
        return len(content) >= self.min_content_length

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/?sessionId={conversation_id}"
