import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qs

from llmlog.providers.base_provider import ParseResult, PlatformConfig
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse

# 设置日志记录器
logger = logging.getLogger(__name__)

FRAME_PREFIX = "[["
FRAME_TAG = "wrb.fr"
CONVERSATION_PREFIX = "c_"


class GeminiProvider:
    """Gemini 请求是表单编码的 f.req，提示词在其中被二次 JSON 编码。

    响应按行输出，以 [[ 开头的行是 JSON 数组，wrb.fr 帧的第三个元素
    又是一段 JSON 字符串，其中带有会话 ID 与截至目前的完整回复。
    """

    config = PlatformConfig(
        name="Gemini",
        api_endpoint="/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate",
    )

    async def parse_request(self, request: CapturedRequest) -> str:
        try:
            form = parse_qs(await request.clone().text())
            f_req_values = form.get("f.req")
            if not f_req_values:
                return ""
            f_req = json.loads(f_req_values[0])
            if isinstance(f_req, list) and len(f_req) > 1 and isinstance(f_req[1], str):
                prompt_data = json.loads(f_req[1])
                if (
                    isinstance(prompt_data, list)
                    and prompt_data
                    and isinstance(prompt_data[0], list)
                    and prompt_data[0]
                    and isinstance(prompt_data[0][0], str)
                ):
                    return prompt_data[0][0]
        except Exception as e:
            logger.error(f"解析 Gemini 请求失败: {e}", exc_info=True)
        return ""

    async def parse_response(self, response: CapturedResponse) -> ParseResult:
        try:
            raw_text = await response.clone().text()
        except Exception as e:
            logger.error(f"读取 Gemini 响应失败: {e}", exc_info=True)
            return ParseResult(text="", id=None)

        full_text = ""
        conversation_id = None
        for line in raw_text.split("\n"):
            if not line.startswith(FRAME_PREFIX):
                continue
            try:
                frames = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"无法解析 Gemini 响应行: {line[:200]}")
                continue

            payload = self._frame_payload(frames)
            if payload is None:
                continue

            conversation_id = self._conversation_id(payload) or conversation_id
            text = self._candidate_text(payload)
            if text is not None:
                full_text = text

        if not full_text.strip():
            return ParseResult(text="", id=None)
        return ParseResult(text=full_text, id=conversation_id)

    @staticmethod
    def _frame_payload(frames: Any) -> Optional[list]:
        if not isinstance(frames, list):
            return None
        frame = next(
            (f for f in frames if isinstance(f, list) and f and f[0] == FRAME_TAG),
            None,
        )
        if frame is None or len(frame) < 3 or not frame[2]:
            return None
        try:
            payload = json.loads(frame[2])
        except (TypeError, json.JSONDecodeError):
            logger.warning("Gemini wrb.fr 帧的负载不是合法 JSON")
            return None
        return payload if isinstance(payload, list) else None

    @staticmethod
    def _conversation_id(payload: list) -> Optional[str]:
        ids = payload[1] if len(payload) > 1 else None
        if isinstance(ids, list) and ids and isinstance(ids[0], str) and ids[0].startswith(CONVERSATION_PREFIX):
            return ids[0][len(CONVERSATION_PREFIX):]
        return None

    @staticmethod
    def _candidate_text(payload: list) -> Optional[str]:
        # payload[4][0] 是第一个候选回复：[candidate_id, [text, ...], ...]
        candidates = payload[4] if len(payload) > 4 else None
        if not isinstance(candidates, list) or not candidates:
            return None
        candidate = candidates[0]
        if not isinstance(candidate, list) or len(candidate) < 2:
            return None
        parts = candidate[1]
        if isinstance(parts, list) and parts and isinstance(parts[0], str):
            return parts[0]
        return None

    def build_conversation_url(self, origin: str, conversation_id: Any) -> str:
        return f"{origin}/app/{conversation_id}"
