"""采集流程测试"""
import json

import pytest

from llmlog.core.dedup import DuplicateCache
from llmlog.core.exceptions import InvalidCapturePayloadError, PlatformNotSupportedError
from llmlog.providers.claude_provider import CONVERSATION_UPDATE
from llmlog.services.capture_service import CaptureService
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import create_sse_data

TONGYI_PAGE = "https://www.tongyi.com/qianwen/"


@pytest.fixture
def service(store):
    return CaptureService(store, duplicate_cache=DuplicateCache(window_seconds=5))


def tongyi_record(content, status):
    return {
        "sessionId": "abc123",
        "contentType": "text",
        "msgStatus": status,
        "contents": [{"content": content, "role": "assistant"}],
    }


@pytest.mark.asyncio
async def test_tongyi_stream_end_to_end(service, store, stream_response):
    request = CapturedRequest(
        url="https://api.tongyi.com/dialog/conversation",
        body={"contents": [{"role": "user", "content": "介绍一下长城"}]},
        page_url=TONGYI_PAGE,
    )
    response = stream_response(
        tongyi_record("长城", "in_progress"),
        tongyi_record("长城是中国", "in_progress"),
        tongyi_record("长城是中国古代", "in_progress"),
        tongyi_record("长城是中国古代的军事防御工程。", "finished"),
        "[DONE]",
        page_url=TONGYI_PAGE,
    )

    result = await service.process_exchange(request, response)
    assert result["status"] == "success"

    saved = store.get_all_conversations()["data"]
    assert len(saved) == 1
    assert saved[0]["platform"] == "Tongyi"
    assert saved[0]["prompt"] == "介绍一下长城"
    assert saved[0]["response"] == "长城是中国古代的军事防御工程。"
    assert saved[0]["url"] == "https://www.tongyi.com/?sessionId=abc123"
    assert saved[0]["title"] == "介绍一下长城"


@pytest.mark.asyncio
async def test_chatgpt_exchange_uses_conversation_url(service, store, stream_response):
    request = CapturedRequest(
        url="https://chatgpt.com/backend-api/f/conversation",
        body={"messages": [{"author": {"role": "user"}, "content": {"parts": ["hi"]}}]},
        page_url="https://chatgpt.com/",
    )
    response = stream_response({"conversation_id": "c-1", "v": "hello"}, page_url="https://chatgpt.com/")
    await service.process_exchange(request, response)
    saved = store.get_all_conversations()["data"][0]
    assert saved["url"] == "https://chatgpt.com/c/c-1"
    assert saved["response"] == "hello"


@pytest.mark.asyncio
async def test_repeated_exchange_is_suppressed_by_pipeline(service, store, stream_response):
    def exchange():
        request = CapturedRequest(
            url="https://chatgpt.com/backend-api/f/conversation",
            body={"messages": [{"author": {"role": "user"}, "content": {"parts": ["same"]}}]},
            page_url="https://chatgpt.com/",
        )
        return request, stream_response({"v": "answer"}, page_url="https://chatgpt.com/")

    first = await service.process_exchange(*exchange())
    second = await service.process_exchange(*exchange())
    assert second["data"] == {"id": first["data"]["id"], "duplicate": True}
    assert store.get_total_conversation_count()["data"]["totalCount"] == 1


@pytest.mark.asyncio
async def test_claude_exchange_saved_through_notification(service, store):
    page_url = "https://claude.ai/chat/0a1b"
    request = CapturedRequest(
        url="https://claude.ai/api/organizations/abc/chat_conversations/0a1b",
        method="GET",
        page_url=page_url,
    )
    body = {"uuid": "0a1b", "chat_messages": [
        {"sender": "human", "content": [{"text": "ping"}]},
        {"sender": "assistant", "content": [{"text": "pong"}]},
    ]}
    result = await service.process_exchange(request, CapturedResponse.from_body(body, page_url=page_url))
    assert result["data"]["notified"] is True
    assert result["data"]["text"] == "pong"

    saved = store.get_all_conversations()["data"]
    assert len(saved) == 1
    assert saved[0]["platform"] == "Claude"
    assert saved[0]["prompt"] == "ping"
    assert saved[0]["url"] == page_url
    assert result["status"] == "success"
    assert result["data"]["saved"] == {"id": saved[0]["id"]}

    # 适配器自身的去重窗口内再次出现时不再上报
    again = await service.process_exchange(request, CapturedResponse.from_body(body, page_url=page_url))
    assert again["data"]["saved"] is None
    assert store.get_total_conversation_count()["data"]["totalCount"] == 1


@pytest.mark.asyncio
async def test_unknown_path_raises(service):
    request = CapturedRequest(url="https://example.com/api/other")
    with pytest.raises(PlatformNotSupportedError):
        await service.process_exchange(request, CapturedResponse.from_body(b""))


@pytest.mark.asyncio
async def test_conversation_update_validation(service):
    with pytest.raises(InvalidCapturePayloadError):
        await service.handle_conversation_update({"type": "SOMETHING_ELSE"})
    with pytest.raises(InvalidCapturePayloadError):
        await service.handle_conversation_update({"type": CONVERSATION_UPDATE})


@pytest.mark.asyncio
async def test_conversation_update_saved(service, store):
    result = await service.handle_conversation_update({
        "type": CONVERSATION_UPDATE,
        "payload": {"platform": "Claude", "prompt": "p", "response": "r", "url": "u", "title": "p"},
    })
    assert result["status"] == "success"
    assert store.get_total_conversation_count()["data"]["totalCount"] == 1


@pytest.mark.asyncio
async def test_doubao_exchange_uses_platform_title_and_url(service, store):
    request = CapturedRequest(
        url="https://www.doubao.com/samantha/chat/completion",
        body={"messages": [{"content": json.dumps({"text": "<p>写一段   自我介绍</p>"})}]},
        page_url="https://www.doubao.com/chat/",
    )
    message_data = {
        "message": {"content": json.dumps({"text": "我是豆包"})},
        "conversation_id": "88123",
        "is_delta": True,
        "is_finish": True,
    }
    response = CapturedResponse(
        [create_sse_data({"event_type": 2001, "event_data": json.dumps(message_data)})],
        page_url="https://www.doubao.com/chat/",
    )
    result = await service.process_exchange(request, response)
    assert result["status"] == "success"

    saved = store.get_all_conversations()["data"][0]
    assert saved["platform"] == "Doubao"
    assert saved["title"] == "写一段 自我介绍"
    assert saved["response"] == "我是豆包"
    assert saved["url"] == "https://www.doubao.com/chat/88123"
