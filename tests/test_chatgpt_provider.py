"""ChatGPT 适配器测试"""
import pytest

from llmlog.providers.chatgpt_provider import ChatGPTProvider
from llmlog.utils.http_objects import CapturedResponse

URL = "https://chatgpt.com/backend-api/f/conversation"
PART = "/message/content/parts/0"


@pytest.fixture
def provider():
    return ChatGPTProvider()


def test_endpoint_matching(provider):
    assert provider.config.matches("/backend-api/f/conversation")
    assert not provider.config.matches("/backend-api/f/conversation/extra")


@pytest.mark.asyncio
async def test_parse_request_uses_latest_user_message(provider, json_request):
    body = {
        "messages": [
            {"author": {"role": "user"}, "content": {"parts": ["旧问题"]}},
            {"author": {"role": "assistant"}, "content": {"parts": ["回答"]}},
            {"author": {"role": "user"}, "content": {"parts": ["第一行", "第二行"]}},
        ]
    }
    assert await provider.parse_request(json_request(URL, body)) == "第一行\n第二行"


@pytest.mark.asyncio
async def test_parse_request_invalid_json_returns_empty(provider, json_request):
    assert await provider.parse_request(json_request(URL, "not json")) == ""


@pytest.mark.asyncio
async def test_parse_request_without_user_message(provider, json_request):
    body = {"messages": [{"author": {"role": "system"}, "content": {"parts": ["x"]}}]}
    assert await provider.parse_request(json_request(URL, body)) == ""


@pytest.mark.asyncio
async def test_append_bare_value_and_patch_records(provider, stream_response):
    response = stream_response(
        {"conversation_id": "conv-1", "p": PART, "o": "append", "v": "Hello"},
        {"v": ", "},
        {"p": "", "o": "patch", "v": [
            {"p": PART, "o": "append", "v": "wor"},
            {"p": "/message/status", "o": "replace", "v": "in_progress"},
            {"p": PART, "o": "append", "v": "ld"},
        ]},
        "[DONE]",
    )
    result = await provider.parse_response(response)
    assert result.text == "Hello, world"
    assert result.id == "conv-1"


@pytest.mark.asyncio
async def test_malformed_records_do_not_abort(provider, stream_response):
    response = stream_response(
        {"v": "A"},
        "v1",
        "{broken json",
        {"v": "B"},
    )
    result = await provider.parse_response(response)
    assert result.text == "AB"


@pytest.mark.asyncio
async def test_finished_message_replaces_accumulated_text(provider, stream_response):
    response = stream_response(
        {"v": "draft "},
        {"v": "text"},
        {"message": {
            "author": {"role": "assistant"},
            "status": "finished_successfully",
            "content": {"parts": ["Final answer"]},
        }},
        {"v": "!"},
    )
    result = await provider.parse_response(response)
    assert result.text == "Final answer!"


@pytest.mark.asyncio
async def test_unfinished_message_object_is_ignored(provider, stream_response):
    response = stream_response(
        {"v": "partial"},
        {"message": {"author": {"role": "assistant"}, "status": "in_progress", "content": {"parts": ["x"]}}},
    )
    result = await provider.parse_response(response)
    assert result.text == "partial"


@pytest.mark.asyncio
async def test_conversation_id_is_not_reset(provider, stream_response):
    response = stream_response(
        {"conversation_id": "first", "v": "a"},
        {"conversation_id": "second", "v": "b"},
        {"v": "c"},
    )
    result = await provider.parse_response(response)
    assert result.id == "second"
    assert result.text == "abc"


@pytest.mark.asyncio
async def test_records_split_across_reads(provider, stream_response):
    response = stream_response(
        {"p": PART, "o": "append", "v": "分块"},
        {"v": "到达"},
        chunk_size=5,
    )
    result = await provider.parse_response(response)
    assert result.text == "分块到达"


class BrokenReader:
    async def read(self):
        raise ConnectionError("stream reset")

    def release_lock(self):
        pass


class BrokenBody:
    def get_reader(self):
        return BrokenReader()


class BrokenResponse(CapturedResponse):
    @property
    def body(self):
        return BrokenBody()

    def clone(self):
        return self


@pytest.mark.asyncio
async def test_stream_failure_returns_default(provider):
    result = await provider.parse_response(BrokenResponse())
    assert result.text == ""
    assert result.id is None


def test_conversation_url(provider):
    assert provider.build_conversation_url("https://chatgpt.com", "abc") == "https://chatgpt.com/c/abc"
