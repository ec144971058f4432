"""pytest 配置文件"""
import os
import sys

# 设置测试环境标志
os.environ['TESTING'] = '1'

# 确保项目根目录在 Python 路径中
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from llmlog.utils.http_objects import CapturedRequest, CapturedResponse
from llmlog.utils.sse_utils import create_sse_data


@pytest.fixture
def store():
    """每个测试使用独立的内存数据库"""
    from llmlog.storage.conversation_store import ConversationStore
    conversation_store = ConversationStore("sqlite://")
    yield conversation_store
    conversation_store.close()


def make_stream_response(*records, page_url="https://chat.example.com/", chunk_size=None):
    """把若干条记录编码成 SSE 流，可按字节数切块以模拟分段到达"""
    raw = b"".join(r if isinstance(r, bytes) else create_sse_data(r) for r in records)
    if chunk_size:
        chunks = [raw[i:i + chunk_size] for i in range(0, len(raw), chunk_size)]
    else:
        chunks = [create_sse_data(r) if not isinstance(r, bytes) else r for r in records]
    return CapturedResponse(chunks, page_url=page_url)


def make_json_request(url, body, page_url=None):
    return CapturedRequest(url=url, method="POST", body=body, page_url=page_url)


@pytest.fixture
def stream_response():
    return make_stream_response


@pytest.fixture
def json_request():
    return make_json_request
