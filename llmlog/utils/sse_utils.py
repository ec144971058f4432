import codecs
import json
import logging
from typing import Any, AsyncGenerator, Iterator, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
RECORD_SEPARATOR = "\n\n"
DONE_SENTINEL = "[DONE]"


def create_sse_data(data: Any) -> bytes:
    """将对象编码为一条 SSE 记录"""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"{DATA_PREFIX} {payload}{RECORD_SEPARATOR}".encode("utf-8")


DONE_CHUNK = create_sse_data(DONE_SENTINEL)


def extract_data(block: str) -> Optional[str]:
    """返回记录块中第一条 data: 行的内容（已去除首尾空白）"""
    for line in block.split("\n"):
        if line.startswith(DATA_PREFIX):
            return line[len(DATA_PREFIX):].strip()
    return None


def split_sse_records(text: str) -> Iterator[str]:
    """从完整的 SSE 文本中依次取出 data 字段，遇到 [DONE] 结束"""
    for block in text.replace("\r\n", "\n").split(RECORD_SEPARATOR):
        if not block:
            continue
        data = extract_data(block)
        if not data:
            continue
        if data == DONE_SENTINEL:
            return
        yield data


async def iter_sse_data(reader) -> AsyncGenerator[str, None]:
    """逐块读取字节流并增量解析 SSE 记录

    reader 需提供 async read() -> (done, value)。解码器带状态，
    多字节字符被切分到两个数据块中时也能正确还原。
    data 内容不做 JSON 校验，由调用方自行判断。
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    while True:
        done, value = await reader.read()
        if done:
            break
        if not value:
            continue
        buffer = (buffer + decoder.decode(value)).replace("\r\n", "\n")

        while RECORD_SEPARATOR in buffer:
            block, buffer = buffer.split(RECORD_SEPARATOR, 1)
            data = extract_data(block)
            if not data:
                continue
            if data == DONE_SENTINEL:
                return
            yield data

    # 流结束时处理未以空行结尾的最后一条记录
    buffer = (buffer + decoder.decode(b"", final=True)).replace("\r\n", "\n")
    for data in split_sse_records(buffer):
        yield data
