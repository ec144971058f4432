"""宿主传入的请求/响应对象

与浏览器中的 Request/Response 对齐：支持 clone()、json()、text()，
流式响应体通过 body.get_reader() 逐块读取。
"""
import json
from typing import Any, Iterable, List, NamedTuple, Optional
from urllib.parse import urlsplit


class ReadResult(NamedTuple):
    done: bool
    value: Optional[bytes] = None


class ByteStreamReader:
    """按块返回字节数据的读取器，读完后返回 done=True"""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(list(chunks))
        self._locked = True

    async def read(self) -> ReadResult:
        if not self._locked:
            raise RuntimeError("读取器已释放")
        chunk = next(self._chunks, None)
        if chunk is None:
            return ReadResult(done=True)
        return ReadResult(done=False, value=chunk)

    def release_lock(self) -> None:
        self._locked = False


class ResponseBody:
    def __init__(self, chunks: List[bytes]):
        self._chunks = chunks

    def get_reader(self) -> ByteStreamReader:
        return ByteStreamReader(self._chunks)


def origin_of(url: Optional[str]) -> str:
    if not url:
        return ""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}"


def _to_bytes(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return data.encode("utf-8")
    return json.dumps(data, ensure_ascii=False).encode("utf-8")


class CapturedRequest:
    """被拦截的请求"""

    def __init__(self, url: str, method: str = "POST", body: Any = None, page_url: Optional[str] = None):
        self.url = url
        self.method = method.upper()
        self._body = _to_bytes(body)
        self.page_url = page_url or url

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def origin(self) -> str:
        return origin_of(self.page_url) or origin_of(self.url)

    def clone(self) -> "CapturedRequest":
        return CapturedRequest(self.url, self.method, self._body, self.page_url)

    async def text(self) -> str:
        return self._body.decode("utf-8", errors="replace")

    async def json(self) -> Any:
        return json.loads(await self.text())


class CapturedResponse:
    """被拦截的响应，响应体以原始分块保存，可多次 clone 读取"""

    def __init__(
        self,
        chunks: Iterable[Any] = (),
        status: int = 200,
        url: Optional[str] = None,
        page_url: Optional[str] = None,
    ):
        self._chunks = [_to_bytes(chunk) for chunk in chunks]
        self.status = status
        self.url = url
        self.page_url = page_url or url

    @classmethod
    def from_body(cls, body: Any, **kwargs) -> "CapturedResponse":
        return cls([_to_bytes(body)], **kwargs)

    @property
    def origin(self) -> str:
        return origin_of(self.page_url) or origin_of(self.url)

    @property
    def body(self) -> ResponseBody:
        return ResponseBody(self._chunks)

    def clone(self) -> "CapturedResponse":
        return CapturedResponse(self._chunks, self.status, self.url, self.page_url)

    async def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")

    async def json(self) -> Any:
        return json.loads(await self.text())
