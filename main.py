# main.py
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
import time
import os

# 禁用 slowapi 自动加载 .env 文件（避免编码问题）
os.environ.setdefault('SLOWAPI_DISABLE_DOTENV', '1')

from fastapi import FastAPI, Request, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from llmlog.core.config import settings
from llmlog.core.exceptions import (
    LLMLogException,
    LLMLogConfigurationError,
    ConversationNotFoundError,
    InvalidCapturePayloadError,
    StorageError
)
from llmlog.services.capture_service import CaptureService
from llmlog.storage.conversation_store import ConversationStore
from llmlog.utils.http_objects import CapturedRequest, CapturedResponse

# 配置日志
logging.basicConfig(
    level=settings.get_log_level(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# 初始化速率限制器
limiter = Limiter(key_func=get_remote_address)

# 初始化存储与采集流程
try:
    store = ConversationStore(settings.DATABASE_URL)
    capture_service = CaptureService(store)
except Exception as e:
    logger.error(f"初始化对话存储失败: {e}", exc_info=True)
    store = None
    capture_service = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"应用启动中... {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"日志级别: {settings.LOG_LEVEL}")
    if capture_service is None:
        logger.error("对话存储初始化失败,服务可能无法正常工作")
    else:
        logger.info(f"已启用的平台: {', '.join(capture_service.registry.keys())}")
    logger.info(f"服务将在 http://localhost:{settings.PORT} 上可用")
    if settings.RATE_LIMIT_ENABLED:
        logger.info(f"速率限制已启用: {settings.RATE_LIMIT_REQUESTS} 请求/分钟")
    yield
    logger.info("应用关闭。")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.DESCRIPTION,
    lifespan=lifespan
)

# 注册速率限制器
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


class CapturedRequestIn(BaseModel):
    url: str
    method: str = "POST"
    body: Optional[str] = None


class CapturedResponseIn(BaseModel):
    status: int = 200
    body: Optional[str] = None
    chunks: Optional[List[str]] = None


class CaptureIn(BaseModel):
    page_url: Optional[str] = None
    request: CapturedRequestIn
    response: CapturedResponseIn


class ConversationIn(BaseModel):
    platform: str
    prompt: str = ""
    response: str = ""
    url: str = ""
    title: Optional[str] = None
    createdAt: Optional[str] = None


# 全局异常处理器
@app.exception_handler(LLMLogException)
async def llmlog_exception_handler(request: Request, exc: LLMLogException):
    """处理自定义异常"""
    logger.error(f"请求处理异常: {exc.message} (类型: {exc.error_type})")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": exc.error_type,
                "code": exc.status_code
            }
        }
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """处理未捕获的异常"""
    logger.error(f"未处理的异常: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "服务器内部错误",
                "type": "internal_server_error",
                "code": 500
            }
        }
    )

def get_rate_limit():
    """获取速率限制字符串"""
    if settings.RATE_LIMIT_ENABLED:
        return f"{settings.RATE_LIMIT_REQUESTS}/minute"
    return None

def require_service() -> CaptureService:
    if capture_service is None:
        raise LLMLogConfigurationError("服务未正确初始化,请检查配置")
    return capture_service

def unwrap(result: dict) -> dict:
    """存储层以 status 字段报告错误,这里转换为异常"""
    if result.get("status") != "success":
        raise StorageError(result.get("message", "数据库操作失败"))
    return result

@app.post("/v1/capture")
@limiter.limit(get_rate_limit() or "1000/minute")  # 如果未启用则设置一个很高的限制
async def capture(request: Request, payload: CaptureIn):
    """接收宿主拦截到的一次请求/响应"""
    service = require_service()
    if payload.response.chunks is not None:
        chunks = payload.response.chunks
    elif payload.response.body is not None:
        chunks = [payload.response.body]
    else:
        raise InvalidCapturePayloadError("响应体不能为空")

    captured_request = CapturedRequest(
        url=payload.request.url,
        method=payload.request.method,
        body=payload.request.body,
        page_url=payload.page_url
    )
    captured_response = CapturedResponse(
        chunks,
        status=payload.response.status,
        url=payload.request.url,
        page_url=payload.page_url
    )
    logger.debug(f"收到采集数据: {captured_request.method} {captured_request.path}")
    return await service.process_exchange(captured_request, captured_response)

@app.post("/v1/conversations")
async def save_conversation(conversation: ConversationIn):
    """直接保存一条已归一化的对话"""
    service = require_service()
    data = conversation.model_dump()
    if data["title"] is None:
        data["title"] = conversation.prompt[:settings.TITLE_MAX_LENGTH]
    return unwrap(await service.save(data))

@app.get("/v1/conversations")
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    search: str = "",
    platform: str = ""
):
    """分页列出对话（按时间倒序）"""
    service = require_service()
    return unwrap(await run_in_threadpool(service.store.get_conversations, page, limit, search, platform))

@app.get("/v1/conversations/all")
async def list_all_conversations():
    service = require_service()
    return unwrap(await run_in_threadpool(service.store.get_all_conversations))

@app.get("/v1/conversations/count")
async def count_conversations(search: str = "", platform: str = ""):
    service = require_service()
    return unwrap(await run_in_threadpool(service.store.get_total_conversation_count, search, platform))

@app.delete("/v1/conversations/{conversation_id}")
async def delete_conversation(conversation_id: int):
    service = require_service()
    result = await run_in_threadpool(service.store.delete_conversation, conversation_id)
    if result.get("status") != "success" and result.get("id") == conversation_id:
        raise ConversationNotFoundError(conversation_id)
    return unwrap(result)

@app.get("/v1/platforms")
async def list_platforms():
    """列出已启用的平台及其拦截的接口"""
    service = require_service()
    return {
        "object": "list",
        "data": [service.registry.get_platform_config(key) for key in service.registry.keys()]
    }

@app.get("/health")
async def health_check():
    """健康检查端点"""
    health_status = {
        "status": "healthy" if capture_service is not None else "unhealthy",
        "version": settings.APP_VERSION,
        "timestamp": int(time.time())
    }

    if capture_service is None:
        health_status["error"] = "对话存储未初始化"
        return JSONResponse(content=health_status, status_code=503)

    return JSONResponse(content=health_status)

@app.get("/", summary="根路径")
def root():
    """根路径信息"""
    return {
        "message": f"欢迎来到 {settings.APP_NAME} v{settings.APP_VERSION}",
        "status": "运行中",
        "endpoints": {
            "capture": "/v1/capture",
            "conversations": "/v1/conversations",
            "platforms": "/v1/platforms",
            "health": "/health"
        }
    }
