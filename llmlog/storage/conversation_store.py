"""
对话存储

基于 SQLModel + SQLite 保存捕获到的对话记录，负责保存时去重、倒序分页与搜索。
所有返回值都是 {"status": ..., "data": ...} 形式的字典，调用方无需处理异常。
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import String, event, func, or_
from sqlmodel import Field, Session, SQLModel, create_engine, select
from sqlmodel.pool import StaticPool

from llmlog.core.config import settings

logger = logging.getLogger(__name__)


class ConversationRecord(SQLModel, table=True):
    """对话记录模型（写入后不再修改）"""
    __tablename__ = "conversations"

    id: Optional[int] = Field(default=None, primary_key=True)
    platform: str = Field(default="", index=True)
    prompt: str = Field(default="")
    response: str = Field(default="")
    title: str = Field(default="", index=True)
    url: str = Field(default="", index=True)
    created_at: str = Field(index=True)  # ISO-8601 UTC，定长毫秒格式

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "platform": self.platform,
            "prompt": self.prompt,
            "response": self.response,
            "title": self.title,
            "url": self.url,
            "createdAt": self.created_at,
        }


def parse_timestamp(value: Any) -> datetime:
    """解析 ISO-8601 时间，无时区信息时按 UTC 处理"""
    if isinstance(value, datetime):
        parsed = value
    elif value:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        parsed = datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_timestamp(value: Any) -> str:
    return format_timestamp(parse_timestamp(value))


def _unicode_lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value is not None else None


def _error(message: str, **extra) -> Dict[str, Any]:
    return {"status": "error", "message": message, **extra}


class ConversationStore:
    """对话记录仓库

    保存时的去重规则：
    1. URL 相同且提示词与回复完全相同 -> 重复（不限时间）；
    2. 提示词与回复完全相同且 createdAt 相差小于平台去重窗口 -> 重复（不看 URL）。
    仅 URL 相同而内容不同视为同一页面上的新一轮对话，正常写入。
    """

    def __init__(self, database_url: Optional[str] = None, **engine_kwargs):
        self.database_url = database_url or settings.DATABASE_URL
        self._write_lock = threading.Lock()
        self.engine = self._create_engine(**engine_kwargs)
        self._register_functions()
        SQLModel.metadata.create_all(self.engine)
        logger.info(f"对话存储已初始化: {self.database_url}")

    def _create_engine(self, **kwargs):
        config: Dict[str, Any] = {"echo": False}
        if self.database_url.startswith("sqlite"):
            config["connect_args"] = {"check_same_thread": False}
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                # 内存数据库需要在所有线程间共享同一连接
                config["poolclass"] = StaticPool
            else:
                db_path = Path(self.database_url.replace("sqlite:///", "", 1))
                db_path.parent.mkdir(parents=True, exist_ok=True)
        config.update(kwargs)
        return create_engine(self.database_url, **config)

    def _register_functions(self) -> None:
        if self.engine.dialect.name != "sqlite":
            return

        # SQLite 自带的 lower() 与 LIKE 只处理 ASCII，注册 Python 的 str.lower 供搜索使用
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.create_function("unicode_lower", 1, _unicode_lower, deterministic=True)

    def _lower(self, column):
        if self.engine.dialect.name == "sqlite":
            return func.unicode_lower(column, type_=String)
        return func.lower(column)

    @contextmanager
    def get_session(self):
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    def close(self) -> None:
        self.engine.dispose()

    # 写入

    def save_conversation(self, conversation_data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            created = parse_timestamp(conversation_data.get("createdAt"))
            record = ConversationRecord(
                platform=conversation_data.get("platform") or "",
                prompt=conversation_data.get("prompt") or "",
                response=conversation_data.get("response") or "",
                title=conversation_data.get("title") or "",
                url=conversation_data.get("url") or "",
                created_at=format_timestamp(created),
            )
        except (TypeError, ValueError) as e:
            logger.error(f"对话数据格式无效: {e}")
            return _error(f"对话数据格式无效: {e}")

        try:
            # 查重与写入必须串行，避免两次并发保存同时通过查重
            with self._write_lock, self.get_session() as session:
                existing = self._find_duplicate(session, record, created)
                if existing is not None:
                    return {"status": "success", "data": {"id": existing.id, "duplicate": True}}

                session.add(record)
                session.commit()
                session.refresh(record)
                logger.info(f"对话已保存 (id={record.id}, platform={record.platform})")
                return {"status": "success", "data": {"id": record.id}}
        except Exception as e:
            logger.error(f"保存对话失败: {e}", exc_info=True)
            return _error(f"保存对话失败: {e}")

    def _find_duplicate(self, session: Session, record: ConversationRecord, created: datetime) -> Optional[ConversationRecord]:
        same_content = (ConversationRecord.prompt == record.prompt) & (ConversationRecord.response == record.response)

        if record.url:
            existing = session.exec(
                select(ConversationRecord)
                .where(same_content, ConversationRecord.url == record.url)
                .order_by(ConversationRecord.id)
                .limit(1)
            ).first()
            if existing is not None:
                logger.info(f"相同 URL 与内容的对话已存在，跳过保存 (existing_id={existing.id}, url={record.url})")
                return existing

        window = timedelta(seconds=settings.get_duplicate_window(record.platform))
        lower = format_timestamp(created - window)
        upper = format_timestamp(created + window)
        candidates = session.exec(
            select(ConversationRecord)
            .where(same_content, ConversationRecord.created_at >= lower, ConversationRecord.created_at <= upper)
            .order_by(ConversationRecord.created_at.desc(), ConversationRecord.id.desc())
        ).all()
        for candidate in candidates:
            if abs(parse_timestamp(candidate.created_at) - created) < window:
                logger.info(
                    f"去重窗口内检测到相同内容的对话，跳过保存 "
                    f"(existing_id={candidate.id}, window={window.total_seconds()}s)"
                )
                return candidate
        return None

    def delete_conversation(self, conversation_id: Any) -> Dict[str, Any]:
        try:
            with self._write_lock, self.get_session() as session:
                record = session.get(ConversationRecord, conversation_id)
                if record is None:
                    logger.warning(f"要删除的对话不存在: {conversation_id}")
                    return _error(f"对话记录不存在: {conversation_id}", id=conversation_id)
                session.delete(record)
                session.commit()
            logger.info(f"对话已删除 (id={conversation_id})")
            return {"status": "success", "data": {"id": conversation_id}}
        except Exception as e:
            logger.error(f"删除对话失败: {e}", exc_info=True)
            return _error(f"删除对话失败: {e}")

    # 查询

    def _filtered(self, query, search: str = "", platform: str = ""):
        if platform and platform.strip():
            query = query.where(ConversationRecord.platform == platform.strip())
        term = (search or "").strip().lower()
        if term:
            query = query.where(or_(
                self._lower(ConversationRecord.prompt).contains(term, autoescape=True),
                self._lower(ConversationRecord.response).contains(term, autoescape=True),
                self._lower(ConversationRecord.title).contains(term, autoescape=True),
            ))
        return query

    @staticmethod
    def _newest_first(query):
        return query.order_by(ConversationRecord.created_at.desc(), ConversationRecord.id.desc())

    def get_all_conversations(self) -> Dict[str, Any]:
        try:
            with self.get_session() as session:
                records = session.exec(self._newest_first(select(ConversationRecord))).all()
                return {"status": "success", "data": [record.to_dict() for record in records]}
        except Exception as e:
            logger.error(f"读取全部对话失败: {e}", exc_info=True)
            return _error(f"读取全部对话失败: {e}")

    def get_conversations(self, page: int = 1, limit: Optional[int] = None, search: str = "", platform: str = "") -> Dict[str, Any]:
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or settings.DEFAULT_PAGE_SIZE), 1), settings.MAX_PAGE_SIZE)
        try:
            with self.get_session() as session:
                query = self._newest_first(self._filtered(select(ConversationRecord), search, platform))
                # 多取一条用于判断是否还有下一页
                rows = session.exec(query.offset((page - 1) * limit).limit(limit + 1)).all()
        except Exception as e:
            logger.error(f"分页读取对话失败: {e}", exc_info=True)
            return _error(f"分页读取对话失败: {e}")

        pagination: Dict[str, Any] = {"page": page, "limit": limit, "hasMore": len(rows) > limit}
        if search and search.strip():
            pagination["search"] = search
            count_result = self.get_total_conversation_count(search, platform)
            if count_result["status"] == "success":
                pagination["totalCount"] = count_result["data"]["totalCount"]
        return {
            "status": "success",
            "data": [record.to_dict() for record in rows[:limit]],
            "pagination": pagination,
        }

    def get_total_conversation_count(self, search: str = "", platform: str = "") -> Dict[str, Any]:
        try:
            with self.get_session() as session:
                query = self._filtered(select(func.count()).select_from(ConversationRecord), search, platform)
                total = session.exec(query).one()
                return {"status": "success", "data": {"totalCount": int(total)}}
        except Exception as e:
            logger.error(f"统计对话数量失败: {e}", exc_info=True)
            return _error(f"统计对话数量失败: {e}")
