from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import Dict, List, Optional
import logging

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding='utf-8',
        extra="ignore"
    )

    APP_NAME: str = "llmlog-capture"
    APP_VERSION: str = "1.3.0"
    DESCRIPTION: str = "捕获各大 AI 聊天平台的对话请求/响应，重建提示词与回复并去重存档。"

    # 日志配置
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL

    # --- 存储 ---
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)
    PORT: int = 8088

    # 速率限制配置（仅作用于采集接口）
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 120  # 每分钟请求数

    # 去重配置（秒）
    DUPLICATE_WINDOW_SECONDS: float = 5.0
    MAX_TRACKED_CONVERSATIONS: int = 100
    STORE_DUPLICATE_WINDOW_SECONDS: float = 5.0
    # 部分平台会在页面重载时重复推送同一轮对话，窗口需要放宽
    PLATFORM_DUPLICATE_WINDOWS: Dict[str, float] = {
        "Claude": 10.0,
        "Gemini": 15.0,
        "Doubao": 30.0,
    }

    TITLE_MAX_LENGTH: int = 50
    TONGYI_MIN_CONTENT_LENGTH: int = 20

    # 分页
    DEFAULT_PAGE_SIZE: int = 50
    MAX_PAGE_SIZE: int = 200

    ENABLED_PLATFORMS: List[str] = [
        "chatgpt",
        "claude",
        "tongyi",
        "deepseek",
        "gemini",
        "kimi",
        "doubao",
    ]

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def validate_database_url(cls, v):
        """未配置数据库时使用默认值（测试环境使用内存数据库）"""
        import os
        if v and str(v).strip():
            return str(v).strip()
        if os.getenv('PYTEST_CURRENT_TEST') or os.getenv('TESTING'):
            return "sqlite://"
        return "sqlite:///data/llmlog.db"

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """验证日志级别"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"LOG_LEVEL 必须是以下值之一: {', '.join(valid_levels)}")
        return v_upper

    @field_validator('DUPLICATE_WINDOW_SECONDS', 'STORE_DUPLICATE_WINDOW_SECONDS')
    @classmethod
    def validate_window(cls, v):
        if v <= 0:
            raise ValueError("去重时间窗口必须大于 0")
        return v

    @field_validator('MAX_TRACKED_CONVERSATIONS', 'DEFAULT_PAGE_SIZE', 'MAX_PAGE_SIZE')
    @classmethod
    def validate_positive(cls, v, info):
        if v < 1:
            raise ValueError(f"{info.field_name} 必须是正整数")
        return v

    def get_log_level(self) -> int:
        """获取日志级别常量"""
        return getattr(logging, self.LOG_LEVEL)

    def get_duplicate_window(self, platform: Optional[str]) -> float:
        """获取指定平台在存储层的去重窗口（秒）"""
        if platform and platform in self.PLATFORM_DUPLICATE_WINDOWS:
            return self.PLATFORM_DUPLICATE_WINDOWS[platform]
        return self.STORE_DUPLICATE_WINDOW_SECONDS

settings = Settings()
