"""基于时间窗口的有界指纹缓存

用于在短时间内抑制同一轮对话的重复处理（重复通知、重复入库请求等）。
缓存只是降噪手段，存储层会在保存时独立完成权威的去重判断。
"""
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class DuplicateCache:
    """指纹 -> (最后出现时间, 关联值) 的映射，超出窗口的条目会被清除，条目数量有上限。"""

    def __init__(
        self,
        window_seconds: float = 5.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds 必须大于 0")
        if max_entries < 1:
            raise ValueError("max_entries 必须是正整数")
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def purge(self, now: Optional[float] = None) -> None:
        """清除过期条目，并按时间从旧到新淘汰超出上限的条目"""
        now = self._now(now)
        expired = [key for key, (seen_at, _) in self._entries.items() if now - seen_at > self.window_seconds]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1][0])[:overflow]
            for key, _ in oldest:
                del self._entries[key]
            logger.debug(f"去重缓存超出上限，已淘汰 {overflow} 个最旧条目")

    def is_duplicate(self, key: str, now: Optional[float] = None) -> bool:
        self.purge(now)
        return key in self._entries

    def record(self, key: str, value: Any = None, now: Optional[float] = None) -> None:
        self._entries[key] = (self._now(now), value)

    def check_and_record(self, key: str, value: Any = None, now: Optional[float] = None) -> bool:
        """完整的判重流程：清理 -> 查询 -> 未命中时登记。返回是否为重复项。"""
        now = self._now(now)
        if self.is_duplicate(key, now):
            return True
        self.record(key, value, now)
        return False

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def clear(self) -> None:
        self._entries.clear()
