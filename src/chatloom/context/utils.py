"""Token 估算与上下文统计"""

import math
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Dict, Iterable, Optional


@lru_cache(maxsize=1000)
def estimate_tokens(text: str, chars_per_token: int = 3) -> int:
    """估算文本token数（向上取整，偏保守）"""
    return math.ceil(len(text or "") / chars_per_token)


class TokenEstimator(ABC):
    """可替换的 token 估算器，换成真实分词器不影响预算比例逻辑"""

    @abstractmethod
    def estimate(self, text: str) -> int:
        pass


class CharRatioEstimator(TokenEstimator):
    """按字符比估算"""

    def __init__(self, chars_per_token: int = 3):
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be >= 1")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        return estimate_tokens(text or "", self.chars_per_token)


def context_stats(entries: Iterable[Any], estimator: Optional[TokenEstimator] = None) -> Dict[str, int]:
    """统计上下文中各角色条数、字符数与估算 token 数

    entries 可以是 ContextEntry，也可以是 {"role", "content"} 字典。
    """
    estimator = estimator or CharRatioEstimator()
    stats = {
        "total_messages": 0,
        "system_messages": 0,
        "user_messages": 0,
        "assistant_messages": 0,
        "total_chars": 0,
        "estimated_tokens": 0,
    }
    for entry in entries:
        role = entry["role"] if isinstance(entry, dict) else entry.role
        content = (entry["content"] if isinstance(entry, dict) else entry.content) or ""
        stats["total_messages"] += 1
        key = f"{role}_messages"
        if key in stats:
            stats[key] += 1
        stats["total_chars"] += len(content)
        stats["estimated_tokens"] += estimator.estimate(content)
    return stats
