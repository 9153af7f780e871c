"""记忆模块

- MemoryManager: 摘要触发、摘要生成、清理、手动记忆
- Summarizer: 摘要提示词与受限时长的生成调用
- FactExtractor: 用户事实抽取
"""

from .summarizer import Summarizer, SUMMARY_PROMPT, importance_for
from .facts import FactExtractor, normalize_fact, parse_facts
from .memory_manager import MemoryManager

__all__ = [
    "MemoryManager",
    "Summarizer",
    "SUMMARY_PROMPT",
    "importance_for",
    "FactExtractor",
    "normalize_fact",
    "parse_facts",
]
