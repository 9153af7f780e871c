"""上下文组装模块"""

from .base import (
    ContextEntry,
    ContextPolicy,
    ContextRequest,
    MemorySnapshot,
    PolicyMetadata,
    TurnSnapshot,
)
from .builder import ContextBuilder, PolicyMetrics
from .strategies import SimplePolicy, TieredPolicy
from .utils import CharRatioEstimator, TokenEstimator, context_stats, estimate_tokens

__all__ = [
    "ContextEntry",
    "ContextPolicy",
    "ContextRequest",
    "MemorySnapshot",
    "PolicyMetadata",
    "TurnSnapshot",
    "ContextBuilder",
    "PolicyMetrics",
    "SimplePolicy",
    "TieredPolicy",
    "CharRatioEstimator",
    "TokenEstimator",
    "context_stats",
    "estimate_tokens",
]
