"""上下文构建器"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..config import Config
from ..errors import InvalidArgument
from ..store.memory_store import MemoryStore
from ..store.message_store import MessageStore
from ..utils.logger import logger
from .base import ContextEntry, ContextPolicy, ContextRequest, MemorySnapshot, PolicyMetadata, TurnSnapshot
from .strategies import SimplePolicy, TieredPolicy
from .utils import CharRatioEstimator, TokenEstimator, context_stats


@dataclass
class PolicyMetrics:
    """组装指标"""
    policy_name: str
    build_count: int = 0
    total_entries: int = 0
    total_tokens: int = 0
    total_duration: float = 0.0
    last_build_time: Optional[float] = None

    @property
    def avg_tokens(self) -> float:
        return self.total_tokens / self.build_count if self.build_count > 0 else 0.0


class ContextBuilder:
    """上下文构建器：读取活动路径和记忆，交给当前策略组装"""

    # 策略最多用到的记忆条数，多取一些给自定义策略留余量
    MEMORY_FETCH_LIMIT = 20

    def __init__(
        self,
        message_store: MessageStore,
        memory_store: MemoryStore,
        config: Config,
        estimator: Optional[TokenEstimator] = None,
    ):
        self.message_store = message_store
        self.memory_store = memory_store
        self.config = config
        self.estimator = estimator or CharRatioEstimator(config.chars_per_token)
        self.policies: Dict[str, ContextPolicy] = {}
        self.metrics: Dict[str, PolicyMetrics] = {}
        self.current_policy: Optional[str] = None

        self.register_policy("simple", SimplePolicy())
        self.register_policy("smart", TieredPolicy())
        self.set_policy(config.context_policy)

    def register_policy(self, name: str, policy: ContextPolicy) -> None:
        self.policies[name] = policy
        self.metrics[name] = PolicyMetrics(policy_name=name)
        logger.debug(f"注册上下文策略: {name}")

    def set_policy(self, name: str) -> None:
        if name not in self.policies:
            available = ", ".join(self.policies.keys())
            raise InvalidArgument(f"策略 '{name}' 不存在。可用策略: {available}", {"policy": name})
        self.current_policy = name

    def get_policy(self, name: Optional[str] = None) -> ContextPolicy:
        policy_name = name or self.current_policy
        if policy_name not in self.policies:
            raise InvalidArgument(f"策略 '{policy_name}' 不存在", {"policy": policy_name})
        return self.policies[policy_name]

    def list_policies(self) -> List[PolicyMetadata]:
        return [policy.get_metadata() for policy in self.policies.values()]

    def snapshot(self, room_id: int,
                 exclude_turn_id: Optional[int] = None) -> Tuple[List[TurnSnapshot], List[MemorySnapshot]]:
        """读取房间当前活动路径和排好序的记忆"""
        turns = [TurnSnapshot.from_turn(t) for t in self.message_store.active_turns(room_id)
                 if t.id != exclude_turn_id]
        memories = [MemorySnapshot.from_memory(m)
                    for m in self.memory_store.list(room_id, limit=self.MEMORY_FETCH_LIMIT)]
        return turns, memories

    def build(
        self,
        room_id: int,
        new_message: str,
        model: Optional[str] = None,
        token_budget: Optional[int] = None,
        max_recent: Optional[int] = None,
        include_memories: bool = True,
        policy: Optional[str] = None,
        exclude_turn_id: Optional[int] = None,
    ) -> List[ContextEntry]:
        """为新消息组装生成输入，最后一条总是新消息本身

        exclude_turn_id 用于重新生成：被回复的用户消息已在活动路径上，作为新消息传入时要先排除。
        """
        if token_budget is not None and token_budget <= 0:
            raise InvalidArgument("token budget must be positive", {"token_budget": token_budget})
        if max_recent is not None and max_recent < 0:
            raise InvalidArgument("max_recent must be >= 0", {"max_recent": max_recent})

        policy_name = policy or self.current_policy
        strategy = self.get_policy(policy_name)
        turns, memories = self.snapshot(room_id, exclude_turn_id)
        request = ContextRequest(
            turns=turns,
            memories=memories if include_memories else [],
            budget=self.config.resolve_token_budget(model, token_budget),
            new_message=new_message,
            max_recent=self.config.max_recent_turns if max_recent is None else max_recent,
            include_memories=include_memories,
            estimator=self.estimator,
        )

        start_time = time.time()
        entries = strategy.build(request)
        duration = time.time() - start_time

        stats = context_stats(entries, self.estimator)
        self._record(policy_name, len(entries), stats["estimated_tokens"], duration)
        logger.debug(
            f"房间 {room_id} 上下文组装({policy_name}): {stats['total_messages']} 条, "
            f"约 {stats['estimated_tokens']}/{request.budget} tokens"
        )
        return entries

    def _record(self, policy_name: str, entries: int, tokens: int, duration: float) -> None:
        metric = self.metrics.setdefault(policy_name, PolicyMetrics(policy_name=policy_name))
        metric.build_count += 1
        metric.total_entries += entries
        metric.total_tokens += tokens
        metric.total_duration += duration
        metric.last_build_time = time.time()

    def get_metrics(self, policy_name: Optional[str] = None) -> PolicyMetrics:
        name = policy_name or self.current_policy
        if not name or name not in self.metrics:
            return PolicyMetrics(policy_name=name or "unknown")
        return self.metrics[name]
