"""分层策略：最近消息保底，重要记忆和更早消息按剩余预算补充"""

from typing import Any, Dict, List, Optional

from ..base import ContextEntry, ContextPolicy, ContextRequest, PolicyMetadata


class TieredPolicy(ContextPolicy):
    """三层优先级

    1. 最近 min(5, max_recent) 条消息，始终保留
    2. 已用 < 50% 时加入最多 2 条 importance >= 7 的记忆，总量需 < 60%
    3. 已用 < 70% 时从新到旧补充更早的消息，超过 80% 即停止
    """

    GUARANTEED_TURNS = 5
    MEMORY_LIMIT = 2
    MEMORY_MIN_IMPORTANCE = 7
    MEMORY_GATE = 0.5
    MEMORY_SHARE = 0.6
    BACKFILL_GATE = 0.7
    BACKFILL_SHARE = 0.8

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.guaranteed_turns = self.config.get("guaranteed_turns", self.GUARANTEED_TURNS)
        self.memory_limit = self.config.get("memory_limit", self.MEMORY_LIMIT)
        self.memory_min_importance = self.config.get("memory_min_importance", self.MEMORY_MIN_IMPORTANCE)

    def build(self, request: ContextRequest) -> List[ContextEntry]:
        budget = request.available
        turns = request.turns
        max_recent = max(request.max_recent, 0)

        guaranteed = min(self.guaranteed_turns, max_recent, len(turns))
        split = len(turns) - guaranteed
        tier1 = turns[split:]
        used = sum(request.tokens(t.content) for t in tier1)

        memory_entry = None
        if request.include_memories and used < budget * self.MEMORY_GATE:
            important = [m for m in request.memories if m.importance >= self.memory_min_importance]
            important = important[:self.memory_limit]
            if important:
                content = "\n\n".join(f"[Previous conversation]: {m.content}" for m in important)
                tokens = request.tokens(content)
                if used + tokens < budget * self.MEMORY_SHARE:
                    memory_entry = ContextEntry(role="system", content=content, kind="memory")
                    used += tokens

        older = []
        extra = max_recent - guaranteed
        if extra > 0 and split > 0 and used < budget * self.BACKFILL_GATE:
            candidates = turns[max(0, split - extra):split]
            for turn in reversed(candidates):
                tokens = request.tokens(turn.content)
                if used + tokens > budget * self.BACKFILL_SHARE:
                    break
                older.insert(0, turn)
                used += tokens

        entries: List[ContextEntry] = []
        if memory_entry is not None:
            entries.append(memory_entry)
        for turn in older + list(tier1):
            entries.append(ContextEntry(role=turn.role, content=turn.content, kind="turn", turn_id=turn.id))
        entries.append(request.new_message_entry())
        return entries

    def get_metadata(self) -> PolicyMetadata:
        return PolicyMetadata(
            name="smart",
            version="1.0.0",
            description="分层组装：最近 5 条保底，重要记忆与更早消息按剩余预算补充",
        )
