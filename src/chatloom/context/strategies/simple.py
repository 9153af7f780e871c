"""简单策略：记忆和最近消息按预算比例分配"""

from typing import Any, Dict, List, Optional

from ..base import ContextEntry, ContextPolicy, ContextRequest, PolicyMetadata


class SimplePolicy(ContextPolicy):
    """记忆最多占 30%，最近消息窗口每次缩小 2 条直到总量低于 80%"""

    MEMORY_LIMIT = 3
    MEMORY_SHARE = 0.3
    HISTORY_SHARE = 0.8
    SHRINK_STEP = 2

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.memory_limit = self.config.get("memory_limit", self.MEMORY_LIMIT)
        self.memory_share = self.config.get("memory_share", self.MEMORY_SHARE)
        self.history_share = self.config.get("history_share", self.HISTORY_SHARE)
        self.shrink_step = self.config.get("shrink_step", self.SHRINK_STEP)

    @staticmethod
    def render_memories(memories) -> str:
        lines = []
        for idx, memory in enumerate(memories, 1):
            label = "Previous conversation" if memory.kind == "summary" else "Memory"
            lines.append(f"[{label} {idx}]: {memory.content}")
        return "Context from previous conversations:\n\n" + "\n\n".join(lines)

    def build(self, request: ContextRequest) -> List[ContextEntry]:
        budget = request.available
        used = 0
        entries: List[ContextEntry] = []

        if request.include_memories and request.memories:
            content = self.render_memories(request.memories[:self.memory_limit])
            tokens = request.tokens(content)
            if used + tokens < budget * self.memory_share:
                entries.append(ContextEntry(role="system", content=content, kind="memory"))
                used += tokens

        window = min(max(request.max_recent, 0), len(request.turns))
        while window > 0:
            recent = request.turns[-window:]
            tokens = sum(request.tokens(t.content) for t in recent)
            if used + tokens < budget * self.history_share:
                break
            window -= self.shrink_step
        window = max(window, 0)

        if window:
            for turn in request.turns[-window:]:
                entries.append(ContextEntry(role=turn.role, content=turn.content, kind="turn", turn_id=turn.id))

        entries.append(request.new_message_entry())
        return entries

    def get_metadata(self) -> PolicyMetadata:
        return PolicyMetadata(
            name="simple",
            version="1.0.0",
            description="按预算比例组装：前 3 条记忆占 30% 以内，最近消息窗口收缩到 80% 以内",
        )
