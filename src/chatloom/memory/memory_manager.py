"""记忆管理器"""

import asyncio
from typing import Any, Dict, List, Optional

from ..config import Config
from ..errors import InvalidArgument, NotFound
from ..model_client import TextGenerator
from ..store.memory_store import MemoryStore
from ..store.message_store import MessageStore
from ..store.models import MEMORY_KINDS, Memory, Turn
from ..utils.logger import logger
from .facts import FactExtractor, normalize_fact
from .summarizer import Summarizer, importance_for

# 清理时永不删除的记忆类型
PROTECTED_KINDS = ("fact", "user_note")


class MemoryManager:
    """房间记忆的生命周期

    核心职责：
    - 判断是否需要摘要（以摘要水位为界的滑动窗口）
    - 生成摘要并保存为 summary 记忆
    - 按 (importance desc, created_at desc) 清理低价值记忆
    - 用户手动记忆的增删改查

    summarize / extract_facts 在后台调用，任何失败都只记录日志。
    """

    def __init__(
        self,
        message_store: MessageStore,
        memory_store: MemoryStore,
        generator: TextGenerator,
        config: Config,
    ):
        self.message_store = message_store
        self.memory_store = memory_store
        self.config = config
        self.summarizer = Summarizer(generator, config)
        self.fact_extractor = FactExtractor(generator, config)
        self._summary_locks: Dict[int, asyncio.Lock] = {}

    # ---- 摘要 ----

    def summary_watermark(self, room_id: int) -> Optional[int]:
        """已被自动摘要覆盖的最大消息 id

        取持久化水位和现存摘要 range_end 的较大者，清理掉旧摘要不会让水位回退。
        """
        state = self.message_store.get_room_state(room_id)
        persisted = state.summary_watermark if state is not None else None
        latest = self.memory_store.latest_summary(room_id)
        from_memory = latest.range_end if latest is not None else None
        candidates = [v for v in (persisted, from_memory) if v is not None]
        return max(candidates) if candidates else None

    def needs_summarization(self, room_id: int) -> bool:
        watermark = self.summary_watermark(room_id)
        count = self.message_store.count_turns(room_id, after_id=watermark)
        return count >= self.config.summary_threshold

    def _summary_lock(self, room_id: int) -> asyncio.Lock:
        lock = self._summary_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._summary_locks[room_id] = lock
        return lock

    async def summarize(self, room_id: int, persona_name: str, only_if_needed: bool = False) -> Optional[Memory]:
        """摘要水位之后的一段消息，返回新建的记忆；没有新消息或失败时返回 None

        同一房间的摘要串行执行，水位在锁内读取，摘要范围不会重叠。
        only_if_needed=True 时在锁内重新检查触发条件。
        """
        async with self._summary_lock(room_id):
            if only_if_needed and not self.needs_summarization(room_id):
                logger.debug(f"房间 {room_id} 已被其他摘要任务覆盖，跳过")
                return None

            watermark = self.summary_watermark(room_id)
            start_id = watermark + 1 if watermark is not None else 0
            turns = self.message_store.turns_from(room_id, start_id, self.config.max_turns_per_summary)
            if not turns:
                logger.debug(f"房间 {room_id} 没有需要摘要的消息")
                return None

            logger.info(f"开始摘要房间 {room_id}: 消息 {turns[0].id}-{turns[-1].id}，共 {len(turns)} 条")
            try:
                text = await self.summarizer.summarize(turns, persona_name)
            except Exception as e:
                logger.warning(f"房间 {room_id} 摘要失败，跳过本次: {e}")
                return None

            try:
                memory = await asyncio.to_thread(self._save_summary, room_id, turns, text, persona_name)
            except Exception as e:
                logger.error(f"房间 {room_id} 摘要保存失败: {e}")
                return None

        logger.info(f"✅ 房间 {room_id} 摘要完成: 覆盖 {len(turns)} 条消息，重要度 {memory.importance}")
        return memory

    def _save_summary(self, room_id: int, turns: List[Turn], text: str, persona_name: str) -> Memory:
        # 先写记忆再推进水位，中途失败最多重复摘要，不会漏掉消息
        memory = self.memory_store.add(
            room_id=room_id,
            kind="summary",
            content=text,
            importance=importance_for(len(turns)),
            range_start=turns[0].id,
            range_end=turns[-1].id,
            metadata={
                "turn_count": len(turns),
                "persona_name": persona_name,
                "created_by": "auto-summarizer",
            },
            created_by="auto",
        )
        self.message_store.set_summary_watermark(room_id, turns[-1].id)
        return memory

    def cleanup(self, room_id: int, keep_count: Optional[int] = None) -> int:
        """保留排名前 keep_count 的记忆，删除其余自动摘要

        用户创建的记忆以及 fact / user_note 类型的记忆不删。
        """
        keep = self.config.memory_keep_count if keep_count is None else keep_count
        if keep < 0:
            raise InvalidArgument("keep_count must be >= 0", {"keep_count": keep})

        ranked = self.memory_store.list(room_id)
        doomed = [m.id for m in ranked[keep:]
                  if m.created_by != "user" and m.kind not in PROTECTED_KINDS]
        deleted = self.memory_store.delete_many(doomed)
        logger.info(f"房间 {room_id} 记忆清理: 共 {len(ranked)} 条，保留 {keep}，删除 {deleted}")
        return deleted

    # ---- 查询与手动维护 ----

    def list(self, room_id: int, kind: Optional[str] = None, limit: Optional[int] = None) -> List[Memory]:
        if kind is not None:
            self._check_kind(kind)
        return self.memory_store.list(room_id, kind=kind, limit=limit)

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in MEMORY_KINDS:
            raise InvalidArgument(f"unknown memory kind: {kind}", {"kind": kind})

    @staticmethod
    def _check_importance(importance: int) -> None:
        if not isinstance(importance, int) or not 1 <= importance <= 10:
            raise InvalidArgument("importance must be an integer between 1 and 10",
                                  {"importance": importance})

    def _owned(self, room_id: Optional[int], memory_id: int) -> Memory:
        memory = self.memory_store.get(memory_id)
        if room_id is not None and memory.room_id != room_id:
            raise NotFound(f"memory {memory_id} not found in room {room_id}",
                           {"memory_id": memory_id, "room_id": room_id})
        return memory

    def get(self, memory_id: int, room_id: Optional[int] = None) -> Memory:
        return self._owned(room_id, memory_id)

    def create(
        self,
        room_id: int,
        content: str,
        kind: str = "user_note",
        importance: int = 5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Memory:
        """用户手动添加记忆，不会被自动清理"""
        self._check_kind(kind)
        self._check_importance(importance)
        if not content or not content.strip():
            raise InvalidArgument("memory content must not be empty")
        memory = self.memory_store.add(
            room_id=room_id,
            kind=kind,
            content=content.strip(),
            importance=importance,
            metadata=metadata,
            created_by="user",
        )
        logger.info(f"房间 {room_id} 新增手动记忆 {memory.id} ({kind})")
        return memory

    def update(
        self,
        memory_id: int,
        room_id: Optional[int] = None,
        content: Optional[str] = None,
        importance: Optional[int] = None,
        kind: Optional[str] = None,
    ) -> Memory:
        self._owned(room_id, memory_id)
        if kind is not None:
            self._check_kind(kind)
        if importance is not None:
            self._check_importance(importance)
        if content is not None:
            content = content.strip()
            if not content:
                raise InvalidArgument("memory content must not be empty")
        return self.memory_store.update(memory_id, content=content, importance=importance, kind=kind)

    def delete(self, memory_id: int, room_id: Optional[int] = None) -> None:
        self._owned(room_id, memory_id)
        self.memory_store.delete(memory_id)
        logger.info(f"删除记忆 {memory_id}")

    def clear(self, room_id: int) -> int:
        """删除房间全部记忆并清空摘要水位"""
        count = self.memory_store.delete_room(room_id)
        self.message_store.clear_summary_watermark(room_id)
        return count

    # ---- 事实抽取 ----

    async def extract_facts(self, room_id: int, user_message: str, reply: str) -> List[Memory]:
        """抽取本轮对话中的用户事实，去重后保存为 fact 记忆；失败返回空列表"""
        try:
            facts = await self.fact_extractor.extract(user_message, reply)
        except Exception as e:
            logger.warning(f"房间 {room_id} 事实抽取失败: {e}")
            return []
        if not facts:
            return []

        known = {normalize_fact(m.content) for m in self.memory_store.list(room_id, kind="fact")}
        saved: List[Memory] = []
        for fact in facts:
            key = normalize_fact(fact)
            if not key or key in known:
                continue
            known.add(key)
            saved.append(self.memory_store.add(
                room_id=room_id,
                kind="fact",
                content=fact,
                importance=6,
                metadata={"created_by": "fact-extractor"},
                created_by="auto",
            ))
        if saved:
            logger.info(f"房间 {room_id} 保存 {len(saved)} 条新事实")
        return saved
