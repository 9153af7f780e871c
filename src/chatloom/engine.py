"""对话引擎

把存储、分支、记忆、上下文和文本生成串成一次完整的对话轮次：

1. 归属校验
2. 基于当前活动路径为新消息组装上下文
3. 用户消息挂到活动叶子下
4. 调用生成，回复挂到用户消息下
5. 后台任务：判断是否摘要 -> 摘要 -> 可选清理 -> 可选事实抽取

后台任务有自己的错误边界，失败只写日志，不影响已经返回的回复。
同步的存储调用经 asyncio.to_thread 放到线程里执行，等待房间锁时不阻塞事件循环。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .auth import AllowAllOwnership, OwnershipChecker
from .branching import Branch, BranchManager, TreeNode
from .config import Config
from .context import ContextBuilder, ContextEntry, TokenEstimator, context_stats
from .errors import Forbidden, InvalidArgument
from .memory import MemoryManager
from .model_client import GenerationOptions, OpenAIGenerator, TextGenerator, TokenUsage
from .store import Database, Memory, MemoryStore, MessageStore, RoomLocks, Turn, init_db
from .utils.logger import logger

CostFunction = Callable[[TokenUsage, str], int]


@dataclass
class ChatResult:
    """一轮对话的结果"""
    user_turn: Turn
    reply: Turn
    context: List[ContextEntry]
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_turn": self.user_turn.to_dict(),
            "reply": self.reply.to_dict(),
            "context_size": len(self.context),
            "token_usage": {
                "input_tokens": self.token_usage.input_tokens,
                "output_tokens": self.token_usage.output_tokens,
                "total_tokens": self.token_usage.total_tokens,
            },
        }


class ConversationEngine:
    """分支对话状态引擎的统一入口"""

    def __init__(
        self,
        config: Optional[Config] = None,
        db: Optional[Database] = None,
        generator: Optional[TextGenerator] = None,
        ownership: Optional[OwnershipChecker] = None,
        estimator: Optional[TokenEstimator] = None,
        cost_fn: Optional[CostFunction] = None,
    ):
        self.config = config or Config()
        self.db = db or init_db(self.config.database_url)
        self.generator = generator or OpenAIGenerator(self.config)
        self.ownership = ownership or AllowAllOwnership()
        self.cost_fn = cost_fn

        self.message_store = MessageStore(self.db, RoomLocks(self.config.branch_lock_timeout))
        self.memory_store = MemoryStore(self.db)
        self.branches = BranchManager(self.message_store)
        self.memory = MemoryManager(self.message_store, self.memory_store, self.generator, self.config)
        self.context = ContextBuilder(self.message_store, self.memory_store, self.config, estimator)

        self._background: Set[asyncio.Task] = set()

    # ---- 权限 ----

    def _authorize(self, room_id: int, user_id: Optional[str]) -> None:
        if not self.ownership.can_access(room_id, user_id):
            logger.warning(f"用户 {user_id} 无权访问房间 {room_id}")
            raise Forbidden(f"access to room {room_id} denied", {"room_id": room_id, "user_id": user_id})

    # ---- 对话 ----

    async def send_message(
        self,
        room_id: int,
        content: str,
        user_id: Optional[str] = None,
        persona_name: str = "Assistant",
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        token_budget: Optional[int] = None,
        max_recent: Optional[int] = None,
        include_memories: bool = True,
        policy: Optional[str] = None,
    ) -> ChatResult:
        """发送一条用户消息并生成回复"""
        self._authorize(room_id, user_id)
        if not content or not content.strip():
            raise InvalidArgument("message content must not be empty")

        entries = await asyncio.to_thread(
            self.context.build, room_id, content,
            model=model, token_budget=token_budget, max_recent=max_recent,
            include_memories=include_memories, policy=policy,
        )
        user_turn = await asyncio.to_thread(
            self.message_store.append_to_active_path,
            room_id, "user", content, tokens_used=self.context.estimator.estimate(content),
        )
        result = await self._generate_reply(room_id, user_turn, entries, system_prompt, model)
        self._schedule(self._after_turn(room_id, persona_name, content, result.reply.content),
                       f"after-turn:{room_id}:{result.reply.id}")
        return result

    async def regenerate(
        self,
        room_id: int,
        reply_id: int,
        user_id: Optional[str] = None,
        persona_name: str = "Assistant",
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        token_budget: Optional[int] = None,
        max_recent: Optional[int] = None,
        include_memories: bool = True,
        policy: Optional[str] = None,
    ) -> ChatResult:
        """针对同一条用户消息重新生成回复，新回复成为旧回复的兄弟并激活

        生成失败时旧回复保持不变，活动路径恢复到调用前的叶子。
        """
        self._authorize(room_id, user_id)
        previous = await asyncio.to_thread(self.branches.active_leaf, room_id)
        prompt = await asyncio.to_thread(self.branches.prepare_regeneration, room_id, reply_id)
        try:
            entries = await asyncio.to_thread(
                self.context.build, room_id, prompt.content,
                model=model, token_budget=token_budget, max_recent=max_recent,
                include_memories=include_memories, policy=policy, exclude_turn_id=prompt.id,
            )
            result = await self._generate_reply(room_id, prompt, entries, system_prompt, model,
                                                replaces=reply_id)
        except Exception:
            if previous is not None:
                await asyncio.to_thread(self.branches.restore, room_id, previous.id)
            raise
        self._schedule(self._after_turn(room_id, persona_name, prompt.content, result.reply.content),
                       f"after-regenerate:{room_id}:{result.reply.id}")
        return result

    async def _generate_reply(
        self,
        room_id: int,
        user_turn: Turn,
        entries: List[ContextEntry],
        system_prompt: Optional[str],
        model: Optional[str],
        replaces: Optional[int] = None,
    ) -> ChatResult:
        model_name = model or self.config.model
        try:
            response = await self.generator.generate(
                system_prompt,
                [entry.to_dict() for entry in entries],
                GenerationOptions(model=model_name),
            )
        except Exception as e:
            logger.error(f"房间 {room_id} 生成回复失败: {e}")
            raise

        usage = response.token_usage
        tokens = usage.output_tokens or self.context.estimator.estimate(response.content)
        cost = self.cost_fn(usage, model_name) if self.cost_fn else 0
        reply = await asyncio.to_thread(
            self.message_store.append_child,
            room_id, user_turn.id, "assistant", response.content,
            tokens_used=tokens, cost=cost, replaces=replaces,
        )
        logger.info(f"房间 {room_id} 回复完成: turn={reply.id}, tokens={tokens}")
        return ChatResult(user_turn=user_turn, reply=reply, context=entries, token_usage=usage)

    def reset_conversation(self, room_id: int, user_id: Optional[str] = None) -> Dict[str, int]:
        """软删除全部消息，删除全部记忆"""
        self._authorize(room_id, user_id)
        turns = self.message_store.soft_delete_room(room_id)
        memories = self.memory.clear(room_id)
        logger.info(f"房间 {room_id} 已重置: 消息 {turns} 条，记忆 {memories} 条")
        return {"turns_deleted": turns, "memories_deleted": memories}

    def preview_context(
        self,
        room_id: int,
        new_message: str,
        user_id: Optional[str] = None,
        **options,
    ) -> Dict[str, Any]:
        """不调用生成，只返回将要发送的上下文和统计"""
        self._authorize(room_id, user_id)
        entries = self.context.build(room_id, new_message, **options)
        return {
            "entries": entries,
            "stats": context_stats(entries, self.context.estimator),
        }

    # ---- 分支 ----

    def active_path(self, room_id: int, user_id: Optional[str] = None) -> List[Turn]:
        self._authorize(room_id, user_id)
        return self.branches.active_branch_turns(room_id)

    def list_branches(self, room_id: int, user_id: Optional[str] = None) -> List[Branch]:
        self._authorize(room_id, user_id)
        return self.branches.list_branches(room_id)

    def fork(self, room_id: int, parent_turn_id: int, tag: Optional[str] = None,
             user_id: Optional[str] = None) -> str:
        self._authorize(room_id, user_id)
        return self.branches.fork(room_id, parent_turn_id, tag)

    def switch(self, room_id: int, tag: str, user_id: Optional[str] = None) -> List[int]:
        self._authorize(room_id, user_id)
        return self.branches.switch(room_id, tag)

    def delete_branch(self, room_id: int, tag: str, user_id: Optional[str] = None) -> int:
        self._authorize(room_id, user_id)
        return self.branches.delete(room_id, tag)

    def siblings(self, room_id: int, turn_id: int, user_id: Optional[str] = None) -> List[Turn]:
        self._authorize(room_id, user_id)
        return self.branches.siblings(room_id, turn_id)

    def tree(self, room_id: int, user_id: Optional[str] = None) -> List[TreeNode]:
        self._authorize(room_id, user_id)
        return self.branches.build_tree(room_id)

    # ---- 记忆 ----

    def list_memories(self, room_id: int, kind: Optional[str] = None,
                      user_id: Optional[str] = None) -> List[Memory]:
        self._authorize(room_id, user_id)
        return self.memory.list(room_id, kind=kind)

    def get_memory(self, room_id: int, memory_id: int, user_id: Optional[str] = None) -> Memory:
        self._authorize(room_id, user_id)
        return self.memory.get(memory_id, room_id=room_id)

    def create_memory(self, room_id: int, content: str, kind: str = "user_note", importance: int = 5,
                      user_id: Optional[str] = None) -> Memory:
        self._authorize(room_id, user_id)
        return self.memory.create(room_id, content, kind=kind, importance=importance)

    def update_memory(self, room_id: int, memory_id: int, content: Optional[str] = None,
                      importance: Optional[int] = None, kind: Optional[str] = None,
                      user_id: Optional[str] = None) -> Memory:
        self._authorize(room_id, user_id)
        return self.memory.update(memory_id, room_id=room_id, content=content, importance=importance, kind=kind)

    def delete_memory(self, room_id: int, memory_id: int, user_id: Optional[str] = None) -> None:
        self._authorize(room_id, user_id)
        self.memory.delete(memory_id, room_id=room_id)

    async def summarize_now(self, room_id: int, persona_name: str = "Assistant",
                            user_id: Optional[str] = None) -> Optional[Memory]:
        """立即摘要，不检查触发条件"""
        self._authorize(room_id, user_id)
        return await self.memory.summarize(room_id, persona_name)

    def cleanup_memories(self, room_id: int, keep_count: Optional[int] = None,
                         user_id: Optional[str] = None) -> int:
        self._authorize(room_id, user_id)
        return self.memory.cleanup(room_id, keep_count)

    # ---- 后台任务 ----

    async def _after_turn(self, room_id: int, persona_name: str, user_message: str, reply: str) -> None:
        if await asyncio.to_thread(self.memory.needs_summarization, room_id):
            memory = await self.memory.summarize(room_id, persona_name, only_if_needed=True)
            if memory is not None and self.config.cleanup_after_summary:
                await asyncio.to_thread(self.memory.cleanup, room_id)
        if self.config.enable_fact_extraction:
            await self.memory.extract_facts(room_id, user_message, reply)

    async def _guard(self, coro: Awaitable[None], label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"后台任务 {label} 失败: {e}", exc_info=True)

    def _schedule(self, coro: Awaitable[None], label: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """等待所有后台任务结束"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        self.db.dispose()
