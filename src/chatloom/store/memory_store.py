"""记忆存储"""

from typing import Any, Dict, List, Optional

from ..errors import NotFound
from .database import Database
from .models import Memory


class MemoryStore:
    """memories 表的增删改查，排序统一为 (importance desc, created_at desc)"""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _ranked(query):
        return query.order_by(Memory.importance.desc(), Memory.created_at.desc(), Memory.id.desc())

    def add(
        self,
        room_id: int,
        kind: str,
        content: str,
        importance: int = 5,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_by: str = "auto",
    ) -> Memory:
        with self.db.session_scope() as session:
            memory = Memory(
                room_id=room_id,
                kind=kind,
                content=content,
                importance=importance,
                range_start=range_start,
                range_end=range_end,
                meta=dict(metadata or {}),
                created_by=created_by,
            )
            session.add(memory)
            session.flush()
            return memory

    def get(self, memory_id: int) -> Memory:
        with self.db.session_scope() as session:
            memory = session.get(Memory, memory_id)
            if memory is None:
                raise NotFound(f"memory {memory_id} not found", {"memory_id": memory_id})
            return memory

    def update(self, memory_id: int, **fields) -> Memory:
        with self.db.session_scope() as session:
            memory = session.get(Memory, memory_id)
            if memory is None:
                raise NotFound(f"memory {memory_id} not found", {"memory_id": memory_id})
            for key, value in fields.items():
                if value is not None:
                    setattr(memory, key, value)
            session.flush()
            return memory

    def delete(self, memory_id: int) -> None:
        with self.db.session_scope() as session:
            memory = session.get(Memory, memory_id)
            if memory is None:
                raise NotFound(f"memory {memory_id} not found", {"memory_id": memory_id})
            session.delete(memory)

    def delete_many(self, memory_ids: List[int]) -> int:
        if not memory_ids:
            return 0
        with self.db.session_scope() as session:
            return (session.query(Memory)
                    .filter(Memory.id.in_(memory_ids))
                    .delete(synchronize_session=False))

    def delete_room(self, room_id: int) -> int:
        with self.db.session_scope() as session:
            return (session.query(Memory)
                    .filter(Memory.room_id == room_id)
                    .delete(synchronize_session=False))

    def list(
        self,
        room_id: int,
        kind: Optional[str] = None,
        min_importance: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        with self.db.session_scope() as session:
            query = session.query(Memory).filter(Memory.room_id == room_id)
            if kind is not None:
                query = query.filter(Memory.kind == kind)
            if min_importance is not None:
                query = query.filter(Memory.importance >= min_importance)
            query = self._ranked(query)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def latest_summary(self, room_id: int) -> Optional[Memory]:
        """覆盖范围最靠后的自动摘要"""
        with self.db.session_scope() as session:
            return (session.query(Memory)
                    .filter(Memory.room_id == room_id,
                            Memory.kind == "summary",
                            Memory.range_end.isnot(None))
                    .order_by(Memory.range_end.desc(), Memory.created_at.desc())
                    .first())
