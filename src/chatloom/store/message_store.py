"""消息存储：带父指针的消息树持久化"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import Conflict, InvalidArgument, NotFound
from ..utils.logger import logger
from .database import Database
from .locks import RoomLocks
from .models import MAIN_BRANCH, ROLES, RoomState, Turn


class MessageStore:
    """消息持久化

    - 序号来自 room_states.next_sequence，在插入事务内自增，不再全表扫描求 max
    - 分支相关的读-改-写走 room_transaction()：房间锁 + 单事务 + 版本号比较更新
    """

    def __init__(self, db: Database, locks: Optional[RoomLocks] = None):
        self.db = db
        self.locks = locks or RoomLocks()

    # ---- 房间状态 ----

    def _ensure_room_state(self, session: Session, room_id: int) -> RoomState:
        state = (session.query(RoomState)
                 .filter(RoomState.room_id == room_id)
                 .with_for_update()
                 .one_or_none())
        if state is None:
            # 兼容已有消息但还没有状态行的房间
            max_seq = (session.query(func.max(Turn.sequence_number))
                       .filter(Turn.room_id == room_id)
                       .scalar())
            state = RoomState(room_id=room_id, next_sequence=(max_seq or 0) + 1, branch_version=0)
            session.add(state)
            session.flush()
        return state

    def _allocate_sequence(self, session: Session, room_id: int) -> int:
        state = self._ensure_room_state(session, room_id)
        seq = state.next_sequence
        state.next_sequence = seq + 1
        session.flush()
        return seq

    def get_room_state(self, room_id: int) -> Optional[RoomState]:
        with self.db.session_scope() as session:
            return session.get(RoomState, room_id)

    def set_summary_watermark(self, room_id: int, turn_id: int) -> None:
        """摘要水位只升不降"""
        with self.room_transaction(room_id) as session:
            state = self._ensure_room_state(session, room_id)
            if state.summary_watermark is None or turn_id > state.summary_watermark:
                state.summary_watermark = turn_id

    def clear_summary_watermark(self, room_id: int) -> None:
        with self.room_transaction(room_id) as session:
            self._ensure_room_state(session, room_id).summary_watermark = None

    @contextmanager
    def room_transaction(self, room_id: int, bump_version: bool = False) -> Iterator[Session]:
        """房间级事务

        bump_version=True 时在提交前做 branch_version 的比较更新，
        其他进程先提交了分支修改则抛出 Conflict 并回滚。
        """
        with self.locks.hold(room_id):
            with self.db.session_scope() as session:
                state = self._ensure_room_state(session, room_id)
                version = state.branch_version
                yield session
                if bump_version:
                    updated = (session.query(RoomState)
                               .filter(RoomState.room_id == room_id,
                                       RoomState.branch_version == version)
                               .update({RoomState.branch_version: version + 1},
                                       synchronize_session=False))
                    if updated != 1:
                        raise Conflict(
                            f"concurrent branch modification detected in room {room_id}",
                            {"room_id": room_id, "expected_version": version},
                        )

    # ---- 写入 ----

    def _insert(
        self,
        session: Session,
        room_id: int,
        role: str,
        content: str,
        parent: Optional[Turn],
        branch_tag: Optional[str],
        is_active: bool,
        tokens_used: int,
        cost: int,
    ) -> Turn:
        if role not in ROLES:
            raise InvalidArgument(f"unknown role: {role}", {"role": role})
        turn = Turn(
            room_id=room_id,
            role=role,
            content=content,
            sequence_number=self._allocate_sequence(session, room_id),
            parent_id=parent.id if parent is not None else None,
            branch_tag=branch_tag or MAIN_BRANCH,
            is_active=is_active,
            is_deleted=False,
            tokens_used=tokens_used or 0,
            cost=cost or 0,
        )
        session.add(turn)
        session.flush()
        return turn

    def _live_turn(self, session: Session, room_id: int, turn_id: int) -> Turn:
        turn = (session.query(Turn)
                .filter(Turn.id == turn_id, Turn.room_id == room_id, Turn.is_deleted == False)  # noqa: E712
                .one_or_none())
        if turn is None:
            raise NotFound(f"turn {turn_id} not found in room {room_id}",
                           {"room_id": room_id, "turn_id": turn_id})
        return turn

    def _active_leaf(self, session: Session, room_id: int) -> Optional[Turn]:
        return (session.query(Turn)
                .filter(Turn.room_id == room_id,
                        Turn.is_active == True,  # noqa: E712
                        Turn.is_deleted == False)  # noqa: E712
                .order_by(Turn.sequence_number.desc())
                .first())

    def append_to_active_path(
        self,
        room_id: int,
        role: str,
        content: str,
        tokens_used: int = 0,
        cost: int = 0,
    ) -> Turn:
        """在当前活动叶子下追加一条消息

        没有活动路径的房间（新房间或删除了活动分支）会得到一个新的根消息，标签为 main。
        """
        with self.room_transaction(room_id) as session:
            leaf = self._active_leaf(session, room_id)
            tag = leaf.tag if leaf is not None else MAIN_BRANCH
            turn = self._insert(session, room_id, role, content, leaf, tag, True, tokens_used, cost)
            logger.debug(f"追加消息: room={room_id} turn={turn.id} seq={turn.sequence_number} parent={turn.parent_id}")
            return turn

    def append_child(
        self,
        room_id: int,
        parent_id: int,
        role: str,
        content: str,
        tokens_used: int = 0,
        cost: int = 0,
        replaces: Optional[int] = None,
    ) -> Turn:
        """在指定父消息下追加子消息，继承父消息的标签

        只有父消息仍是活动叶子时新消息才激活，生成期间用户切走分支不会破坏唯一活动路径。
        replaces 给定时，被替换的消息若没有未删除的子消息，在同一事务内墓碑化。
        """
        with self.room_transaction(room_id) as session:
            parent = self._live_turn(session, room_id, parent_id)
            leaf = self._active_leaf(session, room_id)
            activate = bool(parent.is_active) and leaf is not None and leaf.id == parent.id
            turn = self._insert(session, room_id, role, content, parent, parent.tag, activate, tokens_used, cost)
            if not activate:
                logger.warning(f"父消息 {parent_id} 已不是活动叶子，新消息 {turn.id} 以非活动状态保存")
            if replaces is not None:
                self._retire(session, room_id, replaces)
            return turn

    def _retire(self, session: Session, room_id: int, turn_id: int) -> None:
        old = (session.query(Turn)
               .filter(Turn.id == turn_id, Turn.room_id == room_id, Turn.is_deleted == False)  # noqa: E712
               .one_or_none())
        if old is None:
            return
        children = (session.query(func.count(Turn.id))
                    .filter(Turn.room_id == room_id,
                            Turn.parent_id == turn_id,
                            Turn.is_deleted == False)  # noqa: E712
                    .scalar())
        if not children:
            old.is_deleted = True
            old.is_active = False
            session.flush()
            logger.debug(f"消息 {turn_id} 已被替换并删除")

    def soft_delete_turn(self, room_id: int, turn_id: int) -> Turn:
        """软删除一条叶子消息；有未删除子消息的不允许删除，避免产生孤儿"""
        with self.room_transaction(room_id, bump_version=True) as session:
            turn = self._live_turn(session, room_id, turn_id)
            children = (session.query(func.count(Turn.id))
                        .filter(Turn.room_id == room_id,
                                Turn.parent_id == turn_id,
                                Turn.is_deleted == False)  # noqa: E712
                        .scalar())
            if children:
                raise InvalidArgument(
                    f"turn {turn_id} has {children} live replies and cannot be deleted",
                    {"turn_id": turn_id},
                )
            turn.is_deleted = True
            turn.is_active = False
            return turn

    def soft_delete_room(self, room_id: int) -> int:
        """重置对话：软删除房间内所有消息"""
        with self.room_transaction(room_id, bump_version=True) as session:
            count = (session.query(Turn)
                     .filter(Turn.room_id == room_id, Turn.is_deleted == False)  # noqa: E712
                     .update({Turn.is_deleted: True, Turn.is_active: False},
                             synchronize_session=False))
            logger.info(f"房间 {room_id} 软删除 {count} 条消息")
            return count

    # ---- 读取 ----

    def get_turn(self, turn_id: int, room_id: Optional[int] = None) -> Turn:
        """读取未删除的消息，不存在或已删除抛 NotFound"""
        with self.db.session_scope() as session:
            query = session.query(Turn).filter(Turn.id == turn_id, Turn.is_deleted == False)  # noqa: E712
            if room_id is not None:
                query = query.filter(Turn.room_id == room_id)
            turn = query.one_or_none()
            if turn is None:
                raise NotFound(f"turn {turn_id} not found", {"turn_id": turn_id, "room_id": room_id})
            return turn

    def list_turns(self, room_id: int, include_deleted: bool = False,
                   session: Optional[Session] = None) -> List[Turn]:
        """按 sequence_number 升序列出房间消息"""
        def _query(s: Session) -> List[Turn]:
            query = s.query(Turn).filter(Turn.room_id == room_id)
            if not include_deleted:
                query = query.filter(Turn.is_deleted == False)  # noqa: E712
            return query.order_by(Turn.sequence_number.asc()).all()

        if session is not None:
            return _query(session)
        with self.db.session_scope() as s:
            return _query(s)

    def active_turns(self, room_id: int, session: Optional[Session] = None) -> List[Turn]:
        def _query(s: Session) -> List[Turn]:
            return (s.query(Turn)
                    .filter(Turn.room_id == room_id,
                            Turn.is_active == True,  # noqa: E712
                            Turn.is_deleted == False)  # noqa: E712
                    .order_by(Turn.sequence_number.asc())
                    .all())

        if session is not None:
            return _query(session)
        with self.db.session_scope() as s:
            return _query(s)

    def active_leaf(self, room_id: int) -> Optional[Turn]:
        with self.db.session_scope() as session:
            return self._active_leaf(session, room_id)

    def count_turns(self, room_id: int, after_id: Optional[int] = None) -> int:
        """未删除消息数，after_id 给定时只数 id 更大的"""
        with self.db.session_scope() as session:
            query = session.query(func.count(Turn.id)).filter(
                Turn.room_id == room_id, Turn.is_deleted == False)  # noqa: E712
            if after_id is not None:
                query = query.filter(Turn.id > after_id)
            return query.scalar() or 0

    def turns_from(self, room_id: int, start_id: int, limit: int) -> List[Turn]:
        """id >= start_id 的未删除消息，按序号升序，最多 limit 条"""
        with self.db.session_scope() as session:
            return (session.query(Turn)
                    .filter(Turn.room_id == room_id,
                            Turn.id >= start_id,
                            Turn.is_deleted == False)  # noqa: E712
                    .order_by(Turn.sequence_number.asc())
                    .limit(limit)
                    .all())
