"""房间级互斥锁"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from ..errors import Conflict


class RoomLocks:
    """每个房间一把可重入锁

    只保证同一进程内的串行化；跨进程依赖 room_states.branch_version 的比较更新。
    acquire 是阻塞调用，异步代码应在 asyncio.to_thread 中使用。
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, room_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[room_id] = lock
            return lock

    @contextmanager
    def hold(self, room_id: int) -> Iterator[None]:
        lock = self._lock_for(room_id)
        if not lock.acquire(timeout=self.timeout):
            raise Conflict(
                f"room {room_id} is busy with another branch operation",
                {"room_id": room_id},
            )
        try:
            yield
        finally:
            lock.release()
