"""存储层

- Database: engine、session 工厂、事务作用域
- MessageStore: 消息树持久化，房间级序号与分支版本号
- MemoryStore: 房间记忆
"""

from .models import Base, Turn, Memory, RoomState, MAIN_BRANCH, MEMORY_KINDS, MEMORY_CREATORS
from .database import Database, init_db
from .locks import RoomLocks
from .message_store import MessageStore
from .memory_store import MemoryStore

__all__ = [
    "Base",
    "Turn",
    "Memory",
    "RoomState",
    "MAIN_BRANCH",
    "MEMORY_KINDS",
    "MEMORY_CREATORS",
    "Database",
    "init_db",
    "RoomLocks",
    "MessageStore",
    "MemoryStore",
]
