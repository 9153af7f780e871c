"""房间归属校验

用户认证不在本项目范围内，这里只定义引擎调用的接口和两个简单实现。
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional


class OwnershipChecker(ABC):
    """给定房间和调用者，返回是否允许访问"""

    @abstractmethod
    def can_access(self, room_id: int, user_id: Optional[str]) -> bool:
        pass


class AllowAllOwnership(OwnershipChecker):
    """不做校验，单用户 CLI 使用"""

    def can_access(self, room_id: int, user_id: Optional[str]) -> bool:
        return True


class StaticOwnership(OwnershipChecker):
    """房间 -> 所有者的静态映射，未登记的房间一律拒绝"""

    def __init__(self, owners: Optional[Dict[int, str]] = None):
        self.owners: Dict[int, str] = dict(owners or {})

    def assign(self, room_id: int, user_id: str) -> None:
        self.owners[room_id] = user_id

    def can_access(self, room_id: int, user_id: Optional[str]) -> bool:
        return user_id is not None and self.owners.get(room_id) == user_id
