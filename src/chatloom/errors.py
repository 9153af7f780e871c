"""chatloom 错误分类

同步请求路径（分支操作、上下文组装）上的错误直接抛给调用方；
后台任务（摘要、清理、事实抽取）只记录日志，不向外传播。
"""

from typing import Any, Dict, Optional


class ChatloomError(Exception):
    """所有领域错误的基类"""

    code = "internal"
    status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        d = {"error": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


class NotFound(ChatloomError):
    """房间、消息、分支或记忆不存在"""
    code = "not_found"
    status = 404


class Forbidden(ChatloomError):
    """房间归属校验失败"""
    code = "forbidden"
    status = 403


class InvalidArgument(ChatloomError):
    """参数非法，例如删除 main 分支、分支名格式错误"""
    code = "invalid_argument"
    status = 400


class Conflict(ChatloomError):
    """同一房间上的并发分支修改"""
    code = "conflict"
    status = 409


class UpstreamFailure(ChatloomError):
    """文本生成调用失败"""
    code = "upstream_failure"
    status = 502


class StoreFailure(ChatloomError):
    """持久化失败"""
    code = "store_failure"
    status = 500
