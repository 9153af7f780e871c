"""对话分支：消息树算法与分支管理"""

from .models import Branch, TreeNode, DeletePlan
from .branch_manager import BranchManager
from . import tree

__all__ = [
    "Branch",
    "TreeNode",
    "DeletePlan",
    "BranchManager",
    "tree",
]
