"""chatloom - 分支对话状态引擎"""

__version__ = "0.1.0"
