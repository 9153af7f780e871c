from .simple import SimplePolicy
from .tiered import TieredPolicy

__all__ = ["SimplePolicy", "TieredPolicy"]
