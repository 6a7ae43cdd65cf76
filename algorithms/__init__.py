from .position_allocator import PositionAllocator
from .flat_position import FlatPosition

__all__ = ["PositionAllocator", "FlatPosition"]
