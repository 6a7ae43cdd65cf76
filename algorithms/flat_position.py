from decimal import Decimal
from typing import Tuple

from .position_allocator import PositionAllocator


class FlatPosition:
    """Derive the single sortable key of an item from its two order keys.

    ``combine`` concatenates the fixed-width encodings of the group key and the
    item's key within the group. Both parts have the same width, so comparing
    two flat keys as strings compares group keys first and local keys second,
    which makes the result monotonic in both inputs.
    """

    SEPARATOR: str = ":"

    @classmethod
    def combine(cls, group_key: Decimal, local_key: Decimal) -> str:
        return (
            PositionAllocator.encode_key(group_key)
            + cls.SEPARATOR
            + PositionAllocator.encode_key(local_key)
        )

    @classmethod
    def split(cls, flat: str) -> Tuple[Decimal, Decimal]:
        """Return ``(group_key, local_key)`` encoded in ``flat``."""
        group_part, sep, local_part = flat.partition(cls.SEPARATOR)
        if not sep:
            raise ValueError(f"malformed flat position: {flat!r}")
        return (
            PositionAllocator.decode_key(group_part),
            PositionAllocator.decode_key(local_part),
        )
