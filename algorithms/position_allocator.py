from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Optional, Sequence, Tuple

from errors import PrecisionExhausted


class PositionAllocator:
    """Allocate order keys for sibling lists using midpoint insertion.

    Keys are positive :class:`~decimal.Decimal` values with at most
    ``MAX_SCALE`` fractional digits, always below ``MAX_KEY``. Inserting between
    two neighbours takes the quantized midpoint, so a move never has to touch
    unrelated siblings. When two neighbours are too close for another midpoint
    at the configured scale, :class:`PrecisionExhausted` is raised and the
    caller compacts the list with :meth:`compact`.
    """

    INTEGER_DIGITS: int = 10
    MAX_SCALE: int = 10
    MAX_KEY: Decimal = Decimal(10) ** INTEGER_DIGITS

    def __init__(self, scale: int = MAX_SCALE, step: Decimal | int = 1) -> None:
        if scale < 0 or scale > self.MAX_SCALE:
            raise ValueError(f"scale must be between 0 and {self.MAX_SCALE}")
        step = Decimal(step)
        if step <= 0:
            raise ValueError("step must be positive")
        self.scale = scale
        self.step = step
        self.quantum = Decimal(1).scaleb(-scale)

    def allocate(
        self, before: Optional[Decimal], after: Optional[Decimal]
    ) -> Decimal:
        """Return a key strictly between ``before`` and ``after``.

        A missing ``before`` places the key ahead of ``after``; a missing
        ``after`` places it behind ``before``; with both missing the initial key
        is returned.
        """
        if before is None and after is None:
            return self.step
        if after is None:
            key = before + self.step
            if key >= self.MAX_KEY:
                raise PrecisionExhausted("key space exhausted at the end of the list")
            return key
        lower = Decimal(0) if before is None else before
        if lower >= after:
            raise ValueError("before must sort strictly ahead of after")
        key = ((lower + after) / 2).quantize(self.quantum, rounding=ROUND_HALF_EVEN)
        if not lower < key < after:
            raise PrecisionExhausted(f"no room between {lower} and {after}")
        return key

    def compact(self, count: int) -> List[Decimal]:
        """Return ``count`` evenly spaced keys preserving relative order."""
        if count < 0:
            raise ValueError("count must be non-negative")
        keys = [self.step * i for i in range(1, count + 1)]
        if keys and keys[-1] >= self.MAX_KEY:
            raise ValueError("too many siblings for the key space")
        return keys

    def place(
        self, keys: Sequence[Decimal], index: int
    ) -> Tuple[Decimal, Optional[List[Decimal]]]:
        """Allocate a key for a node inserted at ``index`` of ``keys``.

        ``keys`` is the ordered key list of the siblings, without the node
        being placed. Returns ``(key, None)`` when a midpoint fits, otherwise
        ``(key, compacted)`` where ``compacted`` holds new keys for the whole
        list with the node included at ``index``.
        """
        if index < 0 or index > len(keys):
            raise ValueError("index out of range")
        before = keys[index - 1] if index > 0 else None
        after = keys[index] if index < len(keys) else None
        try:
            return self.allocate(before, after), None
        except PrecisionExhausted:
            compacted = self.compact(len(keys) + 1)
            return compacted[index], compacted

    @classmethod
    def encode_key(cls, key: Decimal) -> str:
        """Encode ``key`` as fixed-width text whose string order is numeric order."""
        if key <= 0 or key >= cls.MAX_KEY:
            raise ValueError(f"key out of range: {key}")
        width = cls.INTEGER_DIGITS + 1 + cls.MAX_SCALE
        return format(key, f"0{width}.{cls.MAX_SCALE}f")

    @staticmethod
    def decode_key(text: str) -> Decimal:
        return Decimal(text)

    @staticmethod
    def key_to_str(key: Decimal) -> str:
        """Return the short display form of ``key`` (``Decimal('1.50')`` -> ``'1.5'``)."""
        text = format(key, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text
