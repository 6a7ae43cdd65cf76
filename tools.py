import datetime
from typing import Iterable, Optional


class GroupLabels:
    """Spreadsheet-style default names for groups: A..Z, AA, AB, ..."""

    @staticmethod
    def label(index: int) -> str:
        """Return the label for the 1-based ``index``."""
        if index <= 0:
            raise ValueError("index must be positive")
        chars: list[str] = []
        while index > 0:
            index, rem = divmod(index - 1, 26)
            chars.append(chr(ord("A") + rem))
        return "".join(reversed(chars))

    @classmethod
    def next_unused(cls, existing: Iterable[str]) -> str:
        used = set(existing)
        index = 1
        while cls.label(index) in used:
            index += 1
        return cls.label(index)


class MathTools:
    """Aggregates computed from logged sets."""

    @staticmethod
    def volume(sets: Iterable[tuple[int, float]]) -> float:
        """Compute training volume as the sum of reps times weight."""
        vol = 0.0
        for reps, weight in sets:
            vol += reps * weight
        return vol

    @staticmethod
    def duration_seconds(start: str, end: Optional[str]) -> Optional[int]:
        """Return whole seconds between two ISO timestamps, or ``None``."""
        if not start or not end:
            return None
        t0 = datetime.datetime.fromisoformat(start)
        t1 = datetime.datetime.fromisoformat(end)
        secs = int((t1 - t0).total_seconds())
        return secs if secs >= 0 else 0


class CycleCalendar:
    """Week arithmetic for multi-week cycles."""

    @staticmethod
    def target_end(started_at: str, duration_weeks: int) -> str:
        start = datetime.datetime.fromisoformat(started_at)
        end = start + datetime.timedelta(weeks=duration_weeks)
        return end.isoformat(timespec="seconds")

    @staticmethod
    def current_week(
        started_at: str, duration_weeks: int, now: datetime.datetime
    ) -> tuple[int, int]:
        """Return ``(week, day)``: the 1-based week capped at the cycle length
        and the number of days already spent in that week."""
        start = datetime.datetime.fromisoformat(started_at)
        days = max((now - start).days, 0)
        return min(days // 7 + 1, duration_weeks), days % 7
