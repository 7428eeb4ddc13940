"""Sequence numbering and gap analysis for produce/consume checks."""

from typing import Iterable, List, Optional


def format_sequence(prefix: str, number: int, padding: int = 2) -> str:
    """Render an accumulation label, e.g. ``format_sequence("TEST", 7) == "TEST07"``."""
    return f"{prefix}{str(number).zfill(padding)}"


def group_ranges(missing: List[int]) -> List[str]:
    """Collapse sorted integers into inclusive ranges: ``[3, 6, 7, 8] -> ["3", "6-8"]``."""
    ranges = []
    range_start = None
    for i, value in enumerate(missing):
        if range_start is None:
            range_start = value
        is_last = i == len(missing) - 1
        if is_last or missing[i + 1] != value + 1:
            if range_start == value:
                ranges.append(str(value))
            else:
                ranges.append(f"{range_start}-{value}")
            range_start = None
    return ranges


def find_missing_sequences(
    observed: Iterable[int],
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> dict:
    """Find sequence numbers in ``[start, end]`` that were never observed.

    Missing bounds default to the observed minimum/maximum. With nothing
    observed and no bounds the result is empty rather than an error.
    """
    seen = set(observed)

    if start is None:
        start = min(seen) if seen else None
    if end is None:
        end = max(seen) if seen else None

    if start is None or end is None or end < start:
        return {
            "missing": [],
            "ranges": [],
            "totalMissing": 0,
            "totalExpected": 0,
            "totalReceived": len(seen),
        }

    missing = [n for n in range(start, end + 1) if n not in seen]
    return {
        "missing": missing,
        "ranges": group_ranges(missing),
        "totalMissing": len(missing),
        "totalExpected": end - start + 1,
        "totalReceived": len(seen),
    }
