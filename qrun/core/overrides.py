"""
Per-query option resolution.
"""

from typing import Sequence, TypeVar

T = TypeVar("T")


def resolve(index: int, values: Sequence[T], default: T) -> T:
    """
    Effective value of a per-query option for query ``index``.

    An empty sequence yields ``default``. Otherwise the value at ``index`` is
    used, and once the sequence is exhausted its last element applies to every
    later query.
    """
    if not values:
        return default
    return values[min(index, len(values) - 1)]
