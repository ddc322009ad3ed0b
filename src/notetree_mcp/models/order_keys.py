"""Rational sibling order keys.

An order key is a ``fractions.Fraction``. Between normalization passes a
group may hold bisected keys such as ``-1/2`` or ``3/2``; after a pass the
keys are exactly ``0 .. n-1``. Conversion to and from the stored text form
happens only in :func:`to_storage` / :func:`from_storage`.
"""
from fractions import Fraction
from typing import Iterable, Optional, Sequence, Union

OrderKey = Fraction

OrderKeyLike = Union[Fraction, int, float, str]

HALF = Fraction(1, 2)


def parse_order_key(value: OrderKeyLike) -> OrderKey:
    """Coerce a number or numeric string into an exact order key.

    Floats are converted through their decimal repr so that ``0.1`` becomes
    ``1/10`` rather than its binary approximation.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError("Order key cannot be a boolean")
    if isinstance(value, Fraction):
        return value
    if isinstance(value, int):
        return Fraction(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError(f"Order key must be finite, got {value!r}")
        return Fraction(repr(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Order key cannot be empty")
        try:
            return Fraction(text)
        except (ValueError, ZeroDivisionError) as e:
            raise ValueError(f"Invalid order key {value!r}") from e
    raise ValueError(f"Unsupported order key type: {type(value).__name__}")


def to_storage(key: OrderKey) -> str:
    """Exact text form used in the ``nodes.order_key`` column."""
    return str(key)


def from_storage(raw: Optional[str]) -> OrderKey:
    if raw is None or raw == "":
        return Fraction(0)
    return Fraction(raw)


def midpoint(lower: OrderKey, upper: OrderKey) -> OrderKey:
    """Key halfway between two neighbours: ``(a + b) / 2``."""
    return (lower + upper) / 2


def key_at_tail(keys: Iterable[OrderKey]) -> OrderKey:
    """Key for appending after every existing sibling: ``max + 1`` (``0`` if empty)."""
    keys = list(keys)
    if not keys:
        return Fraction(0)
    return max(keys) + 1


def key_at_head(keys: Iterable[OrderKey]) -> OrderKey:
    """Key for inserting before every existing sibling: ``min - 1`` (``0`` if empty)."""
    keys = list(keys)
    if not keys:
        return Fraction(0)
    return min(keys) - 1


def key_before(anchor: OrderKey, previous: Optional[OrderKey]) -> OrderKey:
    """Key directly before ``anchor``.

    Bisects against the previous sibling, or against ``anchor - 1`` when
    the anchor is first in its group.
    """
    lower = previous if previous is not None else anchor - 1
    return midpoint(lower, anchor)


def key_after(anchor: OrderKey, following: Optional[OrderKey]) -> OrderKey:
    """Key directly after ``anchor``, bisecting against the next sibling or
    ``anchor + 1`` when the anchor is last."""
    upper = following if following is not None else anchor + 1
    return midpoint(anchor, upper)


def is_normalized(keys: Sequence[OrderKey]) -> bool:
    """True when the keys, in display order, are exactly ``0 .. n-1``."""
    return all(key == index for index, key in enumerate(keys))
