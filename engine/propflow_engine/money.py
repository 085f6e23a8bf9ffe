"""Integer money in the smallest currency unit.

Every monetary amount in Propflow is a count of paise (1/100 of a rupee).
:class:`Paise` is an ``int`` subclass, so it carries Python's arbitrary
precision, but it refuses to be built from or combined with binary floating
point values.  At every external boundary (API payloads, persisted columns,
audit details) the amount travels as a decimal-free integer string such as
``"150000"``.

Only :meth:`Paise.format_rupees` divides by 100, and only for display.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from decimal import Decimal
from typing import Any

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

_INTEGER_STRING_RE = re.compile(r"^-?\d+$")


def _reject_float(value: Any) -> None:
    if isinstance(value, float):
        raise TypeError("money arithmetic with floats is not allowed")


class Paise(int):
    """An exact amount in paise.

    Accepts ``int``, ``Paise``, an integral ``Decimal`` or a digit string.
    Floats are always rejected, even when integral, because their presence
    means precision may already have been lost upstream.
    """

    def __new__(cls, value: Any = 0) -> Paise:
        return super().__new__(cls, cls._coerce(value))

    @staticmethod
    def _coerce(value: Any) -> int:
        if isinstance(value, bool):
            raise TypeError("bool is not a money amount")
        if isinstance(value, int):
            return int(value)
        if isinstance(value, float):
            raise TypeError("money amounts must not be floats; pass an integer count of paise")
        if isinstance(value, Decimal):
            if value != value.to_integral_value():
                raise ValueError(f"money amount must be a whole number of paise, got {value}")
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            if not _INTEGER_STRING_RE.match(text):
                raise ValueError(f"money amount must be an integer string of paise, got {value!r}")
            return int(text)
        raise TypeError(f"cannot build a money amount from {type(value).__name__}")

    # -- arithmetic stays in Paise -------------------------------------------

    def __add__(self, other: Any) -> Paise:
        _reject_float(other)
        if not isinstance(other, int) or isinstance(other, bool):
            return NotImplemented
        return Paise(int(self) + int(other))

    __radd__ = __add__

    def __sub__(self, other: Any) -> Paise:
        _reject_float(other)
        if not isinstance(other, int) or isinstance(other, bool):
            return NotImplemented
        return Paise(int(self) - int(other))

    def __rsub__(self, other: Any) -> Paise:
        _reject_float(other)
        if not isinstance(other, int) or isinstance(other, bool):
            return NotImplemented
        return Paise(int(other) - int(self))

    def __mul__(self, other: Any) -> Paise:
        # Scaling by a whole count is fine; scaling by a rate is a pricing
        # concern and has to go through Decimal with explicit rounding.
        if not isinstance(other, int) or isinstance(other, bool):
            raise TypeError("money can only be multiplied by an integer count")
        return Paise(int(self) * int(other))

    __rmul__ = __mul__

    def __truediv__(self, other: Any) -> Any:
        raise TypeError("true division would produce a float; use divmod() on paise")

    def __rtruediv__(self, other: Any) -> Any:
        raise TypeError("true division would produce a float; use divmod() on paise")

    def __neg__(self) -> Paise:
        return Paise(-int(self))

    def __abs__(self) -> Paise:
        return Paise(abs(int(self)))

    # -- rendering ------------------------------------------------------------

    def __repr__(self) -> str:
        return f"Paise({int(self)})"

    def __str__(self) -> str:
        return int.__repr__(self)

    def to_wire(self) -> str:
        """Return the canonical integer-string representation."""
        return int.__repr__(self)

    def format_rupees(self) -> str:
        """Render for humans, e.g. ``Paise(150000)`` -> ``"1500.00"``."""
        rupees, paise = divmod(abs(int(self)), 100)
        sign = "-" if self < 0 else ""
        return f"{sign}{rupees}.{paise:02d}"

    # -- pydantic integration -------------------------------------------------

    @classmethod
    def __get_pydantic_core_schema__(cls, source: Any, handler: GetCoreSchemaHandler) -> core_schema.CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.union_schema(
                [
                    core_schema.int_schema(strict=True),
                    core_schema.str_schema(strip_whitespace=True),
                ]
            ),
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda v: int.__repr__(v),
                when_used="json",
            ),
        )


ZERO = Paise(0)


def sum_paise(amounts: Iterable[Any]) -> Paise:
    """Exact sum of *amounts*, each coerced through :class:`Paise`."""
    total = ZERO
    for amount in amounts:
        total = total + Paise(amount)
    return total
