from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class ValueWithError:
    """A scalar with its one-standard-deviation uncertainty.

    Propagation rules
    -----------------
    - ``a + b`` and ``a - b``: errors add in quadrature (independent quantities).
    - ``a * k``, ``k * a`` and ``a / k`` for a constant ``k``: value and error scale
      linearly (the error keeps its sign convention: ``abs`` is applied).
    """

    value: float = 0.0
    error: float = 0.0

    @classmethod
    def poisson(cls, count: float, *, floor: bool = True) -> ValueWithError:
        """Counting uncertainty ``sqrt(N)``; floored at 1 when ``floor`` is set."""
        n = float(count)
        err = math.sqrt(max(n, 0.0))
        if floor:
            err = max(1.0, err)
        return cls(n, err)

    def __add__(self, other: ValueWithError) -> ValueWithError:
        if not isinstance(other, ValueWithError):
            return NotImplemented
        return ValueWithError(self.value + other.value, math.hypot(self.error, other.error))

    def __sub__(self, other: ValueWithError) -> ValueWithError:
        if not isinstance(other, ValueWithError):
            return NotImplemented
        return ValueWithError(self.value - other.value, math.hypot(self.error, other.error))

    def __mul__(self, factor: float) -> ValueWithError:
        if isinstance(factor, ValueWithError):
            return NotImplemented
        f = float(factor)
        return ValueWithError(self.value * f, abs(self.error * f))

    __rmul__ = __mul__

    def __truediv__(self, factor: float) -> ValueWithError:
        if isinstance(factor, ValueWithError):
            return NotImplemented
        f = float(factor)
        return ValueWithError(self.value / f, abs(self.error / f))

    def __str__(self) -> str:
        return f"{self.value:.6g} ± {self.error:.6g}"

    def to_dict(self) -> dict:
        return {"value": self.value, "error": self.error}
