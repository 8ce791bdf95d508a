"""
Interpolation of time-varying model inputs.

Used inside model update/deriv/compare functions to read exogenous series
at the current time.
"""

import numpy as np
from typing import Literal
from scipy.interpolate import CubicSpline, interp1d


class Interpolator:
    """
    Interpolate a series ``values`` defined at ``times``.

    Modes:
        constant: right-continuous step function; the value at t is the
                  value at the last breakpoint <= t
        linear:   piecewise linear
        spline:   natural cubic spline

    Outside [times[0], times[-1]] the series is held at its end values
    except before times[0] in constant mode, which is an error.

    Args:
        times: [K] Strictly increasing breakpoints
        values: [K] or [K, ...] Values at each breakpoint
        mode: Interpolation mode
    """

    def __init__(
        self,
        times,
        values,
        mode: Literal["constant", "linear", "spline"] = "constant",
    ):
        times = np.asarray(times, dtype=np.float64)
        values = np.asarray(values, dtype=np.float64)
        if times.ndim != 1 or len(times) < 1:
            raise ValueError("times must be a non-empty vector")
        if np.any(np.diff(times) <= 0):
            raise ValueError("times must be strictly increasing")
        if values.shape[0] != len(times):
            raise ValueError(
                f"Expected {len(times)} values along the first axis, "
                f"given {values.shape[0]}"
            )
        if mode not in ("constant", "linear", "spline"):
            raise ValueError(f"Unknown interpolation mode: {mode}")
        if mode == "spline" and len(times) < 3:
            raise ValueError("spline interpolation needs at least 3 points")
        self.times = times
        self.values = values
        self.mode = mode
        if mode == "linear" and len(times) > 1:
            self._fn = interp1d(
                times, values, axis=0, bounds_error=False,
                fill_value=(values[0], values[-1]),
            )
        elif mode == "spline":
            self._spline = CubicSpline(times, values, axis=0, bc_type="natural")

    @property
    def critical_times(self) -> np.ndarray:
        """Breakpoints where the input is non-smooth."""
        return self.times.copy()

    def __call__(self, t: float) -> np.ndarray:
        t = float(t)
        if self.mode == "constant":
            if t < self.times[0]:
                raise ValueError(
                    f"Time {t} is before the first interpolation time {self.times[0]}"
                )
            i = np.searchsorted(self.times, t, side="right") - 1
            return self.values[i]
        if len(self.times) == 1:
            return self.values[0]
        if self.mode == "linear":
            return self._fn(t)
        t = min(max(t, self.times[0]), self.times[-1])
        return self._spline(t)
