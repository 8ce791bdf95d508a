"""
Compiled model definition consumed by System.

A SystemGenerator is the opaque boundary between the model compiler and the
inference core: a state layout plus the callables that evaluate initial
conditions, the update rule (discrete time) or derivatives (continuous time)
and per-stream observation log-densities.

All callables operate on batched state of shape [n, n_state], where n is
the number of particles in one parameter group. Stochastic callables draw
from an ``RngStreams`` with one stream per particle.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from ..errors import UnknownNameError
from .packer import _element_names


Shape = Union[int, Tuple[int, ...]]


def _as_shape(shape: Shape) -> Tuple[int, ...]:
    if isinstance(shape, (int, np.integer)):
        return () if shape == 1 else (int(shape),)
    return tuple(int(s) for s in shape)


@dataclass
class SystemGenerator:
    """
    Model definition.

    Discrete time:   x_{t+dt} = update(t, dt, x_t, pars, rng)
    Continuous time: dx/dt    = deriv(t, x, pars)

    Attributes:
        state: Ordered mapping of state variable name -> shape (1 or () for
               scalars, an int or tuple for arrays)
        parameters: Names of accepted parameters
        initial: (time, pars, rng) -> [n, n_state] (or broadcastable)
        update: (time, dt, state, pars, rng) -> [n, n_state] new state
        deriv: (time, state, pars) -> [n, n_state] derivatives
        compare: Mapping data stream name -> (time, state, observed, pars)
                 returning [n] log-densities
        zero_every: Mapping state variable name -> reset period
        default_parameters: Values used when a parameter is not supplied
        is_stochastic: Whether update/initial draw random numbers
    """
    state: Mapping[str, Shape]
    parameters: Sequence[str]
    initial: Callable
    update: Optional[Callable] = None
    deriv: Optional[Callable] = None
    compare: Mapping[str, Callable] = field(default_factory=dict)
    zero_every: Mapping[str, float] = field(default_factory=dict)
    default_parameters: Mapping[str, object] = field(default_factory=dict)
    is_stochastic: Optional[bool] = None

    # Derived layout (set in __post_init__)
    index: Dict[str, np.ndarray] = field(default=None, init=False, repr=False)
    shapes: Dict[str, Tuple[int, ...]] = field(default=None, init=False, repr=False)
    n_state: int = field(default=0, init=False)

    def __post_init__(self):
        if (self.update is None) == (self.deriv is None):
            raise ValueError("Exactly one of 'update' or 'deriv' must be given")
        self.parameters = tuple(self.parameters)
        self.shapes = {name: _as_shape(shape) for name, shape in self.state.items()}
        self.index = {}
        offset = 0
        for name, shape in self.shapes.items():
            size = int(np.prod(shape)) if shape else 1
            self.index[name] = np.arange(offset, offset + size)
            offset += size
        self.n_state = offset
        for name in self.zero_every:
            if name not in self.index:
                raise UnknownNameError(f"zero_every refers to unknown state '{name}'")
        for name, period in self.zero_every.items():
            if not period > 0:
                raise ValueError(f"zero_every period for '{name}' must be positive")
        unknown = set(self.default_parameters) - set(self.parameters)
        if unknown:
            raise UnknownNameError(
                f"Defaults given for unknown parameters: {sorted(unknown)}"
            )
        if self.is_stochastic is None:
            self.is_stochastic = self.update is not None

    @property
    def time_type(self) -> str:
        return "discrete" if self.update is not None else "continuous"

    @property
    def data_streams(self) -> Tuple[str, ...]:
        return tuple(self.compare)

    @property
    def has_compare(self) -> bool:
        return len(self.compare) > 0

    def element_names(self) -> Tuple[str, ...]:
        """One name per state row, e.g. ``("S", "I", "x[1]", "x[2]")``."""
        out = []
        for name, shape in self.shapes.items():
            if shape:
                out.extend(_element_names(name, shape))
            else:
                out.append(name)
        return tuple(out)

    def state_index(self, names: Optional[Sequence[str]] = None) -> np.ndarray:
        """Flat state indices for the given variable names (all if None)."""
        if names is None:
            return np.arange(self.n_state)
        try:
            return np.concatenate([self.index[n] for n in names])
        except KeyError as e:
            raise UnknownNameError(f"Unknown state variable {e.args[0]!r}") from None

    def unpack_state(self, state: np.ndarray, axis: int = 0) -> Dict[str, np.ndarray]:
        """
        Split an array along ``axis`` (the state axis) into named variables.

        Array variables get their declared shape in place of the state axis.
        """
        state = np.asarray(state)
        if state.shape[axis] != self.n_state:
            raise ValueError(
                f"Expected {self.n_state} states along axis {axis}, "
                f"given {state.shape[axis]}"
            )
        state = np.moveaxis(state, axis, 0)
        out = {}
        for name, idx in self.index.items():
            value = state[idx]
            shape = self.shapes[name]
            out[name] = value[0] if not shape else value.reshape(shape + value.shape[1:])
        return out

    def resolve_parameters(self, pars: Mapping[str, object]) -> Dict[str, object]:
        """Merge defaults and check that every parameter is known and present."""
        unknown = set(pars) - set(self.parameters)
        if unknown:
            raise UnknownNameError(f"Unknown parameters: {sorted(unknown)}")
        merged = dict(self.default_parameters)
        merged.update(pars)
        missing = [p for p in self.parameters if p not in merged]
        if missing:
            raise ValueError(f"Missing parameters: {missing}")
        return merged

    def __repr__(self) -> str:
        return (
            f"SystemGenerator({self.time_type}, n_state={self.n_state}, "
            f"data={list(self.data_streams)})"
        )
