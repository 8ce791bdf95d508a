"""
Parameter packer: unstructured vector <-> named parameters.

Layout: scalars (in declaration order) followed by arrays (in declaration
order, each flattened in C order). ``fixed`` values are merged into every
unpacked result but take no space in the vector.
"""

import itertools
import numpy as np
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from ..errors import ShapeMismatchError, UnknownNameError


def _element_names(name: str, shape: Tuple[int, ...]):
    for idx in itertools.product(*[range(1, s + 1) for s in shape]):
        yield f"{name}[{','.join(str(i) for i in idx)}]"


class Packer:
    """
    Bidirectional mapping between a parameter vector and named values.

    Args:
        scalar: Names of scalar parameters
        array: Mapping of array parameter name -> shape
        fixed: Values added to every unpack, not estimated
        process: Optional function of the unpacked values returning a
                 mapping of additional derived values

    Example:
        >>> p = Packer(["beta", "gamma"], fixed={"N": 1000})
        >>> p.unpack([0.2, 0.1])
        {'beta': 0.2, 'gamma': 0.1, 'N': 1000}
    """

    def __init__(
        self,
        scalar: Sequence[str] = (),
        array: Optional[Mapping[str, Union[int, Sequence[int]]]] = None,
        fixed: Optional[Mapping[str, object]] = None,
        process: Optional[Callable[[Dict], Mapping]] = None,
    ):
        self.scalar = tuple(scalar)
        self.array = {
            k: (int(v),) if np.isscalar(v) else tuple(int(s) for s in v)
            for k, v in (array or {}).items()
        }
        self.fixed = dict(fixed or {})
        self.process = process

        declared = list(self.scalar) + list(self.array)
        if len(set(declared)) != len(declared):
            raise ValueError(f"Duplicate parameter names in {declared}")
        clash = set(declared) & set(self.fixed)
        if clash:
            raise ValueError(f"Fixed names clash with estimated parameters: {sorted(clash)}")

        self._index: Dict[str, np.ndarray] = {}
        offset = 0
        for name in self.scalar:
            self._index[name] = np.array([offset])
            offset += 1
        for name, shape in self.array.items():
            size = int(np.prod(shape))
            self._index[name] = np.arange(offset, offset + size)
            offset += size
        self._length = offset
        self._processed_names = set()

    def __len__(self) -> int:
        return self._length

    @property
    def names(self) -> Tuple[str, ...]:
        """Element names of the packed vector, e.g. ('beta', 'b[1]', 'b[2]')."""
        out = list(self.scalar)
        for name, shape in self.array.items():
            out.extend(_element_names(name, shape))
        return tuple(out)

    def index(self) -> Dict[str, np.ndarray]:
        """Positions of each named parameter in the packed vector."""
        return {k: v.copy() for k, v in self._index.items()}

    def pack(self, named: Mapping[str, object]) -> np.ndarray:
        """
        Build the parameter vector from named values.

        Fixed and processed names are accepted and ignored, so that
        ``pack(unpack(x))`` round-trips.
        """
        known = set(self._index) | set(self.fixed) | self._processed_names
        unknown = set(named) - known
        if unknown:
            raise UnknownNameError(f"Unknown parameter names: {sorted(unknown)}")
        missing = [n for n in self._index if n not in named]
        if missing:
            raise ValueError(f"Missing values for parameters: {missing}")

        x = np.empty(self._length)
        for name in self.scalar:
            value = np.asarray(named[name], dtype=np.float64)
            if value.size != 1:
                raise ShapeMismatchError(
                    f"Expected scalar for '{name}', given shape {value.shape}"
                )
            x[self._index[name]] = value.ravel()
        for name, shape in self.array.items():
            value = np.asarray(named[name], dtype=np.float64)
            if value.shape != shape:
                raise ShapeMismatchError(
                    f"Expected shape {shape} for '{name}', given {value.shape}"
                )
            x[self._index[name]] = value.ravel()
        return x

    def unpack(self, x) -> Dict[str, object]:
        """
        Split a parameter vector into named values.

        Args:
            x: [n_pars] vector, or [n_pars, m] matrix of m vectors, in which
               case every value gains a trailing axis of length m

        Returns:
            Mapping of names to values, including fixed and processed values
        """
        x = np.asarray(x, dtype=np.float64)
        if x.ndim not in (1, 2) or x.shape[0] != self._length:
            raise ShapeMismatchError(
                f"Expected a parameter vector of length {self._length}, "
                f"given shape {x.shape}"
            )
        batch = x.shape[1:]
        out: Dict[str, object] = {}
        for name in self.scalar:
            value = x[self._index[name][0]]
            out[name] = float(value) if not batch else value.copy()
        for name, shape in self.array.items():
            out[name] = x[self._index[name]].reshape(shape + batch)
        out.update(self.fixed)
        if self.process is not None:
            extra = dict(self.process(out))
            clash = set(extra) & set(out)
            if clash:
                raise ValueError(f"process() returned existing names: {sorted(clash)}")
            self._processed_names.update(extra)
            out.update(extra)
        return out

    def __repr__(self) -> str:
        return f"Packer(n_pars={self._length}, names={list(self.names)})"
