"""
Splittable random number streams.

Every particle and every chain owns one stream. Streams are derived from a
root seed with ``numpy.random.SeedSequence`` spawn keys, so stream ``i`` is
the same whatever the total number of streams and adding streams never
perturbs existing ones.

Draw methods are vectorised across streams: argument arrays are broadcast
against a leading stream axis and each stream draws its own slice.
"""

import numpy as np
from typing import Sequence, Tuple, Union
from numpy.random import Generator, PCG64, SeedSequence

from ..errors import DistributionParameterError


def _root(seed) -> Tuple[int, Tuple[int, ...]]:
    if isinstance(seed, SeedSequence):
        return seed.entropy, tuple(seed.spawn_key)
    return SeedSequence(seed).entropy, ()


def _make_generator(entropy: int, key: Tuple[int, ...]) -> Generator:
    return Generator(PCG64(SeedSequence(entropy, spawn_key=key)))


def _check(ok, message: str):
    if not np.all(ok):
        raise DistributionParameterError(message)


class RngStreams:
    """
    A set of independent random number generators, one per stream.

    Args:
        seed: Root seed (int, SeedSequence or None for fresh entropy)
        n_streams: Number of streams (>= 1)
    """

    def __init__(self, seed=None, n_streams: int = 1):
        if int(n_streams) < 1:
            raise ValueError(f"n_streams must be at least 1 (given {n_streams})")
        self._entropy, base = _root(seed)
        self._keys = [base + (i,) for i in range(int(n_streams))]
        self._generators = [_make_generator(self._entropy, k) for k in self._keys]

    @classmethod
    def _from_parts(cls, entropy, keys, generators) -> "RngStreams":
        obj = cls.__new__(cls)
        obj._entropy = entropy
        obj._keys = list(keys)
        obj._generators = list(generators)
        return obj

    @property
    def n_streams(self) -> int:
        return len(self._generators)

    def __len__(self) -> int:
        return self.n_streams

    def generator(self, i: int = 0) -> Generator:
        """The raw NumPy generator owned by stream ``i``."""
        return self._generators[i]

    def seed_sequence(self, i: int = 0) -> SeedSequence:
        """SeedSequence behind stream ``i``, for seeding other objects."""
        return SeedSequence(self._entropy, spawn_key=self._keys[i])

    def subset(self, index: Union[slice, Sequence[int]]) -> "RngStreams":
        """
        View onto some of the streams.

        The generators are shared, not copied: drawing from the subset
        advances the same streams. Used to hand disjoint blocks of
        particles to worker threads.
        """
        if isinstance(index, slice):
            idx = range(self.n_streams)[index]
        else:
            idx = [int(i) for i in index]
        return RngStreams._from_parts(
            self._entropy,
            [self._keys[i] for i in idx],
            [self._generators[i] for i in idx],
        )

    def split(self, n: int, i: int = 0) -> "RngStreams":
        """
        Derive ``n`` child streams from stream ``i``.

        Children are a deterministic function of the root seed and the
        parent key only; the parent stream's position is not consumed.
        """
        if int(n) < 1:
            raise ValueError(f"n must be at least 1 (given {n})")
        parent = self._keys[i]
        keys = [parent + (j,) for j in range(int(n))]
        return RngStreams._from_parts(
            self._entropy, keys, [_make_generator(self._entropy, k) for k in keys]
        )

    def jump(self, jumps: int = 1) -> "RngStreams":
        """Advance every stream by ``jumps`` * 2^127 draws, in place."""
        for g in self._generators:
            g.bit_generator.state = g.bit_generator.jumped(jumps).state
        return self

    def get_state(self) -> list:
        return [g.bit_generator.state for g in self._generators]

    def set_state(self, state: list):
        if len(state) != self.n_streams:
            raise ValueError(
                f"Expected state for {self.n_streams} streams, given {len(state)}"
            )
        for g, s in zip(self._generators, state):
            g.bit_generator.state = s

    def __repr__(self) -> str:
        return f"RngStreams(n_streams={self.n_streams})"

    # -------------------------------------------------------------------------
    # Vectorised draws: one slice per stream
    # -------------------------------------------------------------------------

    def _broadcast(self, *args):
        args = [np.asarray(a, dtype=np.float64) for a in args]
        shape = np.broadcast_shapes(*[a.shape for a in args])
        if len(shape) == 0 or shape[0] != self.n_streams:
            shape = (self.n_streams,) + shape
        return [np.broadcast_to(a, shape) for a in args], shape

    def _draw(self, method: str, args, dtype=np.float64) -> np.ndarray:
        args, shape = self._broadcast(*args)
        out = np.empty(shape, dtype=dtype)
        for i, g in enumerate(self._generators):
            fn = getattr(g, method)
            out[i] = fn(*[a[i] for a in args])
        return out

    def random(self, size: Tuple[int, ...] = ()) -> np.ndarray:
        """U(0, 1) draws of shape [n_streams, *size]."""
        out = np.empty((self.n_streams,) + tuple(size))
        for i, g in enumerate(self._generators):
            out[i] = g.random(size)
        return out

    def standard_normal(self, size: Tuple[int, ...] = ()) -> np.ndarray:
        """N(0, 1) draws of shape [n_streams, *size]."""
        out = np.empty((self.n_streams,) + tuple(size))
        for i, g in enumerate(self._generators):
            out[i] = g.standard_normal(size)
        return out

    def uniform(self, low=0.0, high=1.0) -> np.ndarray:
        low, high = np.asarray(low, float), np.asarray(high, float)
        _check(np.isfinite(low) & np.isfinite(high) & (low <= high),
               "uniform requires finite low <= high")
        return self._draw("uniform", (low, high))

    def normal(self, mean=0.0, sd=1.0) -> np.ndarray:
        mean, sd = np.asarray(mean, float), np.asarray(sd, float)
        _check(np.isfinite(mean), "normal requires a finite mean")
        _check(np.isfinite(sd) & (sd >= 0), "normal requires sd >= 0")
        return self._draw("normal", (mean, sd))

    def binomial(self, n, p) -> np.ndarray:
        n, p = np.asarray(n, float), np.asarray(p, float)
        _check(np.isfinite(n) & (n >= 0), "binomial requires n >= 0")
        _check((p >= 0) & (p <= 1), "binomial requires 0 <= p <= 1")
        args, shape = self._broadcast(np.round(n), p)
        out = np.empty(shape)
        for i, g in enumerate(self._generators):
            out[i] = g.binomial(args[0][i].astype(np.int64), args[1][i])
        return out

    def poisson(self, lam) -> np.ndarray:
        lam = np.asarray(lam, float)
        _check(np.isfinite(lam) & (lam >= 0), "poisson requires lambda >= 0")
        return self._draw("poisson", (lam,))

    def gamma(self, shape, scale=1.0) -> np.ndarray:
        shape, scale = np.asarray(shape, float), np.asarray(scale, float)
        _check(np.isfinite(shape) & (shape > 0), "gamma requires shape > 0")
        _check(np.isfinite(scale) & (scale > 0), "gamma requires scale > 0")
        return self._draw("gamma", (shape, scale))

    def beta(self, a, b) -> np.ndarray:
        a, b = np.asarray(a, float), np.asarray(b, float)
        _check(np.isfinite(a) & (a > 0) & np.isfinite(b) & (b > 0),
               "beta requires a > 0 and b > 0")
        return self._draw("beta", (a, b))

    def exponential(self, rate=1.0) -> np.ndarray:
        rate = np.asarray(rate, float)
        _check(np.isfinite(rate) & (rate > 0), "exponential requires rate > 0")
        return self._draw("exponential", (1.0 / rate,))

