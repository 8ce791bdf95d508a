"""
Monty models: the uniform density interface used by all samplers.

A MontyModel exposes
    parameters     names of the vector elements
    domain         [n_pars, 2] box constraints (stored, never enforced here)
    density(x)     log-density at x ([n_pars]) or at each column of [n_pars, m]
    gradient(x)    optional gradient of the log-density
    direct_sample  optional exact sampler (priors)
    observer       optional producer of per-evaluation payload

Models compose with ``+``: densities add, domains intersect, gradients add
when both exist and observer payloads are merged under disjoint keys.
"""

import inspect
import numpy as np
from dataclasses import dataclass
from numpy.random import Generator
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import IncompatibleDomainError
from .packer import Packer


@dataclass(frozen=True)
class ModelProperties:
    """Capabilities of a MontyModel."""
    has_gradient: bool
    has_direct_sample: bool
    is_stochastic: bool
    has_observer: bool


class Observer:
    """
    Collects auxiliary output after each density evaluation.

    Args:
        observe: () -> mapping of name -> array, called right after density
        finalise: Optional list-of-observations -> combined mapping; the
                  default stacks each entry along a new last axis, filling
                  steps with no observation (None) with NaN
    """

    def __init__(
        self,
        observe: Callable[[], Mapping[str, np.ndarray]],
        finalise: Optional[Callable[[List[Mapping]], Dict]] = None,
    ):
        self._observe = observe
        self._finalise = finalise

    def observe(self) -> Dict[str, np.ndarray]:
        return dict(self._observe())

    def finalise(self, observations: List[Mapping]) -> Dict[str, np.ndarray]:
        if self._finalise is not None:
            return self._finalise(observations)
        template = next((o for o in observations if o is not None), None)
        if template is None:
            return {}
        out = {}
        for k, v in template.items():
            missing = np.full(np.shape(v), np.nan)
            out[k] = np.stack(
                [missing if o is None else np.asarray(o[k]) for o in observations], axis=-1
            )
        return out

    def __add__(self, other: "Observer") -> "Observer":
        def observe():
            a, b = self.observe(), other.observe()
            clash = set(a) & set(b)
            if clash:
                raise ValueError(f"Observers produce clashing names: {sorted(clash)}")
            return {**a, **b}
        return Observer(observe)


def _default_domain(n: int) -> np.ndarray:
    return np.column_stack([np.full(n, -np.inf), np.full(n, np.inf)])


class MontyModel:
    """
    Log-density with optional gradient, direct sampling and observer.

    Args:
        parameters: Names of parameter vector elements
        density: x [n_pars] -> float log-density
        gradient: x [n_pars] -> [n_pars]
        direct_sample: rng -> [n_pars]
        domain: [n_pars, 2] lower/upper bounds (default unbounded)
        observer: Observer called after each density evaluation
        is_stochastic: density is a noisy estimate (e.g. particle filter)
        get_rng_state, set_rng_state: access to a stochastic model's streams
        reseed: seed -> None, gives a stochastic model fresh streams
    """

    def __init__(
        self,
        parameters: Sequence[str],
        density: Callable[[np.ndarray], float],
        gradient: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        direct_sample: Optional[Callable[[Generator], np.ndarray]] = None,
        domain: Optional[np.ndarray] = None,
        observer: Optional[Observer] = None,
        is_stochastic: bool = False,
        get_rng_state: Optional[Callable[[], object]] = None,
        set_rng_state: Optional[Callable[[object], None]] = None,
        reseed: Optional[Callable[[object], None]] = None,
    ):
        self.parameters = tuple(parameters)
        if len(set(self.parameters)) != len(self.parameters):
            raise ValueError("Parameter names must be unique")
        n = len(self.parameters)
        if domain is None:
            domain = _default_domain(n)
        domain = np.array(domain, dtype=np.float64).reshape(-1, 2) if n else np.zeros((0, 2))
        if domain.shape != (n, 2):
            raise ValueError(f"Expected domain of shape ({n}, 2), given {domain.shape}")
        if np.any(domain[:, 0] > domain[:, 1]):
            raise ValueError("Domain lower bounds must not exceed upper bounds")
        self.domain = domain
        self._density = density
        self._gradient = gradient
        self._direct_sample = direct_sample
        self.observer = observer
        self.is_stochastic = is_stochastic
        self._get_rng_state = get_rng_state
        self._set_rng_state = set_rng_state
        self._reseed = reseed
        self.components: tuple = ()

    @property
    def n_pars(self) -> int:
        return len(self.parameters)

    @property
    def properties(self) -> ModelProperties:
        return ModelProperties(
            has_gradient=self._gradient is not None,
            has_direct_sample=self._direct_sample is not None,
            is_stochastic=self.is_stochastic,
            has_observer=self.observer is not None,
        )

    def density(self, x) -> np.ndarray:
        """Log-density at x [n_pars], or at each column of x [n_pars, m]."""
        x = np.asarray(x, dtype=np.float64)
        if x.ndim == 2:
            return np.array([self._density(x[:, j]) for j in range(x.shape[1])])
        return float(self._density(x))

    def gradient(self, x) -> np.ndarray:
        if self._gradient is None:
            raise ValueError("This model does not provide a gradient")
        return np.asarray(self._gradient(np.asarray(x, dtype=np.float64)), dtype=np.float64)

    def direct_sample(self, rng: Generator) -> np.ndarray:
        if self._direct_sample is None:
            raise ValueError("This model cannot be sampled directly")
        return np.asarray(self._direct_sample(rng), dtype=np.float64)

    def in_domain(self, x) -> bool:
        x = np.asarray(x, dtype=np.float64)
        return bool(np.all((x >= self.domain[:, 0]) & (x <= self.domain[:, 1])))

    def get_rng_state(self):
        if self._get_rng_state is None:
            raise ValueError("This model has no random number state")
        return self._get_rng_state()

    def set_rng_state(self, state) -> None:
        if self._set_rng_state is None:
            raise ValueError("This model has no random number state")
        self._set_rng_state(state)

    def reseed(self, seed) -> None:
        """Give a stochastic model new random streams; no-op otherwise."""
        if self._reseed is not None:
            self._reseed(seed)

    def split(self):
        """
        (prior, likelihood) of a model built as ``prior + likelihood``.

        Returns None for models that were not built by composition.
        """
        if len(self.components) != 2:
            return None
        return self.components

    def __add__(self, other: "MontyModel") -> "MontyModel":
        return combine_models(self, other)

    def __repr__(self) -> str:
        p = self.properties
        flags = [k for k, v in vars(p).items() if v]
        return f"MontyModel(parameters={list(self.parameters)}, {', '.join(flags) or 'plain'})"


def _intersect_domains(names, a: MontyModel, b: MontyModel) -> np.ndarray:
    domain = _default_domain(len(names))
    for model in (a, b):
        for i, name in enumerate(model.parameters):
            j = names.index(name)
            domain[j, 0] = max(domain[j, 0], model.domain[i, 0])
            domain[j, 1] = min(domain[j, 1], model.domain[i, 1])
    empty = domain[:, 0] > domain[:, 1]
    if np.any(empty):
        bad = [names[j] for j in np.flatnonzero(empty)]
        raise IncompatibleDomainError(f"Domains do not intersect for parameters: {bad}")
    return domain


def combine_models(a: MontyModel, b: MontyModel) -> MontyModel:
    """
    Sum of two models' log-densities.

    The combined parameter vector is ``a``'s parameters followed by any of
    ``b``'s not already present. Direct sampling is inherited from ``a``
    when it covers every parameter (the usual ``prior + likelihood`` case).
    """
    names = list(a.parameters) + [p for p in b.parameters if p not in a.parameters]
    idx_a = np.array([names.index(p) for p in a.parameters], dtype=int)
    idx_b = np.array([names.index(p) for p in b.parameters], dtype=int)
    domain = _intersect_domains(names, a, b)
    n = len(names)

    def density(x):
        da = a.density(x[idx_a])
        if da == -np.inf:
            return -np.inf
        return da + b.density(x[idx_b])

    gradient = None
    if a.properties.has_gradient and b.properties.has_gradient:
        def gradient(x):
            g = np.zeros(n)
            np.add.at(g, idx_a, a.gradient(x[idx_a]))
            np.add.at(g, idx_b, b.gradient(x[idx_b]))
            return g

    direct_sample = None
    if a.properties.has_direct_sample and len(idx_a) == n:
        direct_sample = a.direct_sample

    observer = None
    if a.observer is not None and b.observer is not None:
        observer = a.observer + b.observer
    else:
        observer = a.observer or b.observer

    stochastic = [m for m in (a, b) if m.is_stochastic]

    def get_rng_state():
        return [m.get_rng_state() for m in stochastic]

    def set_rng_state(state):
        for m, s in zip(stochastic, state):
            m.set_rng_state(s)

    def reseed(seed):
        if not isinstance(seed, np.random.SeedSequence):
            seed = np.random.SeedSequence(seed)
        for m, s in zip(stochastic, seed.spawn(len(stochastic))):
            m.reseed(s)

    model = MontyModel(
        names,
        density,
        gradient=gradient,
        direct_sample=direct_sample,
        domain=domain,
        observer=observer,
        is_stochastic=len(stochastic) > 0,
        get_rng_state=get_rng_state if stochastic else None,
        set_rng_state=set_rng_state if stochastic else None,
        reseed=reseed if stochastic else None,
    )
    model.components = (a, b)
    return model


def model_function(
    fn: Callable[..., float],
    packer: Optional[Packer] = None,
    fixed: Optional[Mapping[str, object]] = None,
    domain: Optional[np.ndarray] = None,
    gradient: Optional[Callable[[np.ndarray], np.ndarray]] = None,
) -> MontyModel:
    """
    Wrap a function of named arguments as a MontyModel.

    Args:
        fn: Function returning a log-density; called with unpacked
            parameters as keyword arguments
        packer: Packer describing the vector; defaults to one scalar per
                argument of ``fn`` not listed in ``fixed``
        fixed: Extra fixed arguments (only used when packer is None)
        domain: Box constraints on the packed vector
        gradient: Optional gradient with respect to the packed vector

    Returns:
        MontyModel
    """
    if packer is None:
        fixed = dict(fixed or {})
        args = [
            name for name, p in inspect.signature(fn).parameters.items()
            if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY) and name not in fixed
        ]
        packer = Packer(args, fixed=fixed)
    elif fixed:
        raise ValueError("Give fixed values through the packer, not both")

    def density(x):
        return fn(**packer.unpack(x))

    return MontyModel(packer.names, density, gradient=gradient, domain=domain)
