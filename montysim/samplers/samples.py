"""
Sampler output.

Layout:
    pars:         [n_pars, n_steps, n_chains]
    density:      [n_steps, n_chains]
    initial:      [n_pars, n_chains]
    observations: name -> [..., n_steps, n_chains]
"""

import numpy as np
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

_OBS = "observations/"
_DETAILS = "details/"


@dataclass
class Samples:
    """
    Draws from one or more chains.

    Attributes:
        pars: [n_pars, n_steps, n_chains] Parameter draws
        density: [n_steps, n_chains] Log-density at each draw
        initial: [n_pars, n_chains] Starting points
        parameter_names: Names of the parameter vector elements
        details: Per-chain sampler diagnostics
        observations: Observer output, step and chain on the last two axes
        restart: Per-chain state for sample_continue (not saved to disk)
    """
    pars: np.ndarray
    density: np.ndarray
    initial: np.ndarray
    parameter_names: Tuple[str, ...]
    details: List[Dict] = field(default_factory=list)
    observations: Optional[Dict[str, np.ndarray]] = None
    restart: Optional[List[Dict]] = None

    @property
    def n_pars(self) -> int:
        return self.pars.shape[0]

    @property
    def n_steps(self) -> int:
        return self.pars.shape[1]

    @property
    def n_chains(self) -> int:
        return self.pars.shape[2]

    @property
    def acceptance_rate(self) -> np.ndarray:
        """[n_chains] Acceptance rate of each chain."""
        return np.array([d.get("acceptance_rate", np.nan) for d in self.details])

    def thin(self, thinning_factor: int = 1, burnin: int = 0) -> "Samples":
        """
        Drop the first ``burnin`` steps and keep every ``thinning_factor``-th
        step after that.
        """
        if thinning_factor < 1:
            raise ValueError(f"thinning_factor must be at least 1 (given {thinning_factor})")
        if not 0 <= burnin < self.n_steps:
            raise ValueError(f"burnin must lie in [0, {self.n_steps}) (given {burnin})")
        i = slice(burnin, None, thinning_factor)
        observations = None
        if self.observations is not None:
            observations = {k: v[..., i, :] for k, v in self.observations.items()}
        return replace(
            self,
            pars=self.pars[:, i, :],
            density=self.density[i, :],
            observations=observations,
        )

    def to_dict(self) -> Dict[str, np.ndarray]:
        """Flat mapping of names to arrays, as written by save()."""
        out = {
            "pars": self.pars,
            "density": self.density,
            "initial": self.initial,
            "parameter_names": np.array(self.parameter_names, dtype=str),
        }
        for k, v in (self.observations or {}).items():
            out[_OBS + k] = v
        if self.details:
            for k, v in self.details[0].items():
                if np.ndim(v) == 0:
                    out[_DETAILS + k] = np.array([d[k] for d in self.details])
        return out

    def save(self, path) -> None:
        """Write to a .npz file; restart state is not saved."""
        np.savez(path, **self.to_dict())

    @classmethod
    def load(cls, path) -> "Samples":
        with np.load(path, allow_pickle=False) as f:
            data = {k: f[k] for k in f.files}
        observations = {
            k[len(_OBS):]: v for k, v in data.items() if k.startswith(_OBS)
        } or None
        scalars = {k[len(_DETAILS):]: v for k, v in data.items() if k.startswith(_DETAILS)}
        n_chains = data["pars"].shape[2]
        details = [{k: v[j].item() for k, v in scalars.items()} for j in range(n_chains)]
        return cls(
            pars=data["pars"],
            density=data["density"],
            initial=data["initial"],
            parameter_names=tuple(str(x) for x in data["parameter_names"]),
            details=details if scalars else [],
            observations=observations,
        )

    def __repr__(self) -> str:
        return (
            f"Samples(n_pars={self.n_pars}, n_steps={self.n_steps}, "
            f"n_chains={self.n_chains})"
        )


def samples_thin(samples: Samples, thinning_factor: int = 1, burnin: int = 0) -> Samples:
    """Functional form of Samples.thin."""
    return samples.thin(thinning_factor, burnin)
