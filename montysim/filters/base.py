"""
Filter base classes and result containers.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

from ..errors import ArtifactNotSavedError, UnknownNameError
from ..models.generator import SystemGenerator
from ..simulation.system import OdeControl
from .data import ObservationData, prepare_data


@dataclass
class FilterResult:
    """
    Outputs of one filter run.

    Group axes are always present here; the filter accessors drop them
    for ungrouped filters.

    Attributes:
        log_likelihood: [n_groups] Marginal log-likelihood estimate
        log_likelihood_increments: [n_groups, T] Per-record increments
        ess: [n_groups, T] Effective sample size before resampling
        resampled: [n_groups, T] Whether particles were resampled

        trajectories: [n_groups, n_particles, n_state_saved, T] (optional)
        state: [n_groups, n_particles, n_state] Final state (optional)
        snapshots: [n_groups, n_particles, n_state, n_snapshots] (optional)
        snapshot_times: [n_snapshots] (optional)
    """
    log_likelihood: np.ndarray
    log_likelihood_increments: np.ndarray
    ess: Optional[np.ndarray] = None
    resampled: Optional[np.ndarray] = None

    trajectories: Optional[np.ndarray] = None
    state: Optional[np.ndarray] = None
    snapshots: Optional[np.ndarray] = None
    snapshot_times: Optional[np.ndarray] = None
    index_state: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def T(self) -> int:
        """Number of data records."""
        return self.log_likelihood_increments.shape[-1]

    def average_ess(self) -> float:
        """Return average ESS if available."""
        if self.ess is None:
            return np.nan
        return float(np.nanmean(self.ess))

    def require(self, name: str) -> np.ndarray:
        """Return a saved artifact or fail if it was not enabled for the run."""
        value = getattr(self, name)
        if value is None:
            raise ArtifactNotSavedError(
                f"'{name}' was not saved during the last run; pass "
                f"save_{name}=... to run()"
            )
        return value


def _public(x: np.ndarray, grouped: bool) -> np.ndarray:
    # [G, N, S, ...] -> [S, N, (G), ...]
    x = np.moveaxis(np.moveaxis(x, 2, 0), 2, 1)
    return x if grouped else x[:, :, 0]


class FilterBase:
    """
    Shared setup for likelihood estimators that run a System against data.

    Subclasses implement ``run``, storing a FilterResult in ``last_result``.
    """

    def __init__(
        self,
        generator: SystemGenerator,
        data,
        time_start: Optional[float] = None,
        n_groups: Optional[int] = None,
        dt: float = 1.0,
        ode_control: Optional[OdeControl] = None,
    ):
        if not generator.has_compare:
            raise ValueError("The model has no compare functions; cannot filter")
        self.generator = generator
        self.data: ObservationData = prepare_data(data, time_start)
        self.time_start = self.data.time_start
        self.grouped = n_groups is not None
        self.n_groups = 1 if n_groups is None else int(n_groups)
        if self.n_groups < 1:
            raise ValueError(f"n_groups must be at least 1 (given {n_groups})")
        self.dt = dt
        self.ode_control = ode_control
        self.last_result: Optional[FilterResult] = None

    def _group_pars(self, pars: Union[Mapping, Sequence[Mapping]]):
        if isinstance(pars, Mapping):
            if self.grouped and self.n_groups > 1:
                raise ValueError(
                    f"Expected a list of {self.n_groups} parameter sets"
                )
            return [pars] * self.n_groups
        pars = list(pars)
        if len(pars) != self.n_groups:
            raise ValueError(f"Expected {self.n_groups} parameter sets, given {len(pars)}")
        return pars

    def _index_state(self, save_trajectories) -> Optional[np.ndarray]:
        """Translate a save_trajectories argument into state indices."""
        if save_trajectories is False or save_trajectories is None:
            return None
        if save_trajectories is True:
            return np.arange(self.generator.n_state)
        if isinstance(save_trajectories, str):
            save_trajectories = [save_trajectories]
        names = list(save_trajectories)
        if all(isinstance(n, str) for n in names):
            return self.generator.state_index(names)
        idx = np.asarray(names, dtype=int)
        if np.any(idx < 0) or np.any(idx >= self.generator.n_state):
            raise UnknownNameError(f"State index out of range: {idx.tolist()}")
        return idx

    def _snapshot_index(self, save_snapshots) -> np.ndarray:
        if save_snapshots is None or len(save_snapshots) == 0:
            return np.zeros(0, dtype=int)
        idx = np.array([self.data.index_of(t) for t in save_snapshots])
        if np.any(np.diff(idx) <= 0):
            raise ValueError("save_snapshots times must be strictly increasing")
        return idx

    def _finish(self, ll: np.ndarray):
        return ll if self.grouped else float(ll[0])

    def _last(self) -> FilterResult:
        if self.last_result is None:
            raise ArtifactNotSavedError("The filter has not been run yet")
        return self.last_result

    def last_trajectories(self) -> np.ndarray:
        """Saved trajectories, [n_state_saved, n_particles(, n_groups), T]."""
        return _public(self._last().require("trajectories"), self.grouped)

    def last_state(self) -> np.ndarray:
        """Saved final state, [n_state, n_particles(, n_groups)]."""
        return _public(self._last().require("state"), self.grouped)

    def last_snapshots(self) -> np.ndarray:
        """Saved snapshots, [n_state, n_particles(, n_groups), n_snapshots]."""
        return _public(self._last().require("snapshots"), self.grouped)
