"""
Chain runners.

Chains never communicate, so a runner only has to map a chain function
over a list of per-chain arguments and return the results in order.
Every chain carries its own random streams, so results do not depend on
the runner used.
"""

import logging
from joblib import Parallel, delayed
from typing import Callable, List, Sequence

logger = logging.getLogger(__name__)


class SerialRunner:
    """Run chains one after another in this process."""

    def run(self, fn: Callable, tasks: Sequence[tuple]) -> List:
        return [fn(*task) for task in tasks]

    def __repr__(self) -> str:
        return "SerialRunner()"


class ParallelRunner:
    """
    Run chains in worker processes.

    Models and samplers are sent to the workers by joblib (cloudpickle),
    so closures such as likelihood models built around a particle filter
    work; each worker mutates its own copy.

    Args:
        n_workers: Number of worker processes (-1 for one per CPU)
        backend: joblib backend
    """

    def __init__(self, n_workers: int = -1, backend: str = "loky"):
        if n_workers == 0:
            raise ValueError("n_workers must be non-zero")
        self.n_workers = n_workers
        self.backend = backend

    def run(self, fn: Callable, tasks: Sequence[tuple]) -> List:
        logger.info("Running %d chains on %s workers", len(tasks), self.n_workers)
        return Parallel(n_jobs=self.n_workers, backend=self.backend)(
            delayed(fn)(*task) for task in tasks
        )

    def __repr__(self) -> str:
        return f"ParallelRunner(n_workers={self.n_workers}, backend={self.backend!r})"
