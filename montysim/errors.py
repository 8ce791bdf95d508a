"""
Exception and warning classes.

Contract violations raise immediately; numerical degeneracies are reported
through warnings and surface as -inf densities.
"""


class MontysimError(Exception):
    """Base class for all montysim errors."""


class TimeOrderError(MontysimError, ValueError):
    """Times passed to step/simulate are not increasing or lie in the past."""


class DistributionParameterError(MontysimError, ValueError):
    """Invalid distribution parameters at draw time."""


class ShapeMismatchError(MontysimError, ValueError):
    """Parameter vector or array shape does not match the packer layout."""


class UnknownNameError(MontysimError, KeyError):
    """A name was given that the packer (or system) does not know about."""

    def __str__(self):
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ""


class IncompatibleDomainError(MontysimError, ValueError):
    """Model composition where some dimension's domains do not intersect."""


class OutOfDomainError(MontysimError, ValueError):
    """Initial sampler state lies outside the model domain."""


class ArtifactNotSavedError(MontysimError, RuntimeError):
    """Trajectories, state or snapshots were requested but not saved."""


class DegenerateFilterError(RuntimeWarning):
    """
    All particles have zero likelihood at a data record.

    Never raised: emitted via ``warnings.warn`` while the filter returns
    a marginal log-likelihood of -inf.
    """
