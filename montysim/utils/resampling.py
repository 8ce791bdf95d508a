"""
Resampling schemes and log-weight arithmetic for the particle filter.
"""

import numpy as np
from numpy.random import Generator
from typing import Tuple


def systematic_resample(weights: np.ndarray, rng: Generator) -> np.ndarray:
    """
    Systematic resampling: one uniform offset shared by all N strata.

    Args:
        weights: [N] Normalised weights (sum to 1)
        rng: Generator of the resampling stream

    Returns:
        indices: [N] Ancestor index of each new particle
    """
    n = len(weights)
    cdf = np.cumsum(weights)
    cdf[-1] = 1.0
    u = (rng.uniform() + np.arange(n)) / n
    return np.minimum(np.searchsorted(cdf, u, side="left"), n - 1)


def stratified_resample(weights: np.ndarray, rng: Generator) -> np.ndarray:
    """
    Stratified resampling: an independent uniform within each stratum.

    Args:
        weights: [N] Normalised weights (sum to 1)
        rng: Generator of the resampling stream

    Returns:
        indices: [N] Ancestor index of each new particle
    """
    n = len(weights)
    cdf = np.cumsum(weights)
    cdf[-1] = 1.0
    u = (np.arange(n) + rng.uniform(0.0, 1.0, n)) / n
    return np.minimum(np.searchsorted(cdf, u, side="left"), n - 1)


def multinomial_resample(weights: np.ndarray, rng: Generator) -> np.ndarray:
    """Multinomial resampling (with replacement, highest variance)."""
    n = len(weights)
    return rng.choice(n, size=n, replace=True, p=weights)


def residual_resample(weights: np.ndarray, rng: Generator) -> np.ndarray:
    """
    Residual resampling.

    floor(N w_i) copies of each particle, the remainder drawn
    multinomially from the residual weights. Output is sorted so that
    copies of the same ancestor are adjacent.
    """
    n = len(weights)
    n_copies = np.floor(n * weights).astype(int)
    indices = np.repeat(np.arange(n), n_copies)
    n_residual = n - len(indices)
    if n_residual > 0:
        residual = n * weights - n_copies
        residual = residual / residual.sum()
        extra = rng.choice(n, size=n_residual, replace=True, p=residual)
        indices = np.sort(np.concatenate([indices, extra]))
    return indices.astype(int)


RESAMPLERS = {
    "systematic": systematic_resample,
    "stratified": stratified_resample,
    "multinomial": multinomial_resample,
    "residual": residual_resample,
}


def get_resampler(method: str):
    """Look up a resampling function by name."""
    try:
        return RESAMPLERS[method]
    except KeyError:
        raise ValueError(
            f"Unknown resample method: {method} (expected one of {sorted(RESAMPLERS)})"
        ) from None


def effective_sample_size(weights: np.ndarray) -> float:
    """ESS = 1 / sum(w_i^2) for normalised weights; in [1, N]."""
    return 1.0 / np.sum(weights ** 2)


def normalize_log_weights(log_weights: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Normalise log weights, tolerating -inf entries.

    Args:
        log_weights: [N] Unnormalised log weights

    Returns:
        weights: [N] Normalised weights; all zero if every entry is -inf
        log_normalizer: log(sum(exp(log_weights))), -inf when degenerate
    """
    finite = np.isfinite(log_weights)
    if not np.any(finite):
        return np.zeros_like(log_weights, dtype=float), -np.inf
    max_log = np.max(log_weights[finite])
    scaled = np.where(finite, np.exp(log_weights - max_log), 0.0)
    total = scaled.sum()
    return scaled / total, max_log + np.log(total)


def log_mean_exp(log_weights: np.ndarray) -> float:
    """
    log(mean(exp(x))) computed as max + log(mean(exp(x - max))).

    Entries of -inf contribute zero weight; the result is -inf only if all
    entries are -inf.
    """
    _, log_sum = normalize_log_weights(log_weights)
    return log_sum - np.log(len(log_weights))
